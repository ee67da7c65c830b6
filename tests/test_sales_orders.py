"""Sales-order confirmation, shipping and cancellation."""

from __future__ import annotations

import pytest

from inventario.errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from inventario.models import ReservationEstado
from inventario.schemas import SalesOrderCreate, SalesOrderLineCreate, SalesOrderUpdate, ShipLine


def _order(services, *lines):
    return services.sales_orders.create(
        SalesOrderCreate(
            cliente="Cliente Uno",
            lines=[SalesOrderLineCreate(item=item, cantidad=cantidad) for item, cantidad in lines],
        ),
        actor="ventas",
    )


class TestCreateSalesOrder:

    def test_new_orders_start_as_draft(self, services):
        order = _order(services, ("A", 2))

        assert order.estado == "borrador"
        assert order.numero == "SO-000001"
        assert order.lines[0].reservado == 0

    def test_unknown_order(self, services):
        with pytest.raises(NotFoundError):
            services.sales_orders.get(77)

    def test_list_newest_first_and_by_estado(self, services, seed_stock):
        seed_stock("A", "W1", 10)
        first = _order(services, ("A", 1))
        second = _order(services, ("A", 2))
        services.sales_orders.confirm(second.id, "W1")

        assert [o.id for o in services.sales_orders.list()] == [second.id, first.id]
        assert [o.id for o in services.sales_orders.list("borrador")] == [first.id]
        with pytest.raises(ValidationError):
            services.sales_orders.list("perdida")


class TestUpdateSalesOrder:

    def test_draft_lines_and_cliente_are_replaced(self, services):
        order = _order(services, ("A", 2))

        updated = services.sales_orders.update(
            order.id,
            SalesOrderUpdate(
                cliente="Cliente Dos",
                lines=[SalesOrderLineCreate(item="B", cantidad=5), SalesOrderLineCreate(item="C", cantidad=1)],
            ),
            actor="ventas",
        )

        assert updated.cliente == "Cliente Dos"
        assert [(line.item, line.cantidad) for line in updated.lines] == [("B", 5), ("C", 1)]
        assert updated.estado == "borrador"

    def test_cliente_only_keeps_lines(self, services):
        order = _order(services, ("A", 2))

        updated = services.sales_orders.update(order.id, SalesOrderUpdate(cliente="Otro"))

        assert updated.cliente == "Otro"
        assert [(line.item, line.cantidad) for line in updated.lines] == [("A", 2)]

    def test_confirmed_order_cannot_be_edited(self, services, seed_stock):
        seed_stock("A", "W1", 10)
        order = _order(services, ("A", 2))
        services.sales_orders.confirm(order.id, "W1")

        with pytest.raises(ConflictError, match="borrador"):
            services.sales_orders.update(
                order.id, SalesOrderUpdate(lines=[SalesOrderLineCreate(item="A", cantidad=9)])
            )

        assert services.sales_orders.get(order.id).lines[0].cantidad == 2
        assert services.ledger.get("A", "W1").reservado == 2


class TestConfirm:

    def test_confirm_reserves_every_line(self, services, seed_stock):
        seed_stock("A", "W1", 10)
        seed_stock("B", "W1", 10)
        order = _order(services, ("A", 4), ("B", 6))

        result = services.sales_orders.confirm(order.id, "W1")

        assert result.order.estado == "confirmada"
        assert result.order.warehouse == "W1"
        assert result.order.fecha_confirmacion is not None
        assert [line.reservado for line in result.order.lines] == [4, 6]
        assert [(r.item, r.cantidad, r.estado) for r in result.reservations] == [
            ("A", 4, "activo"),
            ("B", 6, "activo"),
        ]
        assert all(r.sales_order_id == order.id for r in result.reservations)
        assert services.ledger.get("A", "W1").reservado == 4
        assert services.ledger.get("B", "W1").reservado == 6

    def test_insufficient_line_fails_whole_confirmation(self, services, seed_stock):
        seed_stock("A", "W1", 10)
        seed_stock("B", "W1", 2)
        order = _order(services, ("A", 4), ("B", 6))

        with pytest.raises(InsufficientStockError) as exc_info:
            services.sales_orders.confirm(order.id, "W1")

        assert exc_info.value.item == "B"
        assert services.ledger.get("A", "W1").reservado == 0
        assert services.ledger.get("B", "W1").reservado == 0
        assert services.reservations.list_for_sales_order(order.id) == []
        assert services.sales_orders.get(order.id).estado == "borrador"

    def test_lines_for_the_same_item_are_checked_together(self, services, seed_stock):
        seed_stock("A", "W1", 10)
        order = _order(services, ("A", 6), ("A", 6))

        with pytest.raises(InsufficientStockError):
            services.sales_orders.confirm(order.id, "W1")

        assert services.ledger.get("A", "W1").reservado == 0

    def test_confirm_replay_and_conflict(self, services, seed_stock):
        seed_stock("A", "W1", 10)
        order = _order(services, ("A", 4))

        services.sales_orders.confirm(order.id, "W1", idempotency_key="c-1")
        replay = services.sales_orders.confirm(order.id, "W1", idempotency_key="c-1")

        assert replay.replayed is True
        assert len(replay.reservations) == 1
        assert services.ledger.get("A", "W1").reservado == 4

        with pytest.raises(ConflictError):
            services.sales_orders.confirm(order.id, "W1", idempotency_key="c-2")

    def test_confirm_requires_warehouse(self, services):
        order = _order(services, ("A", 4))

        with pytest.raises(ValidationError):
            services.sales_orders.confirm(order.id, " ")


class TestShip:

    def test_full_shipment(self, services, seed_stock):
        seed_stock("A", "W1", 10)
        seed_stock("B", "W1", 10)
        order = _order(services, ("A", 4), ("B", 6))
        confirmed = services.sales_orders.confirm(order.id, "W1")

        result = services.sales_orders.ship(order.id)

        assert result.order.estado == "despachada"
        assert result.order.fecha_despacho is not None
        assert sorted(m.cantidad for m in result.movements) == sorted(
            r.cantidad for r in confirmed.reservations
        )
        assert all(m.tipo == "venta" for m in result.movements)
        assert all(r.estado == ReservationEstado.CONSUMIDO.value for r in result.reservations)
        assert [line.entregado for line in result.order.lines] == [4, 6]
        a = services.ledger.get("A", "W1")
        b = services.ledger.get("B", "W1")
        assert (a.cantidad, a.reservado) == (6, 0)
        assert (b.cantidad, b.reservado) == (4, 0)

    def test_partial_then_remaining(self, services, seed_stock):
        seed_stock("A", "W1", 10)
        seed_stock("B", "W1", 10)
        order = _order(services, ("A", 5), ("B", 2))
        services.sales_orders.confirm(order.id, "W1")

        partial = services.sales_orders.ship(order.id, [ShipLine(item="A", cantidad=3)])

        assert partial.order.estado == "parcial"
        assert [line.entregado for line in partial.order.lines] == [3, 0]
        reservation_a = next(r for r in partial.reservations if r.item == "A")
        assert reservation_a.estado == "activo"
        assert reservation_a.cantidad_consumida == 3
        assert services.ledger.get("A", "W1").reservado == 2

        rest = services.sales_orders.ship(order.id)

        assert rest.order.estado == "despachada"
        assert sorted(m.cantidad for m in rest.movements) == [2, 2]
        assert services.ledger.get("A", "W1").cantidad == 5
        assert services.ledger.get("B", "W1").cantidad == 8

    def test_requested_quantity_is_capped_at_pending(self, services, seed_stock):
        seed_stock("A", "W1", 10)
        order = _order(services, ("A", 3))
        services.sales_orders.confirm(order.id, "W1")

        result = services.sales_orders.ship(order.id, [ShipLine(item="A", cantidad=9)])

        assert result.movements[0].cantidad == 3
        assert result.order.estado == "despachada"

    def test_fully_delivered_line_rejected(self, services, seed_stock):
        seed_stock("A", "W1", 10)
        seed_stock("B", "W1", 10)
        order = _order(services, ("A", 2), ("B", 2))
        services.sales_orders.confirm(order.id, "W1")
        services.sales_orders.ship(order.id, [ShipLine(item="A", cantidad=2)])

        with pytest.raises(ValidationError, match="despachada"):
            services.sales_orders.ship(order.id, [ShipLine(item="A", cantidad=1)])

    def test_item_not_on_order_rejected(self, services, seed_stock):
        seed_stock("A", "W1", 10)
        order = _order(services, ("A", 2))
        services.sales_orders.confirm(order.id, "W1")

        with pytest.raises(ValidationError):
            services.sales_orders.ship(order.id, [ShipLine(item="Z", cantidad=1)])

    def test_empty_item_list_is_not_a_full_shipment(self, services, seed_stock):
        seed_stock("A", "W1", 10)
        order = _order(services, ("A", 4))
        services.sales_orders.confirm(order.id, "W1")

        with pytest.raises(ValidationError, match="vacío"):
            services.sales_orders.ship(order.id, [])

        assert services.sales_orders.get(order.id).estado == "confirmada"
        stock = services.ledger.get("A", "W1")
        assert (stock.cantidad, stock.reservado) == (10, 4)

    def test_draft_cannot_ship(self, services):
        order = _order(services, ("A", 2))

        with pytest.raises(ConflictError):
            services.sales_orders.ship(order.id)

    def test_ship_replay_with_same_key(self, services, seed_stock):
        seed_stock("A", "W1", 10)
        order = _order(services, ("A", 4))
        services.sales_orders.confirm(order.id, "W1")

        first = services.sales_orders.ship(order.id, idempotency_key="s-1")
        second = services.sales_orders.ship(order.id, idempotency_key="s-1")

        assert second.replayed is True
        assert [m.id for m in second.movements] == [m.id for m in first.movements]
        assert services.ledger.get("A", "W1").cantidad == 6

        with pytest.raises(ConflictError):
            services.sales_orders.ship(order.id, idempotency_key="s-2")


class TestCancel:

    def test_cancel_confirmed_order_releases_reservations(self, services, seed_stock):
        seed_stock("A", "W1", 10)
        seed_stock("B", "W1", 10)
        order = _order(services, ("A", 4), ("B", 6))
        services.sales_orders.confirm(order.id, "W1")

        result = services.sales_orders.cancel(order.id)

        assert result.order.estado == "cancelada"
        assert result.order.fecha_cancelacion is not None
        assert all(r.estado == ReservationEstado.LIBERADO.value for r in result.reservations)
        assert [line.reservado for line in result.order.lines] == [0, 0]
        a = services.ledger.get("A", "W1")
        b = services.ledger.get("B", "W1")
        assert (a.cantidad, a.reservado) == (10, 0)
        assert (b.cantidad, b.reservado) == (10, 0)

    def test_cancel_after_partial_shipment_releases_the_rest(self, services, seed_stock):
        seed_stock("A", "W1", 10)
        order = _order(services, ("A", 5))
        services.sales_orders.confirm(order.id, "W1")
        services.sales_orders.ship(order.id, [ShipLine(item="A", cantidad=2)])

        services.sales_orders.cancel(order.id)

        stock = services.ledger.get("A", "W1")
        assert (stock.cantidad, stock.reservado) == (8, 0)

    def test_cancel_draft(self, services):
        order = _order(services, ("A", 2))

        result = services.sales_orders.cancel(order.id)

        assert result.order.estado == "cancelada"
        assert result.reservations == []

    def test_cancel_shipped_order_conflicts(self, services, seed_stock):
        seed_stock("A", "W1", 10)
        order = _order(services, ("A", 2))
        services.sales_orders.confirm(order.id, "W1")
        services.sales_orders.ship(order.id)

        with pytest.raises(ConflictError):
            services.sales_orders.cancel(order.id)

    def test_cancel_replay_with_same_key(self, services, seed_stock):
        seed_stock("A", "W1", 10)
        order = _order(services, ("A", 2))
        services.sales_orders.confirm(order.id, "W1")

        services.sales_orders.cancel(order.id, idempotency_key="x-1")
        replay = services.sales_orders.cancel(order.id, idempotency_key="x-1")

        assert replay.replayed is True
        assert replay.order.estado == "cancelada"
        assert services.ledger.get("A", "W1").reservado == 0
