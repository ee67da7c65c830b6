"""Batch receiving against purchase orders."""

from __future__ import annotations

from decimal import Decimal

import pytest

from inventario.errors import ConflictError, NotFoundError, ValidationError
from inventario.schemas import PurchaseOrderCreate, PurchaseOrderLineCreate, PurchaseOrderUpdate, ReceiveLine


def _order(services, *lines, numero=None):
    return services.purchase_orders.create(
        PurchaseOrderCreate(
            numero=numero,
            proveedor="ACME",
            lines=[
                PurchaseOrderLineCreate(item=item, cantidad=cantidad, costo_unitario=costo)
                for item, cantidad, costo in lines
            ],
        ),
        actor="compras",
    )


class TestCreatePurchaseOrder:

    def test_numbers_are_generated_in_sequence(self, services):
        first = _order(services, ("A", 10, None))
        second = _order(services, ("B", 5, None))

        assert first.numero == "PO-000001"
        assert second.numero == "PO-000002"
        assert first.estado == "pendiente"

    def test_duplicate_numero_conflicts(self, services):
        _order(services, ("A", 10, None), numero="OC-1")

        with pytest.raises(ConflictError):
            _order(services, ("A", 10, None), numero="OC-1")

    def test_lines_need_positive_quantities(self):
        with pytest.raises(ValueError):
            PurchaseOrderLineCreate(item="A", cantidad=0)


class TestListUpdateDelete:

    def test_list_newest_first_and_by_estado(self, services):
        first = _order(services, ("A", 10, None))
        second = _order(services, ("B", 5, None))
        services.purchase_orders.receive(second.id, "W1", [ReceiveLine(item="B", cantidad=2)])

        assert [o.id for o in services.purchase_orders.list()] == [second.id, first.id]
        assert [o.id for o in services.purchase_orders.list("parcial")] == [second.id]
        with pytest.raises(ValidationError):
            services.purchase_orders.list("perdida")

    def test_update_replaces_lines_before_any_receipt(self, services):
        order = _order(services, ("A", 10, None))

        updated = services.purchase_orders.update(
            order.id,
            PurchaseOrderUpdate(
                proveedor="Otro",
                lines=[PurchaseOrderLineCreate(item="B", cantidad=3, costo_unitario=Decimal("4"))],
            ),
            actor="compras",
        )

        assert updated.proveedor == "Otro"
        assert [(line.item, line.cantidad, line.recibido) for line in updated.lines] == [("B", 3, 0)]
        assert updated.estado == "pendiente"

    def test_lines_locked_after_receipt(self, services):
        order = _order(services, ("A", 10, None))
        services.purchase_orders.receive(order.id, "W1", [ReceiveLine(item="A", cantidad=4)])

        with pytest.raises(ConflictError):
            services.purchase_orders.update(
                order.id, PurchaseOrderUpdate(lines=[PurchaseOrderLineCreate(item="A", cantidad=1)])
            )

        renamed = services.purchase_orders.update(order.id, PurchaseOrderUpdate(proveedor="Nuevo"))
        assert renamed.proveedor == "Nuevo"
        assert renamed.lines[0].recibido == 4

    def test_soft_delete_hides_order_and_keeps_stock(self, services):
        order = _order(services, ("A", 10, None))
        services.purchase_orders.receive(order.id, "W1", [ReceiveLine(item="A", cantidad=4)])

        deleted = services.purchase_orders.delete(order.id, actor="admin")

        assert deleted.eliminado is True
        assert services.purchase_orders.list() == []
        with pytest.raises(NotFoundError):
            services.purchase_orders.get(order.id)
        with pytest.raises(NotFoundError):
            services.purchase_orders.receive(order.id, "W1", [ReceiveLine(item="A", cantidad=1)])
        with pytest.raises(NotFoundError):
            services.purchase_orders.delete(order.id)
        assert services.ledger.get("A", "W1").cantidad == 4


class TestReceive:

    def test_full_receipt(self, services):
        order = _order(services, ("A", 10, Decimal("2.5")), ("B", 4, Decimal("10")))

        result = services.purchase_orders.receive(
            order.id,
            "W1",
            [ReceiveLine(item="A", cantidad=10), ReceiveLine(item="B", cantidad=4)],
            actor="bodega",
        )

        assert result.order.estado == "recibido"
        assert [line.recibido for line in result.order.lines] == [10, 4]
        assert [m.cantidad for m in result.movements] == [10, 4]
        assert all(m.referencia_tipo == "purchaseOrder" for m in result.movements)
        assert result.skipped == []
        assert services.ledger.get("A", "W1").costo_promedio == Decimal("2.5")
        assert services.ledger.get("B", "W1").cantidad == 4

    def test_partial_receipt_then_remaining(self, services):
        order = _order(services, ("A", 10, None))

        first = services.purchase_orders.receive(order.id, "W1", [ReceiveLine(item="A", cantidad=4)])
        assert first.order.estado == "parcial"

        second = services.purchase_orders.receive(order.id, "W1", [ReceiveLine(item="A", cantidad=50)])
        assert second.movements[0].cantidad == 6
        assert second.order.estado == "recibido"
        assert services.ledger.get("A", "W1").cantidad == 10

    def test_fully_received_line_is_skipped(self, services):
        order = _order(services, ("A", 10, None))
        services.purchase_orders.receive(order.id, "W1", [ReceiveLine(item="A", cantidad=10)])

        result = services.purchase_orders.receive(order.id, "W1", [ReceiveLine(item="A", cantidad=3)])

        assert result.skipped == [0]
        assert result.movements == []
        assert services.ledger.get("A", "W1").cantidad == 10

    def test_replay_with_same_key_returns_original_movements(self, services):
        order = _order(services, ("A", 10, None), ("B", 5, None))
        lines = [ReceiveLine(item="A", cantidad=10), ReceiveLine(item="B", cantidad=5)]

        first = services.purchase_orders.receive(order.id, "W1", lines, idempotency_key="rcv-1")
        second = services.purchase_orders.receive(order.id, "W1", lines, idempotency_key="rcv-1")

        assert second.replayed is True
        assert [m.id for m in second.movements] == [m.id for m in first.movements]
        assert services.ledger.get("A", "W1").cantidad == 10
        assert services.ledger.get("B", "W1").cantidad == 5

    def test_per_line_keys_use_line_index(self, services):
        order = _order(services, ("A", 10, None))

        result = services.purchase_orders.receive(
            order.id,
            "W1",
            [ReceiveLine(item="A", cantidad=3), ReceiveLine(item="A", cantidad=3)],
            idempotency_key="rcv-2",
        )

        assert [m.idempotency_key for m in result.movements] == ["rcv-2-0", "rcv-2-1"]
        assert services.ledger.get("A", "W1").cantidad == 6

    def test_item_not_on_order_aborts_whole_batch(self, services):
        order = _order(services, ("A", 10, None))

        with pytest.raises(ValidationError, match="Z"):
            services.purchase_orders.receive(
                order.id,
                "W1",
                [ReceiveLine(item="A", cantidad=10), ReceiveLine(item="Z", cantidad=1)],
            )

        assert services.ledger.find("A", "W1") is None
        assert services.purchase_orders.get(order.id).estado == "pendiente"

    def test_key_bound_to_other_order_conflicts(self, services):
        first = _order(services, ("A", 10, None))
        second = _order(services, ("A", 10, None))
        services.purchase_orders.receive(first.id, "W1", [ReceiveLine(item="A", cantidad=1)], idempotency_key="k")

        with pytest.raises(ConflictError):
            services.purchase_orders.receive(
                second.id, "W1", [ReceiveLine(item="A", cantidad=1)], idempotency_key="k"
            )

    @pytest.mark.parametrize(
        "warehouse, lines",
        [
            ("", [ReceiveLine(item="A", cantidad=1)]),
            ("W1", []),
            ("W1", [ReceiveLine(item="A", cantidad=0)]),
            ("W1", [ReceiveLine(item=None, cantidad=1)]),
        ],
    )
    def test_invalid_requests(self, services, warehouse, lines):
        order = _order(services, ("A", 10, None))

        with pytest.raises(ValidationError):
            services.purchase_orders.receive(order.id, warehouse, lines)

    def test_unknown_order(self, services):
        with pytest.raises(NotFoundError):
            services.purchase_orders.receive(999, "W1", [ReceiveLine(item="A", cantidad=1)])
