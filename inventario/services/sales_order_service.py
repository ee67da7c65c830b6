from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Optional

from inventario.audit import log_event
from inventario.errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from inventario.models import (
    Movement,
    Reservation,
    SalesOrder,
    SalesOrderEstado,
    SalesOrderLine,
)
from inventario.repositories.order_repository import OrderRepository
from inventario.schemas import (
    MovementCreate,
    MovementRead,
    ReservationRead,
    SalesOrderCreate,
    SalesOrderLineCreate,
    SalesOrderRead,
    SalesOrderResult,
    SalesOrderUpdate,
    ShipLine,
)
from inventario.services.idempotency import IdempotencyGuard
from inventario.services.movement_service import SALES_ORDER_REF, MovementService
from inventario.services.reservation_service import ReservationService
from inventario.services.stock_ledger import StockLedger
from inventario.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

OP_CONFIRM = "sales_order.confirm"
OP_SHIP = "sales_order.ship"
OP_CANCEL = "sales_order.cancel"

_CONFIRMABLE = (SalesOrderEstado.BORRADOR.value, SalesOrderEstado.PENDIENTE.value)
_SHIPPABLE = (SalesOrderEstado.CONFIRMADA.value, SalesOrderEstado.PARCIAL.value)
_CANCELLABLE = _CONFIRMABLE + _SHIPPABLE
_ESTADOS = {e.value for e in SalesOrderEstado}


class SalesOrderService:
    """Drives a sales order through confirm, ship and cancel.

    Confirmation reserves every line or none of them. Shipping consumes
    reservations through ``venta`` movements, either in full or for the
    requested lines only. Cancellation releases whatever is still reserved.
    """

    def __init__(
        self,
        uow: UnitOfWork,
        ledger: StockLedger,
        movements: MovementService,
        reservations: ReservationService,
        idempotency: IdempotencyGuard,
    ):
        self._uow = uow
        self._db = uow.session
        self._ledger = ledger
        self._movements = movements
        self._reservations = reservations
        self._idempotency = idempotency
        self._orders = OrderRepository(self._db)

    def _generate_numero(self, prefix: str = "SO-", width: int = 6) -> str:
        existing = self._orders.list_numeros_starting_with(SalesOrder, prefix)
        max_n = 0
        for numero in existing:
            suffix = numero[len(prefix) :]
            if suffix.isdigit():
                max_n = max(max_n, int(suffix))
        return f"{prefix}{str(max_n + 1).zfill(width)}"

    def get(self, order_id: int) -> SalesOrder:
        order = self._orders.get_sales_order(order_id)
        if order is None:
            raise NotFoundError("SalesOrder no encontrada", sales_order=order_id)
        return order

    def create(self, payload: SalesOrderCreate, actor: Optional[str] = None) -> SalesOrder:
        with self._uow.transaction():
            numero = (payload.numero or "").strip() or self._generate_numero()
            if self._orders.get_sales_order_by_numero(numero) is not None:
                raise ConflictError(f"SalesOrder {numero} ya existe", numero=numero)

            lines = self._build_lines(payload.lines)

            order = SalesOrder(
                numero=numero,
                cliente=payload.cliente.strip() if payload.cliente and payload.cliente.strip() else None,
                estado=SalesOrderEstado.BORRADOR.value,
                creado_por=actor,
                lines=lines,
            )
            self._orders.add(order)
            self._db.flush()

            log_event(
                self._db,
                actor,
                action="sales_order_create",
                entity_type="sales_order",
                entity_id=str(order.id),
                detail={"numero": numero, "lines": len(lines)},
            )
            logger.info("sales order created", extra={"sales_order": order.id, "numero": numero})
            return order

    def list(self, estado: Optional[str] = None) -> list[SalesOrder]:
        if estado and estado not in _ESTADOS:
            raise ValidationError(f"estado de orden desconocido: {estado!r}")
        return self._orders.list_sales_orders(estado)

    def update(
        self, order_id: int, payload: SalesOrderUpdate, actor: Optional[str] = None
    ) -> SalesOrder:
        """Edit a draft. Once confirmed the lines are backed by reservations."""
        with self._uow.transaction():
            order = self._lock(order_id)
            if order.estado != SalesOrderEstado.BORRADOR.value:
                raise ConflictError(
                    f"La orden {order.numero} solo se puede editar en borrador (estado '{order.estado}')",
                    sales_order=order.id,
                )

            changes: dict[str, object] = {}
            if payload.cliente is not None:
                order.cliente = payload.cliente.strip() or None
                changes["cliente"] = order.cliente
            if payload.lines is not None:
                order.lines = self._build_lines(payload.lines)
                changes["lines"] = len(order.lines)
            self._db.flush()

            log_event(
                self._db,
                actor,
                action="sales_order_update",
                entity_type="sales_order",
                entity_id=str(order.id),
                detail=changes,
            )
            logger.info("sales order updated", extra={"sales_order": order.id})
            return order

    def confirm(
        self,
        order_id: int,
        warehouse: Optional[str],
        actor: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> SalesOrderResult:
        warehouse = (warehouse or "").strip()
        if not warehouse:
            raise ValidationError("warehouse es obligatorio")

        with self._uow.transaction():
            record = self._idempotency.lookup(idempotency_key, OP_CONFIRM, str(order_id))
            if record is not None:
                return self._replay(order_id)

            order = self._lock(order_id)
            if order.estado not in _CONFIRMABLE:
                raise ConflictError(
                    f"La orden {order.numero} no se puede confirmar en estado '{order.estado}'",
                    sales_order=order.id,
                )
            if not order.lines:
                raise ValidationError("La orden no tiene líneas", sales_order=order.id)

            # All lines are checked before any reservation is taken.
            needed: dict[str, int] = defaultdict(int)
            for line in order.lines:
                needed[line.item] += line.cantidad
            for item in sorted(needed):
                stock = self._ledger.find(item, warehouse, lock=True)
                disponible = stock.disponible if stock is not None else 0
                if needed[item] > disponible:
                    logger.warning(
                        "sales order confirm rejected",
                        extra={"sales_order": order.id, "item": item, "disponible": disponible},
                    )
                    raise InsufficientStockError(item, warehouse, needed[item], disponible)

            reservations: list[Reservation] = []
            for line in order.lines:
                reservation = self._reservations.reserve(
                    line.item,
                    warehouse,
                    line.cantidad,
                    actor,
                    sales_order_id=order.id,
                    sales_order_line_id=line.id,
                    motivo=f"Orden de venta {order.numero}",
                )
                line.reservado = line.cantidad
                reservations.append(reservation)

            order.estado = SalesOrderEstado.CONFIRMADA.value
            order.warehouse = warehouse
            order.fecha_confirmacion = datetime.now(timezone.utc)
            order.confirm_idempotency_key = idempotency_key
            self._db.flush()

            self._idempotency.remember(
                idempotency_key, OP_CONFIRM, str(order.id), [r.id for r in reservations]
            )
            log_event(
                self._db,
                actor,
                action="sales_order_confirm",
                entity_type="sales_order",
                entity_id=str(order.id),
                detail={"warehouse": warehouse, "reservations": [r.id for r in reservations]},
            )
            logger.info(
                "sales order confirmed",
                extra={"sales_order": order.id, "reservations": len(reservations)},
            )
            return self._result(order, reservations=reservations)

    def ship(
        self,
        order_id: int,
        items: Optional[list[ShipLine]] = None,
        actor: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> SalesOrderResult:
        with self._uow.transaction():
            record = self._idempotency.lookup(idempotency_key, OP_SHIP, str(order_id))
            if record is not None:
                return self._replay(order_id, self._movements.list_movements(record.result_ids))

            order = self._lock(order_id)
            if order.estado not in _SHIPPABLE:
                raise ConflictError(
                    f"La orden {order.numero} no se puede despachar en estado '{order.estado}'",
                    sales_order=order.id,
                )

            by_line = {
                r.sales_order_line_id: r
                for r in self._reservations.list_for_sales_order(order.id)
                if not r.is_terminal
            }

            movements: list[Movement] = []
            if items is not None:
                if not items:
                    raise ValidationError("items no puede estar vacío", sales_order=order.id)
                for index, requested in enumerate(items):
                    item = (requested.item or "").strip()
                    if requested.cantidad <= 0:
                        raise ValidationError(f"Línea {index} inválida", line=index)
                    line = self._pending_line(order, item)
                    reservation = by_line.get(line.id)
                    if reservation is None or reservation.pendiente <= 0:
                        raise ValidationError(
                            f"La línea de {item} no tiene reserva activa", line=index, item=item
                        )
                    cantidad = min(requested.cantidad, line.pendiente, reservation.pendiente)
                    movements.append(
                        self._ship_line(
                            order,
                            line,
                            reservation,
                            cantidad,
                            actor,
                            IdempotencyGuard.line_key(idempotency_key, index),
                        )
                    )
            else:
                for index, line in enumerate(order.lines):
                    reservation = by_line.get(line.id)
                    if reservation is None or reservation.pendiente <= 0:
                        continue
                    movements.append(
                        self._ship_line(
                            order,
                            line,
                            reservation,
                            reservation.pendiente,
                            actor,
                            IdempotencyGuard.line_key(idempotency_key, index),
                        )
                    )

            if not movements:
                raise ValidationError("No hay cantidades pendientes de despacho", sales_order=order.id)

            if order.fully_delivered:
                order.estado = SalesOrderEstado.DESPACHADA.value
                order.fecha_despacho = datetime.now(timezone.utc)
            else:
                order.estado = SalesOrderEstado.PARCIAL.value
            if idempotency_key:
                order.ship_idempotency_key = idempotency_key
            self._db.flush()

            self._idempotency.remember(
                idempotency_key, OP_SHIP, str(order.id), [m.id for m in movements]
            )
            log_event(
                self._db,
                actor,
                action="sales_order_ship",
                entity_type="sales_order",
                entity_id=str(order.id),
                detail={"movements": [m.id for m in movements], "estado": order.estado},
            )
            logger.info(
                "sales order shipped",
                extra={"sales_order": order.id, "movements": len(movements), "estado": order.estado},
            )
            return self._result(
                order,
                reservations=self._reservations.list_for_sales_order(order.id),
                movements=movements,
            )

    def cancel(
        self,
        order_id: int,
        actor: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> SalesOrderResult:
        with self._uow.transaction():
            record = self._idempotency.lookup(idempotency_key, OP_CANCEL, str(order_id))
            if record is not None:
                return self._replay(order_id)

            order = self._lock(order_id)
            if order.estado not in _CANCELLABLE:
                raise ConflictError(
                    f"La orden {order.numero} no se puede cancelar en estado '{order.estado}'",
                    sales_order=order.id,
                )

            released: list[Reservation] = []
            for reservation in self._reservations.list_for_sales_order(order.id):
                if reservation.is_terminal:
                    continue
                self._reservations.release_for_order(reservation.id, actor=actor)
                released.append(reservation)
            for line in order.lines:
                line.reservado = 0

            order.estado = SalesOrderEstado.CANCELADA.value
            order.fecha_cancelacion = datetime.now(timezone.utc)
            order.cancel_idempotency_key = idempotency_key
            self._db.flush()

            self._idempotency.remember(
                idempotency_key, OP_CANCEL, str(order.id), [r.id for r in released]
            )
            log_event(
                self._db,
                actor,
                action="sales_order_cancel",
                entity_type="sales_order",
                entity_id=str(order.id),
                detail={"released": [r.id for r in released]},
            )
            logger.info(
                "sales order cancelled",
                extra={"sales_order": order.id, "released": len(released)},
            )
            return self._result(order, reservations=self._reservations.list_for_sales_order(order.id))

    def _lock(self, order_id: int) -> SalesOrder:
        order = self._orders.get_sales_order(order_id, for_update=True)
        if order is None:
            raise NotFoundError("SalesOrder no encontrada", sales_order=order_id)
        return order

    def _build_lines(self, lines: list[SalesOrderLineCreate]) -> list[SalesOrderLine]:
        built = []
        for line in lines:
            item = line.item.strip()
            if not item:
                raise ValidationError("item must not be empty")
            if line.precio_unitario < 0:
                raise ValidationError("precio_unitario debe ser >= 0")
            built.append(
                SalesOrderLine(
                    item=item,
                    cantidad=line.cantidad,
                    precio_unitario=line.precio_unitario,
                    reservado=0,
                    entregado=0,
                )
            )
        return built

    def _pending_line(self, order: SalesOrder, item: str) -> SalesOrderLine:
        candidates = [line for line in order.lines if line.item == item]
        if not candidates:
            raise ValidationError(f"Item {item} no está en esta orden", item=item)
        for line in candidates:
            if line.pendiente > 0:
                return line
        raise ValidationError(f"La línea de {item} ya fue despachada completamente", item=item)

    def _ship_line(
        self,
        order: SalesOrder,
        line: SalesOrderLine,
        reservation: Reservation,
        cantidad: int,
        actor: Optional[str],
        idempotency_key: Optional[str],
    ) -> Movement:
        movement = self._movements.apply_movement(
            MovementCreate(
                tipo="venta",
                item=line.item,
                cantidad=cantidad,
                warehouse_from=reservation.warehouse,
                referencia=order.numero,
                referencia_tipo=SALES_ORDER_REF,
                reserva=reservation.id,
                motivo=f"Despacho orden {order.numero}",
            ),
            actor=actor,
            idempotency_key=idempotency_key,
        )
        line.entregado = line.entregado + cantidad
        line.reservado = max(0, line.reservado - cantidad)
        return movement

    def _replay(self, order_id: int, movements: Optional[list[Movement]] = None) -> SalesOrderResult:
        order = self.get(order_id)
        return self._result(
            order,
            reservations=self._reservations.list_for_sales_order(order.id),
            movements=movements,
            replayed=True,
        )

    def _result(
        self,
        order: SalesOrder,
        reservations: Optional[list[Reservation]] = None,
        movements: Optional[list[Movement]] = None,
        replayed: bool = False,
    ) -> SalesOrderResult:
        return SalesOrderResult(
            order=SalesOrderRead.model_validate(order),
            reservations=[ReservationRead.model_validate(r) for r in reservations or []],
            movements=[MovementRead.model_validate(m) for m in movements or []],
            replayed=replayed,
        )
