from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from inventario.audit import log_event
from inventario.errors import ConflictError, NotFoundError, ValidationError
from inventario.models import Movement, Reservation, ReservationEstado
from inventario.repositories.reservation_repository import ReservationRepository
from inventario.schemas import MovementCreate
from inventario.services.idempotency import IdempotencyGuard
from inventario.services.movement_service import (
    RESERVATION_REF,
    WORK_ORDER_REF,
    MovementService,
)
from inventario.services.stock_ledger import StockLedger
from inventario.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

OP_RESERVE = "reservation.reserve"
OP_PICKUP = "reservation.pickup"
OP_DELIVER = "reservation.deliver"
OP_RELEASE = "reservation.release"
OP_CANCEL = "reservation.cancel"


class ReservationService:
    """Reservation lifecycle.

    ``activo -> pendiente_retiro -> consumido`` on the pickup path,
    ``activo -> liberado`` on release, and any non-terminal state may be
    cancelled. Stock is only touched through ``MovementService``.

    Reservations taken by a sales order belong to that order: they are
    delivered and released through ``SalesOrderService`` only.
    """

    def __init__(
        self,
        uow: UnitOfWork,
        ledger: StockLedger,
        movements: MovementService,
        idempotency: IdempotencyGuard,
    ):
        self._uow = uow
        self._db = uow.session
        self._ledger = ledger
        self._movements = movements
        self._idempotency = idempotency
        self._reservations = ReservationRepository(self._db)

    def get(self, reservation_id: int) -> Reservation:
        reservation = self._reservations.get(reservation_id)
        if reservation is None:
            raise NotFoundError("Reserva no encontrada", reserva=reservation_id)
        return reservation

    def list(
        self,
        estado: Optional[str] = None,
        item: Optional[str] = None,
        warehouse: Optional[str] = None,
    ) -> list[Reservation]:
        if estado and estado not in {e.value for e in ReservationEstado}:
            raise ValidationError(f"estado de reserva desconocido: {estado!r}")
        return self._reservations.list(estado=estado, item=item, warehouse=warehouse)

    def list_for_sales_order(self, sales_order_id: int) -> list[Reservation]:
        return self._reservations.list_for_sales_order(sales_order_id)

    def reserve(
        self,
        item: Optional[str],
        warehouse: Optional[str],
        cantidad: Optional[int],
        actor: Optional[str] = None,
        *,
        orden_trabajo: Optional[str] = None,
        sales_order_id: Optional[int] = None,
        sales_order_line_id: Optional[int] = None,
        motivo: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Reservation:
        item = (item or "").strip()
        warehouse = (warehouse or "").strip()
        if not item:
            raise ValidationError("item es obligatorio")
        if not warehouse:
            raise ValidationError("warehouse es obligatorio")
        if cantidad is None or cantidad <= 0:
            raise ValidationError("cantidad debe ser mayor que 0")

        reference = f"{item}@{warehouse}"
        with self._uow.transaction():
            record = self._idempotency.lookup(idempotency_key, OP_RESERVE, reference)
            if record is not None:
                return self.get(record.result_ids[0])

            self._movements.reserve_stock(item, warehouse, cantidad)
            reservation = Reservation(
                item=item,
                warehouse=warehouse,
                cantidad=cantidad,
                cantidad_consumida=0,
                estado=ReservationEstado.ACTIVO.value,
                orden_trabajo=orden_trabajo,
                sales_order_id=sales_order_id,
                sales_order_line_id=sales_order_line_id,
                motivo=motivo,
                reservado_por=actor,
            )
            self._reservations.add(reservation)
            self._db.flush()

            self._idempotency.remember(idempotency_key, OP_RESERVE, reference, [reservation.id])
            log_event(
                self._db,
                actor,
                action="reservation_create",
                entity_type="reservation",
                entity_id=str(reservation.id),
                detail={"item": item, "warehouse": warehouse, "cantidad": cantidad},
            )
            logger.info(
                "reservation created",
                extra={
                    "reserva": reservation.id,
                    "item": item,
                    "warehouse": warehouse,
                    "cantidad": cantidad,
                },
            )
            return reservation

    def mark_pending_pickup(
        self,
        reservation_id: int,
        actor: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Reservation:
        with self._uow.transaction():
            record = self._idempotency.lookup(idempotency_key, OP_PICKUP, str(reservation_id))
            if record is not None:
                return self.get(reservation_id)

            reservation = self._lock(reservation_id)
            if reservation.estado == ReservationEstado.PENDIENTE_RETIRO.value:
                return reservation
            if reservation.estado != ReservationEstado.ACTIVO.value:
                raise ConflictError(
                    f"La reserva {reservation.id} no está activa (estado '{reservation.estado}')",
                    reserva=reservation.id,
                )
            reservation.estado = ReservationEstado.PENDIENTE_RETIRO.value
            reservation.orden_salida = f"SAL-{reservation.id:08d}"
            self._db.flush()

            self._idempotency.remember(idempotency_key, OP_PICKUP, str(reservation.id), [reservation.id])
            log_event(
                self._db,
                actor,
                action="reservation_pickup",
                entity_type="reservation",
                entity_id=str(reservation.id),
                detail={"orden_salida": reservation.orden_salida},
            )
            logger.info(
                "reservation pending pickup",
                extra={"reserva": reservation.id, "orden_salida": reservation.orden_salida},
            )
            return reservation

    def deliver(
        self,
        reservation_id: int,
        actor: Optional[str] = None,
        recibido_por: Optional[str] = None,
        notas: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> tuple[Reservation, Movement]:
        with self._uow.transaction():
            record = self._idempotency.lookup(idempotency_key, OP_DELIVER, str(reservation_id))
            if record is not None:
                return self.get(reservation_id), self._movements.get_movement(record.result_ids[0])

            reservation = self._lock(reservation_id)
            self._ensure_standalone(reservation)
            if reservation.estado != ReservationEstado.PENDIENTE_RETIRO.value:
                raise ConflictError(
                    f"La reserva {reservation.id} debe estar pendiente de retiro "
                    f"(estado '{reservation.estado}')",
                    reserva=reservation.id,
                )

            if reservation.orden_trabajo:
                referencia, referencia_tipo = reservation.orden_trabajo, WORK_ORDER_REF
            else:
                referencia, referencia_tipo = reservation.orden_salida, RESERVATION_REF

            movement = self._movements.apply_movement(
                MovementCreate(
                    tipo="salida",
                    item=reservation.item,
                    cantidad=reservation.pendiente,
                    warehouse_from=reservation.warehouse,
                    referencia=referencia,
                    referencia_tipo=referencia_tipo,
                    reserva=reservation.id,
                    motivo=notas or f"Entrega de reserva {reservation.id}",
                ),
                actor=actor,
                idempotency_key=idempotency_key,
            )
            reservation.estado = ReservationEstado.CONSUMIDO.value
            reservation.fecha_entrega = datetime.now(timezone.utc)
            reservation.entregado_por = actor
            reservation.recibido_por = recibido_por
            self._db.flush()

            self._idempotency.remember(idempotency_key, OP_DELIVER, str(reservation.id), [movement.id])
            log_event(
                self._db,
                actor,
                action="reservation_deliver",
                entity_type="reservation",
                entity_id=str(reservation.id),
                detail={"movement_id": movement.id, "recibido_por": recibido_por},
            )
            logger.info(
                "reservation delivered",
                extra={"reserva": reservation.id, "movement_id": movement.id},
            )
            return reservation, movement

    def release(
        self,
        reservation_id: int,
        actor: Optional[str] = None,
        cancel: bool = False,
        idempotency_key: Optional[str] = None,
    ) -> Reservation:
        operation = OP_CANCEL if cancel else OP_RELEASE
        with self._uow.transaction():
            record = self._idempotency.lookup(idempotency_key, operation, str(reservation_id))
            if record is not None:
                return self.get(reservation_id)

            reservation = self._lock(reservation_id)
            self._ensure_standalone(reservation)
            return self._release(reservation, actor, cancel, operation, idempotency_key)

    def cancel(
        self,
        reservation_id: int,
        actor: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Reservation:
        return self.release(reservation_id, actor=actor, cancel=True, idempotency_key=idempotency_key)

    def release_for_order(self, reservation_id: int, actor: Optional[str] = None) -> Reservation:
        """Release a sales order's reservation. The caller updates the order lines."""
        with self._uow.transaction():
            reservation = self._lock(reservation_id)
            if reservation.sales_order_id is None:
                raise ConflictError(
                    f"La reserva {reservation.id} no pertenece a una orden de venta",
                    reserva=reservation.id,
                )
            return self._release(reservation, actor, False, OP_RELEASE, None)

    def _release(
        self,
        reservation: Reservation,
        actor: Optional[str],
        cancel: bool,
        operation: str,
        idempotency_key: Optional[str],
    ) -> Reservation:
        if reservation.is_terminal:
            raise ConflictError(
                f"La reserva {reservation.id} ya está finalizada (estado '{reservation.estado}')",
                reserva=reservation.id,
            )

        liberar = reservation.pendiente
        self._movements.release_stock(reservation.item, reservation.warehouse, liberar)
        reservation.estado = (
            ReservationEstado.CANCELADO.value if cancel else ReservationEstado.LIBERADO.value
        )
        self._db.flush()

        self._idempotency.remember(idempotency_key, operation, str(reservation.id), [reservation.id])
        log_event(
            self._db,
            actor,
            action="reservation_cancel" if cancel else "reservation_release",
            entity_type="reservation",
            entity_id=str(reservation.id),
            detail={"liberado": liberar},
        )
        logger.info(
            "reservation released",
            extra={"reserva": reservation.id, "estado": reservation.estado, "liberado": liberar},
        )
        return reservation

    def _lock(self, reservation_id: int) -> Reservation:
        reservation = self._reservations.get(reservation_id, for_update=True)
        if reservation is None:
            raise NotFoundError("Reserva no encontrada", reserva=reservation_id)
        return reservation

    def _ensure_standalone(self, reservation: Reservation) -> None:
        if reservation.sales_order_id is not None:
            raise ConflictError(
                f"La reserva {reservation.id} pertenece a la orden de venta "
                f"{reservation.sales_order_id}; usar la orden para despachar o cancelar",
                reserva=reservation.id,
                sales_order=reservation.sales_order_id,
            )
