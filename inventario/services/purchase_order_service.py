from __future__ import annotations

import logging
from typing import Optional

from inventario.audit import log_event
from inventario.errors import ConflictError, NotFoundError, ValidationError
from inventario.models import Movement, PurchaseOrder, PurchaseOrderEstado, PurchaseOrderLine
from inventario.repositories.order_repository import OrderRepository
from inventario.schemas import (
    MovementCreate,
    MovementRead,
    PurchaseOrderCreate,
    PurchaseOrderRead,
    PurchaseOrderLineCreate,
    PurchaseOrderUpdate,
    ReceiveLine,
    ReceiveResult,
)
from inventario.services.idempotency import IdempotencyGuard
from inventario.services.movement_service import PURCHASE_ORDER_REF, MovementService
from inventario.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

OP_RECEIVE = "purchase_order.receive"

_ESTADOS = {e.value for e in PurchaseOrderEstado}


class PurchaseOrderService:
    def __init__(self, uow: UnitOfWork, movements: MovementService, idempotency: IdempotencyGuard):
        self._uow = uow
        self._db = uow.session
        self._movements = movements
        self._idempotency = idempotency
        self._orders = OrderRepository(self._db)

    def _generate_numero(self, prefix: str = "PO-", width: int = 6) -> str:
        existing = self._orders.list_numeros_starting_with(PurchaseOrder, prefix)
        max_n = 0
        for numero in existing:
            suffix = numero[len(prefix) :]
            if suffix.isdigit():
                max_n = max(max_n, int(suffix))
        return f"{prefix}{str(max_n + 1).zfill(width)}"

    def get(self, order_id: int) -> PurchaseOrder:
        order = self._orders.get_purchase_order(order_id)
        if order is None:
            raise NotFoundError("PurchaseOrder no encontrada", purchase_order=order_id)
        return order

    def create(self, payload: PurchaseOrderCreate, actor: Optional[str] = None) -> PurchaseOrder:
        with self._uow.transaction():
            numero = (payload.numero or "").strip() or self._generate_numero()
            if self._orders.get_purchase_order_by_numero(numero) is not None:
                raise ConflictError(f"PurchaseOrder {numero} ya existe", numero=numero)

            lines = self._build_lines(payload.lines)

            order = PurchaseOrder(
                numero=numero,
                proveedor=payload.proveedor.strip() if payload.proveedor and payload.proveedor.strip() else None,
                estado=PurchaseOrderEstado.PENDIENTE.value,
                creado_por=actor,
                lines=lines,
            )
            self._orders.add(order)
            self._db.flush()

            log_event(
                self._db,
                actor,
                action="purchase_order_create",
                entity_type="purchase_order",
                entity_id=str(order.id),
                detail={"numero": numero, "lines": len(lines)},
            )
            logger.info("purchase order created", extra={"purchase_order": order.id, "numero": numero})
            return order

    def list(self, estado: Optional[str] = None) -> list[PurchaseOrder]:
        if estado and estado not in _ESTADOS:
            raise ValidationError(f"estado de orden desconocido: {estado!r}")
        return self._orders.list_purchase_orders(estado)

    def update(
        self, order_id: int, payload: PurchaseOrderUpdate, actor: Optional[str] = None
    ) -> PurchaseOrder:
        """Change the supplier or replace the lines of an order.

        Lines can only be replaced while nothing has been received.
        """
        with self._uow.transaction():
            order = self._lock(order_id)
            changes: dict[str, object] = {}

            if payload.proveedor is not None:
                order.proveedor = payload.proveedor.strip() or None
                changes["proveedor"] = order.proveedor
            if payload.lines is not None:
                if any(line.recibido > 0 for line in order.lines):
                    raise ConflictError(
                        f"La orden {order.numero} ya tiene recepciones; no se pueden cambiar las líneas",
                        purchase_order=order.id,
                    )
                order.lines = self._build_lines(payload.lines)
                order.recalcular_estado()
                changes["lines"] = len(order.lines)
            self._db.flush()

            log_event(
                self._db,
                actor,
                action="purchase_order_update",
                entity_type="purchase_order",
                entity_id=str(order.id),
                detail=changes,
            )
            logger.info("purchase order updated", extra={"purchase_order": order.id})
            return order

    def delete(self, order_id: int, actor: Optional[str] = None) -> PurchaseOrder:
        """Soft delete: the order disappears from reads but its movements stay."""
        with self._uow.transaction():
            order = self._lock(order_id)
            order.eliminado = True
            self._db.flush()

            log_event(
                self._db,
                actor,
                action="purchase_order_delete",
                entity_type="purchase_order",
                entity_id=str(order.id),
                detail={"numero": order.numero, "estado": order.estado},
            )
            logger.info("purchase order deleted", extra={"purchase_order": order.id})
            return order

    def receive(
        self,
        order_id: int,
        warehouse: Optional[str],
        lines: list[ReceiveLine],
        actor: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> ReceiveResult:
        """Receive a batch of goods against one purchase order.

        Every line becomes an ``entrada`` movement in a single transaction.
        Lines whose order line is already fully received are skipped and
        reported by index; any other failure aborts the whole batch.
        """
        warehouse = (warehouse or "").strip()
        if not warehouse:
            raise ValidationError("warehouse es obligatorio")
        if not lines:
            raise ValidationError("items no puede estar vacío")

        outermost = not self._uow.active
        try:
            with self._uow.transaction():
                record = self._idempotency.lookup(idempotency_key, OP_RECEIVE, str(order_id))
                if record is not None:
                    order = self.get(order_id)
                    return self._result(
                        order, self._movements.list_movements(record.result_ids), replayed=True
                    )

                order = self._lock(order_id)

                movements: list[Movement] = []
                skipped: list[int] = []
                for index, line in enumerate(lines):
                    item = (line.item or "").strip()
                    if not item or line.cantidad is None or line.cantidad <= 0:
                        raise ValidationError(f"Línea {index} inválida", line=index)

                    po_line = order.line_for(item)
                    if po_line is None:
                        raise ValidationError(
                            f"Item {item} no está en esta PurchaseOrder", line=index, item=item
                        )

                    remanente = po_line.remanente
                    if remanente <= 0:
                        skipped.append(index)
                        logger.info(
                            "purchase order line already received",
                            extra={"purchase_order": order.id, "item": item, "line": index},
                        )
                        continue

                    costo = line.costo_unitario if line.costo_unitario is not None else po_line.costo_unitario
                    movement = self._movements.apply_movement(
                        MovementCreate(
                            tipo="entrada",
                            item=item,
                            cantidad=min(line.cantidad, remanente),
                            warehouse_to=warehouse,
                            costo_unitario=costo,
                            referencia=str(order.id),
                            referencia_tipo=PURCHASE_ORDER_REF,
                            motivo=line.motivo or f"Recepción batch {order.numero}",
                        ),
                        actor=actor,
                        idempotency_key=IdempotencyGuard.line_key(idempotency_key, index),
                    )
                    movements.append(movement)

                self._idempotency.remember(
                    idempotency_key, OP_RECEIVE, str(order.id), [m.id for m in movements]
                )
                log_event(
                    self._db,
                    actor,
                    action="purchase_order_receive",
                    entity_type="purchase_order",
                    entity_id=str(order.id),
                    detail={
                        "warehouse": warehouse,
                        "movements": [m.id for m in movements],
                        "skipped": skipped,
                        "estado": order.estado,
                    },
                )
                logger.info(
                    "purchase order received",
                    extra={
                        "purchase_order": order.id,
                        "movements": len(movements),
                        "skipped": len(skipped),
                        "estado": order.estado,
                    },
                )
                return self._result(order, movements, skipped=skipped)
        except Exception:
            if outermost:
                logger.warning(
                    "purchase order receive rolled back",
                    extra={"purchase_order": order_id, "idempotency_key": idempotency_key},
                )
            raise

    def _result(
        self,
        order: PurchaseOrder,
        movements: list[Movement],
        skipped: Optional[list[int]] = None,
        replayed: bool = False,
    ) -> ReceiveResult:
        return ReceiveResult(
            order=PurchaseOrderRead.model_validate(order),
            movements=[MovementRead.model_validate(m) for m in movements],
            skipped=skipped or [],
            replayed=replayed,
        )

    def _lock(self, order_id: int) -> PurchaseOrder:
        order = self._orders.get_purchase_order(order_id, for_update=True)
        if order is None:
            raise NotFoundError("PurchaseOrder no encontrada", purchase_order=order_id)
        return order

    def _build_lines(self, lines: list[PurchaseOrderLineCreate]) -> list[PurchaseOrderLine]:
        built = []
        for line in lines:
            item = line.item.strip()
            if not item:
                raise ValidationError("item must not be empty")
            if line.costo_unitario is not None and line.costo_unitario < 0:
                raise ValidationError("costo_unitario debe ser >= 0")
            built.append(
                PurchaseOrderLine(
                    item=item,
                    cantidad=line.cantidad,
                    recibido=0,
                    costo_unitario=line.costo_unitario,
                )
            )
        return built
