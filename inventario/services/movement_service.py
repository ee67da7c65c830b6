from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Callable, Optional

from inventario.audit import log_event
from inventario.errors import ConflictError, InsufficientStockError, NotFoundError, ValidationError
from inventario.models import (
    Movement,
    MovementKind,
    MovementType,
    PurchaseOrder,
    Reservation,
    ReservationEstado,
    Stock,
)
from inventario.repositories.movement_repository import MovementRepository
from inventario.repositories.order_repository import OrderRepository
from inventario.repositories.reservation_repository import ReservationRepository
from inventario.schemas import MovementCreate
from inventario.services.idempotency import IdempotencyGuard
from inventario.services.stock_ledger import StockLedger
from inventario.unit_of_work import UnitOfWork

logger = logging.getLogger(__name__)

PURCHASE_ORDER_REF = "purchaseOrder"
SALES_ORDER_REF = "salesOrder"
WORK_ORDER_REF = "workOrder"
RESERVATION_REF = "reservation"

_COST_QUANT = Decimal("0.0001")

_CONSUMABLE_STATES = (ReservationEstado.ACTIVO.value, ReservationEstado.PENDIENTE_RETIRO.value)


def check_stock_invariant(stock: Stock) -> None:
    if stock.cantidad < 0 or stock.reservado < 0 or stock.reservado > stock.cantidad:
        raise ConflictError(
            f"Invariante de stock violado para {stock.item} en {stock.warehouse} "
            f"(cantidad {stock.cantidad}, reservado {stock.reservado})"
        )


class MovementService:
    """Applies stock movements to the ledger; the only writer of stock rows."""

    def __init__(self, uow: UnitOfWork, ledger: StockLedger, idempotency: IdempotencyGuard):
        self._uow = uow
        self._db = uow.session
        self._ledger = ledger
        self._idempotency = idempotency
        self._movements = MovementRepository(self._db)
        self._reservations = ReservationRepository(self._db)
        self._orders = OrderRepository(self._db)
        self._handlers: dict[
            MovementKind,
            Callable[[MovementCreate, Optional[Reservation]], tuple[Stock, Optional[Decimal]]],
        ] = {
            MovementKind.ENTRADA: self._apply_entrada,
            MovementKind.SALIDA: self._apply_salida,
            MovementKind.TRANSFERENCIA: self._apply_transferencia,
            MovementKind.AJUSTE: self._apply_ajuste,
        }

    def apply_movement(
        self,
        payload: MovementCreate,
        actor: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Movement:
        key = idempotency_key or payload.idempotency_key
        with self._uow.transaction():
            if key:
                existing = self._movements.get_by_idempotency_key(key)
                if existing is not None:
                    self._ensure_same_movement(existing, payload, key)
                    logger.info(
                        "movement replayed",
                        extra={"movement_id": existing.id, "idempotency_key": key},
                    )
                    return existing

            tipo = self._parse_tipo(payload.tipo)
            if not payload.item:
                raise ValidationError("item es obligatorio")
            if payload.cantidad is None or payload.cantidad <= 0:
                raise ValidationError("cantidad debe ser mayor que 0")
            if payload.costo_unitario is not None and payload.costo_unitario < 0:
                raise ValidationError("costo_unitario debe ser >= 0")

            reservation = None
            if payload.reserva is not None:
                if tipo.kind not in (MovementKind.SALIDA, MovementKind.TRANSFERENCIA):
                    raise ValidationError("reserva solo aplica a salidas y transferencias")
                reservation = self._load_reservation(payload)

            stock, costo = self._handlers[tipo.kind](payload, reservation)

            movement = Movement(
                tipo=tipo.value,
                item=payload.item,
                cantidad=payload.cantidad,
                warehouse_from=payload.warehouse_from,
                warehouse_to=payload.warehouse_to,
                costo_unitario=costo,
                referencia=payload.referencia,
                referencia_tipo=payload.referencia_tipo,
                reserva_id=payload.reserva,
                lote=payload.lote,
                motivo=payload.motivo,
                metadatos=payload.metadatos,
                idempotency_key=key,
                resultado_cantidad=stock.cantidad,
                resultado_reservado=stock.reservado,
                actor=actor,
            )
            self._movements.add(movement)
            self._db.flush()

            log_event(
                self._db,
                actor,
                action="movement_create",
                entity_type="movement",
                entity_id=str(movement.id),
                detail={
                    "tipo": movement.tipo,
                    "item": movement.item,
                    "cantidad": movement.cantidad,
                    "warehouse_from": movement.warehouse_from,
                    "warehouse_to": movement.warehouse_to,
                    "reserva": movement.reserva_id,
                },
            )
            logger.info(
                "movement applied",
                extra={
                    "movement_id": movement.id,
                    "tipo": movement.tipo,
                    "item": movement.item,
                    "cantidad": movement.cantidad,
                    "stock_cantidad": stock.cantidad,
                    "stock_reservado": stock.reservado,
                },
            )
            return movement

    def reserve_stock(self, item: str, warehouse: str, cantidad: int) -> Stock:
        """Claim ``cantidad`` units of available stock by raising ``reservado``."""
        with self._uow.transaction():
            stock = self._ledger.find(item, warehouse, lock=True)
            disponible = stock.disponible if stock is not None else 0
            if stock is None or cantidad > disponible:
                raise InsufficientStockError(item, warehouse, cantidad, disponible)
            stock.reservado = stock.reservado + cantidad
            self._flush(stock)
            return stock

    def release_stock(self, item: str, warehouse: str, cantidad: int) -> Optional[Stock]:
        """Give back reserved units without touching ``cantidad``."""
        with self._uow.transaction():
            stock = self._ledger.find(item, warehouse, lock=True)
            if stock is None:
                return None
            stock.reservado = max(0, stock.reservado - cantidad)
            self._flush(stock)
            return stock

    def get_movement(self, movement_id: int) -> Movement:
        movement = self._movements.get(movement_id)
        if movement is None:
            raise NotFoundError("Movimiento no encontrado", movement_id=movement_id)
        return movement

    def list_movements(self, ids: list[int]) -> list[Movement]:
        return self._movements.list_by_ids(ids)

    def query_movements(
        self,
        item: Optional[str] = None,
        tipo: Optional[str] = None,
        warehouse: Optional[str] = None,
        desde: Optional[datetime] = None,
        hasta: Optional[datetime] = None,
        page: int = 1,
        limit: int = 25,
    ) -> tuple[int, list[Movement]]:
        if page < 1:
            raise ValidationError("page debe ser >= 1")
        if limit < 1 or limit > 500:
            raise ValidationError("limit debe estar entre 1 y 500")
        return self._movements.query(
            item=item,
            tipo=tipo,
            warehouse=warehouse,
            desde=desde,
            hasta=hasta,
            page=page,
            limit=limit,
        )

    def _parse_tipo(self, raw: Optional[str]) -> MovementType:
        try:
            return MovementType((raw or "").strip().lower())
        except ValueError as e:
            raise ValidationError(f"tipo de movimiento desconocido: {raw!r}") from e

    def _ensure_same_movement(self, existing: Movement, payload: MovementCreate, key: str) -> None:
        requested = (
            (payload.tipo or "").lower(),
            payload.item,
            payload.cantidad,
            payload.warehouse_from,
            payload.warehouse_to,
            payload.reserva,
        )
        stored = (
            existing.tipo,
            existing.item,
            existing.cantidad,
            existing.warehouse_from,
            existing.warehouse_to,
            existing.reserva_id,
        )
        if requested != stored:
            raise ConflictError(
                f"idempotencyKey '{key}' ya fue usada para otro movimiento",
                movement_id=existing.id,
            )

    def _load_reservation(self, payload: MovementCreate) -> Reservation:
        reservation = self._reservations.get(payload.reserva, for_update=True)
        if reservation is None:
            raise NotFoundError("Reserva no encontrada", reserva=payload.reserva)
        if reservation.item != payload.item or reservation.warehouse != payload.warehouse_from:
            raise ValidationError("La reserva no corresponde al item y almacén de origen")
        if reservation.estado not in _CONSUMABLE_STATES:
            raise ConflictError(
                f"La reserva {reservation.id} está en estado '{reservation.estado}'",
                reserva=reservation.id,
            )
        return reservation

    def _apply_entrada(
        self, payload: MovementCreate, reservation: Optional[Reservation]
    ) -> tuple[Stock, Optional[Decimal]]:
        if not payload.warehouse_to:
            raise ValidationError("warehouse_to es obligatorio para entradas")
        stock = self._ledger.get_or_create(payload.item, payload.warehouse_to, lock=True)
        self._give(stock, payload.cantidad, payload.costo_unitario)
        self._flush(stock)

        if payload.referencia_tipo == PURCHASE_ORDER_REF and payload.referencia:
            self._register_receipt(payload.referencia, payload.item, payload.cantidad)
        return stock, payload.costo_unitario

    def _apply_salida(
        self, payload: MovementCreate, reservation: Optional[Reservation]
    ) -> tuple[Stock, Optional[Decimal]]:
        if not payload.warehouse_from:
            raise ValidationError("warehouse_from es obligatorio para salidas")
        stock = self._ledger.find(payload.item, payload.warehouse_from, lock=True)
        if stock is None:
            raise InsufficientStockError(payload.item, payload.warehouse_from, payload.cantidad, 0)
        self._take(stock, payload.cantidad, reservation)
        self._flush(stock)
        return stock, payload.costo_unitario

    def _apply_transferencia(
        self, payload: MovementCreate, reservation: Optional[Reservation]
    ) -> tuple[Stock, Optional[Decimal]]:
        if not payload.warehouse_from or not payload.warehouse_to:
            raise ValidationError(
                "warehouse_from y warehouse_to son obligatorios para transferencia"
            )
        if payload.warehouse_from == payload.warehouse_to:
            raise ValidationError("warehouse_from y warehouse_to deben ser distintos")

        stocks = self._ledger.lock_many(payload.item, (payload.warehouse_from, payload.warehouse_to))
        source = stocks[payload.warehouse_from]
        target = stocks[payload.warehouse_to]

        costo = payload.costo_unitario
        if costo is None:
            costo = Decimal(source.costo_promedio or 0)

        self._take(source, payload.cantidad, reservation)
        self._give(target, payload.cantidad, costo)
        self._flush(source, target)
        return target, costo

    def _apply_ajuste(
        self, payload: MovementCreate, reservation: Optional[Reservation]
    ) -> tuple[Stock, Optional[Decimal]]:
        if payload.warehouse_to:
            stock = self._ledger.get_or_create(payload.item, payload.warehouse_to, lock=True)
            self._give(stock, payload.cantidad, payload.costo_unitario)
        elif payload.warehouse_from:
            stock = self._ledger.get_or_create(payload.item, payload.warehouse_from, lock=True)
            nueva = max(0, stock.cantidad - payload.cantidad)
            if nueva < stock.reservado:
                # Reserved units must be released before a count can remove them.
                raise InsufficientStockError(
                    payload.item, payload.warehouse_from, payload.cantidad, stock.disponible
                )
            stock.cantidad = nueva
        else:
            raise ValidationError("warehouse_from o warehouse_to es obligatorio para ajustes")
        self._flush(stock)
        return stock, payload.costo_unitario

    def _take(self, stock: Stock, cantidad: int, reservation: Optional[Reservation]) -> None:
        claimed = min(cantidad, reservation.pendiente) if reservation is not None else 0
        disponible = stock.disponible
        if cantidad - claimed > disponible:
            raise InsufficientStockError(stock.item, stock.warehouse, cantidad, disponible + claimed)

        stock.cantidad = stock.cantidad - cantidad
        if reservation is not None and claimed > 0:
            stock.reservado = max(0, stock.reservado - claimed)
            reservation.cantidad_consumida = reservation.cantidad_consumida + claimed
            if reservation.cantidad_consumida >= reservation.cantidad:
                reservation.estado = ReservationEstado.CONSUMIDO.value
            logger.info(
                "reservation consumed",
                extra={
                    "reserva": reservation.id,
                    "consumido": claimed,
                    "estado": reservation.estado,
                },
            )

    def _give(self, stock: Stock, cantidad: int, costo: Optional[Decimal]) -> None:
        old_qty = stock.cantidad or 0
        new_qty = old_qty + cantidad
        if costo is not None:
            old_avg = Decimal(stock.costo_promedio or 0)
            stock.costo_promedio = ((old_avg * old_qty + Decimal(costo) * cantidad) / new_qty).quantize(
                _COST_QUANT
            )
        stock.cantidad = new_qty

    def _flush(self, *stocks: Stock) -> None:
        for stock in stocks:
            check_stock_invariant(stock)
        self._db.flush()

    def _register_receipt(self, referencia: str, item: str, cantidad: int) -> PurchaseOrder:
        order = self._find_purchase_order(referencia)
        if order is None:
            raise NotFoundError("PurchaseOrder no encontrada", referencia=referencia)
        line = order.line_for(item)
        if line is None:
            raise ValidationError(f"Item {item} no está en esta PurchaseOrder", purchase_order=order.id)
        line.recibido = min(line.cantidad, line.recibido + cantidad)
        order.recalcular_estado()
        self._db.flush()
        return order

    def _find_purchase_order(self, referencia: str) -> Optional[PurchaseOrder]:
        ref = referencia.strip()
        if ref.isdigit():
            order = self._orders.get_purchase_order(int(ref))
            if order is not None:
                return order
        return self._orders.get_purchase_order_by_numero(ref)
