from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


def _strip_or_none(v: Any) -> Any:
    if isinstance(v, str):
        v = v.strip()
        return v or None
    return v


class MovementCreate(BaseModel):
    tipo: Optional[str] = None
    item: Optional[str] = None
    cantidad: Optional[int] = None
    warehouse_from: Optional[str] = None
    warehouse_to: Optional[str] = None
    costo_unitario: Optional[Decimal] = None
    referencia: Optional[str] = None
    referencia_tipo: Optional[str] = None
    reserva: Optional[int] = None
    lote: Optional[str] = None
    motivo: Optional[str] = None
    metadatos: Optional[dict[str, Any]] = None
    idempotency_key: Optional[str] = None

    @field_validator(
        "tipo", "item", "warehouse_from", "warehouse_to", "referencia", "idempotency_key", mode="before"
    )
    @classmethod
    def strip_identifiers(cls, v: Any) -> Any:
        return _strip_or_none(v)


class MovementRead(BaseModel):
    id: int
    tipo: str
    item: str
    cantidad: int
    warehouse_from: Optional[str]
    warehouse_to: Optional[str]
    costo_unitario: Optional[Decimal]
    referencia: Optional[str]
    referencia_tipo: Optional[str]
    reserva_id: Optional[int]
    lote: Optional[str]
    motivo: Optional[str]
    idempotency_key: Optional[str]
    resultado_stock: Optional[dict[str, int]]
    fecha: datetime
    actor: Optional[str]

    model_config = {"from_attributes": True}


class MovementPage(BaseModel):
    total: int
    page: int
    limit: int
    movements: list[MovementRead]


class StockRead(BaseModel):
    item: str
    warehouse: str
    cantidad: int
    reservado: int
    disponible: int
    costo_promedio: Decimal

    model_config = {"from_attributes": True}


class StockSnapshot(BaseModel):
    item: str
    warehouse: Optional[str] = None
    cantidad: int = 0
    reservado: int = 0
    disponible: int = 0


class ReservationCreate(BaseModel):
    item: Optional[str] = None
    warehouse: Optional[str] = None
    cantidad: Optional[int] = None
    orden_trabajo: Optional[str] = None
    motivo: Optional[str] = None
    idempotency_key: Optional[str] = None

    @field_validator("item", "warehouse", "orden_trabajo", "idempotency_key", mode="before")
    @classmethod
    def strip_identifiers(cls, v: Any) -> Any:
        return _strip_or_none(v)


class ReservationAction(BaseModel):
    idempotency_key: Optional[str] = None


class DeliverRequest(ReservationAction):
    recibido_por: Optional[str] = None
    notas: Optional[str] = None


class ReservationRead(BaseModel):
    id: int
    item: str
    warehouse: str
    cantidad: int
    cantidad_consumida: int
    estado: str
    orden_trabajo: Optional[str]
    orden_salida: Optional[str]
    sales_order_id: Optional[int]
    motivo: Optional[str]
    reservado_por: Optional[str]
    entregado_por: Optional[str]
    recibido_por: Optional[str]
    fecha_entrega: Optional[datetime]

    model_config = {"from_attributes": True}


class DeliveryResult(BaseModel):
    reserva: ReservationRead
    movimiento: MovementRead


class PurchaseOrderLineCreate(BaseModel):
    item: str
    cantidad: int
    costo_unitario: Optional[Decimal] = None

    @field_validator("cantidad")
    @classmethod
    def cantidad_must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("cantidad must be greater than 0")
        return v


class PurchaseOrderCreate(BaseModel):
    numero: Optional[str] = None
    proveedor: Optional[str] = None
    lines: list[PurchaseOrderLineCreate] = Field(min_length=1)


class PurchaseOrderUpdate(BaseModel):
    proveedor: Optional[str] = None
    lines: Optional[list[PurchaseOrderLineCreate]] = Field(default=None, min_length=1)


class PurchaseOrderLineRead(BaseModel):
    id: int
    item: str
    cantidad: int
    recibido: int
    costo_unitario: Optional[Decimal]

    model_config = {"from_attributes": True}


class PurchaseOrderRead(BaseModel):
    id: int
    numero: str
    proveedor: Optional[str]
    estado: str
    lines: list[PurchaseOrderLineRead]

    model_config = {"from_attributes": True}


class ReceiveLine(BaseModel):
    item: Optional[str] = None
    cantidad: Optional[int] = None
    costo_unitario: Optional[Decimal] = None
    motivo: Optional[str] = None


class ReceiveRequest(BaseModel):
    warehouse: Optional[str] = None
    items: list[ReceiveLine] = Field(default_factory=list)
    idempotency_key: Optional[str] = None


class ReceiveResult(BaseModel):
    order: PurchaseOrderRead
    movements: list[MovementRead]
    skipped: list[int] = Field(default_factory=list)
    replayed: bool = False


class SalesOrderLineCreate(BaseModel):
    item: str
    cantidad: int
    precio_unitario: Decimal = Decimal("0")

    @field_validator("cantidad")
    @classmethod
    def cantidad_must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("cantidad must be greater than 0")
        return v


class SalesOrderCreate(BaseModel):
    numero: Optional[str] = None
    cliente: Optional[str] = None
    lines: list[SalesOrderLineCreate] = Field(min_length=1)


class SalesOrderUpdate(BaseModel):
    cliente: Optional[str] = None
    lines: Optional[list[SalesOrderLineCreate]] = Field(default=None, min_length=1)


class SalesOrderLineRead(BaseModel):
    id: int
    item: str
    cantidad: int
    precio_unitario: Decimal
    reservado: int
    entregado: int

    model_config = {"from_attributes": True}


class SalesOrderRead(BaseModel):
    id: int
    numero: str
    cliente: Optional[str]
    estado: str
    warehouse: Optional[str]
    fecha_confirmacion: Optional[datetime]
    fecha_despacho: Optional[datetime]
    fecha_cancelacion: Optional[datetime]
    lines: list[SalesOrderLineRead]

    model_config = {"from_attributes": True}


class ConfirmRequest(BaseModel):
    warehouse: Optional[str] = None
    idempotency_key: Optional[str] = None


class ShipLine(BaseModel):
    item: str
    cantidad: int


class ShipRequest(BaseModel):
    items: Optional[list[ShipLine]] = None
    idempotency_key: Optional[str] = None


class CancelRequest(BaseModel):
    idempotency_key: Optional[str] = None


class SalesOrderResult(BaseModel):
    order: SalesOrderRead
    reservations: list[ReservationRead] = Field(default_factory=list)
    movements: list[MovementRead] = Field(default_factory=list)
    replayed: bool = False
