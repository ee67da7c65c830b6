from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from inventario.db import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MovementKind(str, Enum):
    ENTRADA = "entrada"
    SALIDA = "salida"
    TRANSFERENCIA = "transferencia"
    AJUSTE = "ajuste"


class MovementType(str, Enum):
    ENTRADA = "entrada"
    COMPRA = "compra"
    SALIDA = "salida"
    VENTA = "venta"
    CONSUMO = "consumo"
    TRANSFERENCIA = "transferencia"
    AJUSTE = "ajuste"

    @property
    def kind(self) -> MovementKind:
        return _KIND_BY_TYPE[self]


_KIND_BY_TYPE = {
    MovementType.ENTRADA: MovementKind.ENTRADA,
    MovementType.COMPRA: MovementKind.ENTRADA,
    MovementType.SALIDA: MovementKind.SALIDA,
    MovementType.VENTA: MovementKind.SALIDA,
    MovementType.CONSUMO: MovementKind.SALIDA,
    MovementType.TRANSFERENCIA: MovementKind.TRANSFERENCIA,
    MovementType.AJUSTE: MovementKind.AJUSTE,
}


class ReservationEstado(str, Enum):
    ACTIVO = "activo"
    PENDIENTE_RETIRO = "pendiente_retiro"
    ENTREGADO = "entregado"
    CONSUMIDO = "consumido"
    LIBERADO = "liberado"
    CANCELADO = "cancelado"


RESERVATION_TERMINAL = frozenset(
    {ReservationEstado.CONSUMIDO.value, ReservationEstado.LIBERADO.value, ReservationEstado.CANCELADO.value}
)


class PurchaseOrderEstado(str, Enum):
    PENDIENTE = "pendiente"
    PARCIAL = "parcial"
    RECIBIDO = "recibido"


class SalesOrderEstado(str, Enum):
    BORRADOR = "borrador"
    PENDIENTE = "pendiente"
    CONFIRMADA = "confirmada"
    PARCIAL = "parcial"
    DESPACHADA = "despachada"
    CANCELADA = "cancelada"


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(primary_key=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), index=True
    )
    actor: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(64), index=True)
    entity_type: Mapped[str] = mapped_column(String(64), index=True)
    entity_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    detail: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class Stock(Base):
    __tablename__ = "stocks"
    __table_args__ = (
        UniqueConstraint("item", "warehouse", name="ux_stocks_item_warehouse"),
        CheckConstraint("cantidad >= 0", name="ck_stocks_cantidad"),
        CheckConstraint("reservado >= 0 AND reservado <= cantidad", name="ck_stocks_reservado"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    item: Mapped[str] = mapped_column(String(64), index=True)
    warehouse: Mapped[str] = mapped_column(String(64), index=True)
    cantidad: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    reservado: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    costo_promedio: Mapped[Decimal] = mapped_column(
        Numeric(14, 4), nullable=False, default=Decimal("0"), server_default="0"
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    eliminado: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, server_default=func.now()
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def disponible(self) -> int:
        return (self.cantidad or 0) - (self.reservado or 0)


class Reservation(Base):
    __tablename__ = "reservations"
    __table_args__ = (
        CheckConstraint("cantidad > 0", name="ck_reservations_cantidad"),
        CheckConstraint(
            "cantidad_consumida >= 0 AND cantidad_consumida <= cantidad",
            name="ck_reservations_consumida",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    item: Mapped[str] = mapped_column(String(64), index=True)
    warehouse: Mapped[str] = mapped_column(String(64), index=True)
    cantidad: Mapped[int] = mapped_column(Integer, nullable=False)
    cantidad_consumida: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    estado: Mapped[str] = mapped_column(
        String(24), nullable=False, default=ReservationEstado.ACTIVO.value, index=True
    )
    orden_trabajo: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    orden_salida: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    sales_order_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("sales_orders.id"), nullable=True, index=True
    )
    sales_order_line_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("sales_order_lines.id"), nullable=True
    )
    motivo: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    reservado_por: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    entregado_por: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    recibido_por: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    fecha_entrega: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    eliminado: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), index=True
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def pendiente(self) -> int:
        """Units still claimed against ``Stock.reservado``."""
        return (self.cantidad or 0) - (self.cantidad_consumida or 0)

    @property
    def is_terminal(self) -> bool:
        return self.estado in RESERVATION_TERMINAL


class Movement(Base):
    __tablename__ = "movements"
    __table_args__ = (CheckConstraint("cantidad > 0", name="ck_movements_cantidad"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    tipo: Mapped[str] = mapped_column(String(16), index=True)
    item: Mapped[str] = mapped_column(String(64), index=True)
    cantidad: Mapped[int] = mapped_column(Integer, nullable=False)
    warehouse_from: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    warehouse_to: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    costo_unitario: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 4), nullable=True)
    referencia: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    referencia_tipo: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    reserva_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("reservations.id"), nullable=True, index=True
    )
    lote: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    motivo: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    metadatos: Mapped[Optional[dict[str, Any]]] = mapped_column("metadata", JSON, nullable=True)
    idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    resultado_cantidad: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    resultado_reservado: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    fecha: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), index=True
    )
    actor: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    eliminado: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")

    @property
    def resultado_stock(self) -> Optional[dict[str, int]]:
        if self.resultado_cantidad is None:
            return None
        return {"cantidad": self.resultado_cantidad, "reservado": self.resultado_reservado or 0}


class PurchaseOrder(Base):
    __tablename__ = "purchase_orders"

    id: Mapped[int] = mapped_column(primary_key=True)
    numero: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    proveedor: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    estado: Mapped[str] = mapped_column(
        String(16), nullable=False, default=PurchaseOrderEstado.PENDIENTE.value, index=True
    )
    creado_por: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    eliminado: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), index=True
    )

    lines: Mapped[list["PurchaseOrderLine"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="PurchaseOrderLine.id",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    def line_for(self, item: str) -> Optional["PurchaseOrderLine"]:
        """First line for ``item`` still awaiting goods, else the first line for it."""
        candidates = [line for line in self.lines if line.item == item]
        for line in candidates:
            if line.remanente > 0:
                return line
        return candidates[0] if candidates else None

    def recalcular_estado(self) -> str:
        if self.lines and all(line.recibido >= line.cantidad for line in self.lines):
            self.estado = PurchaseOrderEstado.RECIBIDO.value
        elif any(line.recibido > 0 for line in self.lines):
            self.estado = PurchaseOrderEstado.PARCIAL.value
        else:
            self.estado = PurchaseOrderEstado.PENDIENTE.value
        return self.estado


class PurchaseOrderLine(Base):
    __tablename__ = "purchase_order_lines"
    __table_args__ = (
        CheckConstraint("cantidad > 0", name="ck_po_lines_cantidad"),
        CheckConstraint("recibido >= 0 AND recibido <= cantidad", name="ck_po_lines_recibido"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    purchase_order_id: Mapped[int] = mapped_column(ForeignKey("purchase_orders.id"), index=True)
    item: Mapped[str] = mapped_column(String(64), index=True)
    cantidad: Mapped[int] = mapped_column(Integer, nullable=False)
    recibido: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    costo_unitario: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 4), nullable=True)

    order: Mapped[PurchaseOrder] = relationship(back_populates="lines")

    @property
    def remanente(self) -> int:
        return (self.cantidad or 0) - (self.recibido or 0)


class SalesOrder(Base):
    __tablename__ = "sales_orders"

    id: Mapped[int] = mapped_column(primary_key=True)
    numero: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    cliente: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    estado: Mapped[str] = mapped_column(
        String(16), nullable=False, default=SalesOrderEstado.BORRADOR.value, index=True
    )
    warehouse: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    confirm_idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    ship_idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    cancel_idempotency_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    fecha_confirmacion: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    fecha_despacho: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    fecha_cancelacion: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    creado_por: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    eliminado: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), index=True
    )

    lines: Mapped[list["SalesOrderLine"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="SalesOrderLine.id",
        lazy="selectin",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def fully_delivered(self) -> bool:
        return bool(self.lines) and all(line.entregado >= line.cantidad for line in self.lines)


class SalesOrderLine(Base):
    __tablename__ = "sales_order_lines"
    __table_args__ = (
        CheckConstraint("cantidad > 0", name="ck_so_lines_cantidad"),
        CheckConstraint("entregado >= 0 AND entregado <= cantidad", name="ck_so_lines_entregado"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    sales_order_id: Mapped[int] = mapped_column(ForeignKey("sales_orders.id"), index=True)
    item: Mapped[str] = mapped_column(String(64), index=True)
    cantidad: Mapped[int] = mapped_column(Integer, nullable=False)
    precio_unitario: Mapped[Decimal] = mapped_column(
        Numeric(14, 4), nullable=False, default=Decimal("0"), server_default="0"
    )
    reservado: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    entregado: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    order: Mapped[SalesOrder] = relationship(back_populates="lines")

    @property
    def pendiente(self) -> int:
        return (self.cantidad or 0) - (self.entregado or 0)


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"

    id: Mapped[int] = mapped_column(primary_key=True)
    key: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    operation: Mapped[str] = mapped_column(String(64))
    reference: Mapped[str] = mapped_column(String(64))
    result_ids: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, server_default=func.now(), index=True
    )
