from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from inventario.models import PurchaseOrder, SalesOrder


class OrderRepository:
    def __init__(self, db: Session):
        self._db = db

    def add(self, order: PurchaseOrder | SalesOrder) -> None:
        self._db.add(order)

    def get_purchase_order(self, order_id: int, for_update: bool = False) -> Optional[PurchaseOrder]:
        stmt = select(PurchaseOrder).where(
            PurchaseOrder.id == order_id,
            PurchaseOrder.eliminado.is_(False),
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self._db.scalar(stmt)

    def get_purchase_order_by_numero(self, numero: str) -> Optional[PurchaseOrder]:
        return self._db.scalar(
            select(PurchaseOrder).where(
                PurchaseOrder.numero == numero.strip(),
                PurchaseOrder.eliminado.is_(False),
            )
        )

    def get_sales_order(self, order_id: int, for_update: bool = False) -> Optional[SalesOrder]:
        stmt = select(SalesOrder).where(
            SalesOrder.id == order_id,
            SalesOrder.eliminado.is_(False),
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self._db.scalar(stmt)

    def list_numeros_starting_with(self, model: type[PurchaseOrder] | type[SalesOrder], prefix: str) -> list[str]:
        rows = self._db.execute(select(model.numero).where(model.numero.like(f"{prefix}%"))).all()
        return [numero for (numero,) in rows]

    def get_sales_order_by_numero(self, numero: str) -> Optional[SalesOrder]:
        return self._db.scalar(
            select(SalesOrder).where(
                SalesOrder.numero == numero.strip(),
                SalesOrder.eliminado.is_(False),
            )
        )

    def list_purchase_orders(self, estado: Optional[str] = None) -> list[PurchaseOrder]:
        stmt = select(PurchaseOrder).where(PurchaseOrder.eliminado.is_(False))
        if estado:
            stmt = stmt.where(PurchaseOrder.estado == estado)
        stmt = stmt.order_by(PurchaseOrder.created_at.desc(), PurchaseOrder.id.desc())
        return list(self._db.scalars(stmt).all())

    def list_sales_orders(self, estado: Optional[str] = None) -> list[SalesOrder]:
        stmt = select(SalesOrder).where(SalesOrder.eliminado.is_(False))
        if estado:
            stmt = stmt.where(SalesOrder.estado == estado)
        stmt = stmt.order_by(SalesOrder.created_at.desc(), SalesOrder.id.desc())
        return list(self._db.scalars(stmt).all())
