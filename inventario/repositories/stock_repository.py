from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from inventario.models import Stock


class StockRepository:
    def __init__(self, db: Session):
        self._db = db

    def add(self, stock: Stock) -> None:
        self._db.add(stock)

    def get(self, item: str, warehouse: str, for_update: bool = False) -> Optional[Stock]:
        stmt = select(Stock).where(
            Stock.item == item,
            Stock.warehouse == warehouse,
            Stock.eliminado.is_(False),
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self._db.scalar(stmt)

    def list_for_item(self, item: str) -> list[Stock]:
        return list(
            self._db.scalars(
                select(Stock)
                .where(Stock.item == item, Stock.eliminado.is_(False))
                .order_by(Stock.warehouse)
            )
        )
