from __future__ import annotations

from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from inventario.errors import NotFoundError
from inventario.models import Stock
from inventario.repositories.stock_repository import StockRepository
from inventario.schemas import StockSnapshot


class StockLedger:
    """Read access to per (item, warehouse) stock records.

    Quantities are never written here; ``MovementService`` is the only writer.
    """

    def __init__(self, db: Session):
        self._db = db
        self._stocks = StockRepository(db)

    def get(self, item: str, warehouse: str) -> Stock:
        stock = self._stocks.get(item, warehouse)
        if stock is None:
            raise NotFoundError(f"No hay stock de {item} en {warehouse}", item=item, warehouse=warehouse)
        return stock

    def find(self, item: str, warehouse: str, lock: bool = False) -> Optional[Stock]:
        return self._stocks.get(item, warehouse, for_update=lock)

    def get_or_create(self, item: str, warehouse: str, lock: bool = False) -> Stock:
        stock = self._stocks.get(item, warehouse, for_update=lock)
        if stock is None:
            stock = Stock(
                item=item,
                warehouse=warehouse,
                cantidad=0,
                reservado=0,
                costo_promedio=Decimal("0"),
            )
            self._stocks.add(stock)
            # A concurrent insert of the same pair fails here, not at commit.
            self._db.flush()
        return stock

    def lock_many(self, item: str, warehouses: Iterable[str]) -> dict[str, Stock]:
        """Lock several rows of one item in a fixed order to avoid deadlocks."""
        return {wh: self.get_or_create(item, wh, lock=True) for wh in sorted(set(warehouses))}

    def list_for_item(self, item: str) -> list[Stock]:
        return self._stocks.list_for_item(item)

    def snapshot(self, item: str, warehouse: Optional[str] = None) -> StockSnapshot:
        if warehouse:
            stock = self._stocks.get(item, warehouse)
            if stock is None:
                return StockSnapshot(item=item, warehouse=warehouse)
            return StockSnapshot(
                item=item,
                warehouse=warehouse,
                cantidad=stock.cantidad,
                reservado=stock.reservado,
                disponible=stock.disponible,
            )

        cantidad = 0
        reservado = 0
        for stock in self._stocks.list_for_item(item):
            cantidad += stock.cantidad or 0
            reservado += stock.reservado or 0
        return StockSnapshot(
            item=item,
            cantidad=cantidad,
            reservado=reservado,
            disponible=cantidad - reservado,
        )
