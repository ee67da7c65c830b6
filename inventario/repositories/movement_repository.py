from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from inventario.models import Movement


class MovementRepository:
    def __init__(self, db: Session):
        self._db = db

    def add(self, movement: Movement) -> None:
        self._db.add(movement)

    def get(self, movement_id: int) -> Optional[Movement]:
        return self._db.scalar(
            select(Movement).where(Movement.id == movement_id, Movement.eliminado.is_(False))
        )

    def get_by_idempotency_key(self, key: str) -> Optional[Movement]:
        return self._db.scalar(select(Movement).where(Movement.idempotency_key == key))

    def list_by_ids(self, ids: Iterable[int]) -> list[Movement]:
        wanted = list(ids)
        if not wanted:
            return []
        rows = {m.id: m for m in self._db.scalars(select(Movement).where(Movement.id.in_(wanted)))}
        return [rows[i] for i in wanted if i in rows]

    def query(
        self,
        item: Optional[str] = None,
        tipo: Optional[str] = None,
        warehouse: Optional[str] = None,
        desde: Optional[datetime] = None,
        hasta: Optional[datetime] = None,
        page: int = 1,
        limit: int = 25,
    ) -> tuple[int, list[Movement]]:
        stmt = select(Movement).where(Movement.eliminado.is_(False))

        if item:
            stmt = stmt.where(Movement.item == item)

        if tipo:
            stmt = stmt.where(Movement.tipo == tipo)

        if warehouse:
            stmt = stmt.where(
                or_(Movement.warehouse_from == warehouse, Movement.warehouse_to == warehouse)
            )

        if desde:
            stmt = stmt.where(Movement.fecha >= desde)

        if hasta:
            stmt = stmt.where(Movement.fecha <= hasta)

        total = self._db.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        rows = self._db.scalars(
            stmt.order_by(Movement.fecha.desc(), Movement.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return int(total), list(rows)
