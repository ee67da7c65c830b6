from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from inventario.models import IdempotencyRecord


class IdempotencyRepository:
    def __init__(self, db: Session):
        self._db = db

    def get(self, key: str) -> Optional[IdempotencyRecord]:
        return self._db.scalar(select(IdempotencyRecord).where(IdempotencyRecord.key == key))

    def add(self, record: IdempotencyRecord) -> None:
        self._db.add(record)
