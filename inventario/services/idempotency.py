from __future__ import annotations

import logging
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from inventario.errors import ConflictError
from inventario.models import IdempotencyRecord
from inventario.repositories.idempotency_repository import IdempotencyRepository

logger = logging.getLogger(__name__)


class IdempotencyGuard:
    """Remembers which caller-supplied keys already produced a result.

    A key is bound to one ``(operation, reference)`` pair. Reusing it for the
    same pair is a replay; reusing it for anything else is a conflict.
    """

    def __init__(self, db: Session):
        self._db = db
        self._records = IdempotencyRepository(db)

    def lookup(self, key: Optional[str], operation: str, reference: str) -> Optional[IdempotencyRecord]:
        if not key:
            return None
        record = self._records.get(key)
        if record is None:
            return None
        if record.operation != operation or record.reference != str(reference):
            raise ConflictError(
                f"idempotencyKey '{key}' ya fue usada para {record.operation} {record.reference}",
                key=key,
            )
        logger.info("idempotent replay", extra={"idempotency_key": key, "operation": operation})
        return record

    def remember(
        self,
        key: Optional[str],
        operation: str,
        reference: str,
        result_ids: Iterable[int] = (),
    ) -> None:
        if not key:
            return
        self._records.add(
            IdempotencyRecord(
                key=key,
                operation=operation,
                reference=str(reference),
                result_ids=[int(i) for i in result_ids],
            )
        )

    @staticmethod
    def line_key(base: Optional[str], index: int) -> Optional[str]:
        """Per-line key derived from a batch key and the line's position in the request."""
        if not base:
            return None
        return f"{base}-{index}"
