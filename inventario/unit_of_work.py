"""Transaction boundary for ledger operations.

A ``UnitOfWork`` wraps one SQLAlchemy session. Public operations run inside
``transaction()``; a call made while a transaction is already open joins it, so
a coordinator and the services it drives commit or roll back as a unit.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from inventario.errors import ConflictError, InventarioError, TransactionAbortError

logger = logging.getLogger(__name__)

# lock_not_available, serialization_failure, deadlock_detected
_RETRYABLE_SQLSTATES = frozenset({"55P03", "40001", "40P01"})


def translate_db_error(exc: SQLAlchemyError) -> InventarioError:
    if isinstance(exc, StaleDataError):
        return ConflictError("Stock modificado por otra transacción; reintente", retryable=True)
    if isinstance(exc, IntegrityError):
        return ConflictError(
            "Conflicto de unicidad con una operación concurrente; reintente", retryable=True
        )
    if isinstance(exc, OperationalError):
        orig = exc.orig
        sqlstate = getattr(orig, "pgcode", None) or getattr(orig, "sqlstate", None)
        if sqlstate in _RETRYABLE_SQLSTATES or "database is locked" in str(orig).lower():
            return ConflictError("No se pudo bloquear el stock a tiempo; reintente", retryable=True)
    return TransactionAbortError("No se pudo confirmar la transacción")


class UnitOfWork:
    def __init__(self, session: Session, lock_timeout_ms: Optional[int] = None):
        self._session = session
        self._lock_timeout_ms = lock_timeout_ms
        self._depth = 0

    @property
    def session(self) -> Session:
        return self._session

    @property
    def active(self) -> bool:
        return self._depth > 0

    def begin(self) -> None:
        self._depth += 1
        if self._depth == 1:
            self._apply_lock_timeout()

    def commit(self) -> None:
        if self._depth == 0:
            raise RuntimeError("commit() called outside of a transaction")
        self._depth -= 1
        if self._depth > 0:
            return
        try:
            self._session.commit()
        except SQLAlchemyError as e:
            self._session.rollback()
            logger.warning("commit failed: %s", type(e).__name__)
            raise translate_db_error(e) from e

    def abort(self) -> None:
        self._depth = 0
        self._session.rollback()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        outermost = self._depth == 0
        self.begin()
        try:
            yield self._session
        except SQLAlchemyError as e:
            self._unwind(outermost)
            raise translate_db_error(e) from e
        except BaseException:
            self._unwind(outermost)
            raise
        self.commit()

    def _unwind(self, outermost: bool) -> None:
        if outermost:
            self.abort()
        else:
            self._depth -= 1

    def _apply_lock_timeout(self) -> None:
        if not self._lock_timeout_ms:
            return
        bind = self._session.get_bind()
        if bind.dialect.name == "postgresql":
            self._session.execute(text(f"SET LOCAL lock_timeout = {int(self._lock_timeout_ms)}"))
