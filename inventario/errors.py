"""Error taxonomy shared by the ledger, the reservation manager and the coordinators.

Every error carries an HTTP ``status_code`` and a machine readable ``code`` so
the API layer can render it without inspecting messages. ``retryable`` marks the
errors a caller may safely resubmit with the same idempotency key.
"""

from __future__ import annotations

from typing import Any, Optional


class InventarioError(Exception):
    status_code = 400
    code = "inventario_error"
    retryable = False

    def __init__(self, detail: str, **context: Any):
        super().__init__(detail)
        self.detail = detail
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "detail": self.detail,
            "code": self.code,
            "retryable": self.retryable,
        }
        if self.context:
            payload["context"] = {k: _jsonable(v) for k, v in self.context.items()}
        return payload


class ValidationError(InventarioError):
    status_code = 422
    code = "validation_error"


class NotFoundError(InventarioError):
    status_code = 404
    code = "not_found"


class InsufficientStockError(InventarioError):
    status_code = 409
    code = "insufficient_stock"

    def __init__(self, item: str, warehouse: str, requested: int, disponible: int):
        super().__init__(
            f"No hay stock disponible para {item} en {warehouse} "
            f"(solicitado {requested}, disponible {disponible})",
            item=item,
            warehouse=warehouse,
            requested=requested,
            disponible=disponible,
        )
        self.item = item
        self.warehouse = warehouse
        self.requested = requested
        self.disponible = disponible


class ConflictError(InventarioError):
    status_code = 409
    code = "conflict"

    def __init__(self, detail: str, retryable: bool = False, **context: Any):
        super().__init__(detail, **context)
        self.retryable = retryable


class TransactionAbortError(InventarioError):
    status_code = 503
    code = "transaction_aborted"
    retryable = True


def _jsonable(value: Any) -> Optional[Any]:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    return str(value)
