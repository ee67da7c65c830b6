from __future__ import annotations

import json
from typing import Any, Optional

from sqlalchemy.orm import Session

from inventario.models import AuditLog


def log_event(
    db: Session,
    actor: Optional[str],
    action: str,
    entity_type: str,
    entity_id: Optional[str] = None,
    detail: Optional[dict[str, Any]] = None,
) -> None:
    """Stage an audit row in the caller's transaction; it commits or rolls back with it."""
    row = AuditLog(
        actor=actor,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        detail=json.dumps(detail, ensure_ascii=False, default=str) if detail is not None else None,
    )
    db.add(row)
