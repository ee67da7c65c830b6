from __future__ import annotations

from collections.abc import Generator
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.orm import Session

from inventario.db import get_session, settings
from inventario.services.idempotency import IdempotencyGuard
from inventario.services.movement_service import MovementService
from inventario.services.purchase_order_service import PurchaseOrderService
from inventario.services.reservation_service import ReservationService
from inventario.services.sales_order_service import SalesOrderService
from inventario.services.stock_ledger import StockLedger
from inventario.unit_of_work import UnitOfWork


def session_dep() -> Generator[Session, None, None]:
    db = get_session()
    try:
        yield db
    finally:
        db.close()


@dataclass
class Services:
    uow: UnitOfWork
    ledger: StockLedger
    idempotency: IdempotencyGuard
    movements: MovementService
    reservations: ReservationService
    purchase_orders: PurchaseOrderService
    sales_orders: SalesOrderService


def build_services(db: Session, lock_timeout_ms: Optional[int] = None) -> Services:
    """Wire every service around one session and one unit of work."""
    uow = UnitOfWork(db, lock_timeout_ms=lock_timeout_ms)
    ledger = StockLedger(db)
    idempotency = IdempotencyGuard(db)
    movements = MovementService(uow, ledger, idempotency)
    reservations = ReservationService(uow, ledger, movements, idempotency)
    return Services(
        uow=uow,
        ledger=ledger,
        idempotency=idempotency,
        movements=movements,
        reservations=reservations,
        purchase_orders=PurchaseOrderService(uow, movements, idempotency),
        sales_orders=SalesOrderService(uow, ledger, movements, reservations, idempotency),
    )


def services_dep(db: Session = Depends(session_dep)) -> Services:
    return build_services(db, settings.lock_timeout_ms)


def actor_dep(x_actor: Optional[str] = Header(default=None)) -> str:
    actor = (x_actor or "").strip()
    return actor or settings.default_actor
