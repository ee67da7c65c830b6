from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from inventario.models import Reservation


class ReservationRepository:
    def __init__(self, db: Session):
        self._db = db

    def add(self, reservation: Reservation) -> None:
        self._db.add(reservation)

    def get(self, reservation_id: int, for_update: bool = False) -> Optional[Reservation]:
        stmt = select(Reservation).where(
            Reservation.id == reservation_id,
            Reservation.eliminado.is_(False),
        )
        if for_update:
            stmt = stmt.with_for_update()
        return self._db.scalar(stmt)

    def list(
        self,
        estado: Optional[str] = None,
        item: Optional[str] = None,
        warehouse: Optional[str] = None,
    ) -> list[Reservation]:
        stmt = select(Reservation).where(Reservation.eliminado.is_(False))
        if estado:
            stmt = stmt.where(Reservation.estado == estado)
        if item:
            stmt = stmt.where(Reservation.item == item)
        if warehouse:
            stmt = stmt.where(Reservation.warehouse == warehouse)
        return list(self._db.scalars(stmt.order_by(Reservation.created_at.desc(), Reservation.id.desc())))

    def list_for_sales_order(self, sales_order_id: int) -> list[Reservation]:
        return list(
            self._db.scalars(
                select(Reservation)
                .where(
                    Reservation.sales_order_id == sales_order_id,
                    Reservation.eliminado.is_(False),
                )
                .order_by(Reservation.id)
            )
        )
