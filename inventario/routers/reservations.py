from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from inventario.deps import Services, actor_dep, services_dep
from inventario.schemas import (
    DeliverRequest,
    DeliveryResult,
    MovementRead,
    ReservationAction,
    ReservationCreate,
    ReservationRead,
)

router = APIRouter(prefix="/reservations", tags=["reservations"])


@router.post("", response_model=ReservationRead)
def create_reservation(
    payload: ReservationCreate,
    actor: str = Depends(actor_dep),
    services: Services = Depends(services_dep),
) -> ReservationRead:
    reservation = services.reservations.reserve(
        payload.item,
        payload.warehouse,
        payload.cantidad,
        actor,
        orden_trabajo=payload.orden_trabajo,
        motivo=payload.motivo,
        idempotency_key=payload.idempotency_key,
    )
    return ReservationRead.model_validate(reservation)


@router.get("", response_model=list[ReservationRead])
def list_reservations(
    estado: Optional[str] = None,
    item: Optional[str] = None,
    warehouse: Optional[str] = None,
    services: Services = Depends(services_dep),
) -> list[ReservationRead]:
    rows = services.reservations.list(estado=estado, item=item, warehouse=warehouse)
    return [ReservationRead.model_validate(r) for r in rows]


@router.get("/{reservation_id}", response_model=ReservationRead)
def get_reservation(
    reservation_id: int,
    services: Services = Depends(services_dep),
) -> ReservationRead:
    return ReservationRead.model_validate(services.reservations.get(reservation_id))


@router.post("/{reservation_id}/pickup", response_model=ReservationRead)
def mark_pending_pickup(
    reservation_id: int,
    payload: Optional[ReservationAction] = None,
    actor: str = Depends(actor_dep),
    services: Services = Depends(services_dep),
) -> ReservationRead:
    payload = payload or ReservationAction()
    reservation = services.reservations.mark_pending_pickup(
        reservation_id, actor=actor, idempotency_key=payload.idempotency_key
    )
    return ReservationRead.model_validate(reservation)


@router.post("/{reservation_id}/deliver", response_model=DeliveryResult)
def deliver_reservation(
    reservation_id: int,
    payload: Optional[DeliverRequest] = None,
    actor: str = Depends(actor_dep),
    services: Services = Depends(services_dep),
) -> DeliveryResult:
    payload = payload or DeliverRequest()
    reservation, movement = services.reservations.deliver(
        reservation_id,
        actor=actor,
        recibido_por=payload.recibido_por,
        notas=payload.notas,
        idempotency_key=payload.idempotency_key,
    )
    return DeliveryResult(
        reserva=ReservationRead.model_validate(reservation),
        movimiento=MovementRead.model_validate(movement),
    )


@router.post("/{reservation_id}/release", response_model=ReservationRead)
def release_reservation(
    reservation_id: int,
    payload: Optional[ReservationAction] = None,
    actor: str = Depends(actor_dep),
    services: Services = Depends(services_dep),
) -> ReservationRead:
    payload = payload or ReservationAction()
    reservation = services.reservations.release(
        reservation_id, actor=actor, idempotency_key=payload.idempotency_key
    )
    return ReservationRead.model_validate(reservation)


@router.post("/{reservation_id}/cancel", response_model=ReservationRead)
def cancel_reservation(
    reservation_id: int,
    payload: Optional[ReservationAction] = None,
    actor: str = Depends(actor_dep),
    services: Services = Depends(services_dep),
) -> ReservationRead:
    payload = payload or ReservationAction()
    reservation = services.reservations.cancel(
        reservation_id, actor=actor, idempotency_key=payload.idempotency_key
    )
    return ReservationRead.model_validate(reservation)
