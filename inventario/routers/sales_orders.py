from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from inventario.deps import Services, actor_dep, services_dep
from inventario.schemas import (
    CancelRequest,
    ConfirmRequest,
    SalesOrderCreate,
    SalesOrderRead,
    SalesOrderResult,
    SalesOrderUpdate,
    ShipRequest,
)

router = APIRouter(prefix="/sales-orders", tags=["sales-orders"])


@router.post("", response_model=SalesOrderRead)
def create_sales_order(
    payload: SalesOrderCreate,
    actor: str = Depends(actor_dep),
    services: Services = Depends(services_dep),
) -> SalesOrderRead:
    order = services.sales_orders.create(payload, actor=actor)
    return SalesOrderRead.model_validate(order)


@router.get("", response_model=list[SalesOrderRead])
def list_sales_orders(
    estado: Optional[str] = None,
    services: Services = Depends(services_dep),
) -> list[SalesOrderRead]:
    return [SalesOrderRead.model_validate(o) for o in services.sales_orders.list(estado)]


@router.get("/{order_id}", response_model=SalesOrderRead)
def get_sales_order(
    order_id: int,
    services: Services = Depends(services_dep),
) -> SalesOrderRead:
    return SalesOrderRead.model_validate(services.sales_orders.get(order_id))


@router.put("/{order_id}", response_model=SalesOrderRead)
def update_sales_order(
    order_id: int,
    payload: SalesOrderUpdate,
    actor: str = Depends(actor_dep),
    services: Services = Depends(services_dep),
) -> SalesOrderRead:
    order = services.sales_orders.update(order_id, payload, actor=actor)
    return SalesOrderRead.model_validate(order)


@router.post("/{order_id}/confirm", response_model=SalesOrderResult)
def confirm_sales_order(
    order_id: int,
    payload: ConfirmRequest,
    actor: str = Depends(actor_dep),
    services: Services = Depends(services_dep),
) -> SalesOrderResult:
    return services.sales_orders.confirm(
        order_id, payload.warehouse, actor=actor, idempotency_key=payload.idempotency_key
    )


@router.post("/{order_id}/ship", response_model=SalesOrderResult)
def ship_sales_order(
    order_id: int,
    payload: Optional[ShipRequest] = None,
    actor: str = Depends(actor_dep),
    services: Services = Depends(services_dep),
) -> SalesOrderResult:
    payload = payload or ShipRequest()
    return services.sales_orders.ship(
        order_id, payload.items, actor=actor, idempotency_key=payload.idempotency_key
    )


@router.post("/{order_id}/cancel", response_model=SalesOrderResult)
def cancel_sales_order(
    order_id: int,
    payload: Optional[CancelRequest] = None,
    actor: str = Depends(actor_dep),
    services: Services = Depends(services_dep),
) -> SalesOrderResult:
    payload = payload or CancelRequest()
    return services.sales_orders.cancel(
        order_id, actor=actor, idempotency_key=payload.idempotency_key
    )
