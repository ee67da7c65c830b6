from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends

from inventario.deps import Services, actor_dep, services_dep
from inventario.schemas import (
    PurchaseOrderCreate,
    PurchaseOrderRead,
    PurchaseOrderUpdate,
    ReceiveRequest,
    ReceiveResult,
)

router = APIRouter(prefix="/purchase-orders", tags=["purchase-orders"])


@router.post("", response_model=PurchaseOrderRead)
def create_purchase_order(
    payload: PurchaseOrderCreate,
    actor: str = Depends(actor_dep),
    services: Services = Depends(services_dep),
) -> PurchaseOrderRead:
    order = services.purchase_orders.create(payload, actor=actor)
    return PurchaseOrderRead.model_validate(order)


@router.get("", response_model=list[PurchaseOrderRead])
def list_purchase_orders(
    estado: Optional[str] = None,
    services: Services = Depends(services_dep),
) -> list[PurchaseOrderRead]:
    return [PurchaseOrderRead.model_validate(o) for o in services.purchase_orders.list(estado)]


@router.get("/{order_id}", response_model=PurchaseOrderRead)
def get_purchase_order(
    order_id: int,
    services: Services = Depends(services_dep),
) -> PurchaseOrderRead:
    return PurchaseOrderRead.model_validate(services.purchase_orders.get(order_id))


@router.put("/{order_id}", response_model=PurchaseOrderRead)
def update_purchase_order(
    order_id: int,
    payload: PurchaseOrderUpdate,
    actor: str = Depends(actor_dep),
    services: Services = Depends(services_dep),
) -> PurchaseOrderRead:
    order = services.purchase_orders.update(order_id, payload, actor=actor)
    return PurchaseOrderRead.model_validate(order)


@router.delete("/{order_id}", response_model=PurchaseOrderRead)
def delete_purchase_order(
    order_id: int,
    actor: str = Depends(actor_dep),
    services: Services = Depends(services_dep),
) -> PurchaseOrderRead:
    order = services.purchase_orders.delete(order_id, actor=actor)
    return PurchaseOrderRead.model_validate(order)


@router.post("/{order_id}/receive", response_model=ReceiveResult)
def receive_purchase_order(
    order_id: int,
    payload: ReceiveRequest,
    actor: str = Depends(actor_dep),
    services: Services = Depends(services_dep),
) -> ReceiveResult:
    return services.purchase_orders.receive(
        order_id,
        payload.warehouse,
        payload.items,
        actor=actor,
        idempotency_key=payload.idempotency_key,
    )
