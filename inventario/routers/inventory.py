from __future__ import annotations

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from inventario.deps import Services, actor_dep, services_dep
from inventario.schemas import (
    MovementCreate,
    MovementPage,
    MovementRead,
    StockRead,
    StockSnapshot,
)

router = APIRouter(tags=["inventory"])


@router.post("/movements", response_model=MovementRead)
def create_movement(
    payload: MovementCreate,
    actor: str = Depends(actor_dep),
    services: Services = Depends(services_dep),
) -> MovementRead:
    movement = services.movements.apply_movement(payload, actor=actor)
    return MovementRead.model_validate(movement)


@router.get("/movements", response_model=MovementPage)
def list_movements(
    item: Optional[str] = None,
    tipo: Optional[str] = None,
    warehouse: Optional[str] = None,
    desde: Optional[datetime] = None,
    hasta: Optional[datetime] = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=25, ge=1, le=500),
    services: Services = Depends(services_dep),
) -> MovementPage:
    total, rows = services.movements.query_movements(
        item=item,
        tipo=tipo,
        warehouse=warehouse,
        desde=desde,
        hasta=hasta,
        page=page,
        limit=limit,
    )
    return MovementPage(
        total=total,
        page=page,
        limit=limit,
        movements=[MovementRead.model_validate(m) for m in rows],
    )


@router.get("/movements/{movement_id}", response_model=MovementRead)
def get_movement(
    movement_id: int,
    services: Services = Depends(services_dep),
) -> MovementRead:
    return MovementRead.model_validate(services.movements.get_movement(movement_id))


@router.get("/stock/{item}", response_model=StockSnapshot)
def get_stock(
    item: str,
    warehouse: Optional[str] = None,
    services: Services = Depends(services_dep),
) -> StockSnapshot:
    return services.ledger.snapshot(item, warehouse)


@router.get("/stock/{item}/warehouses", response_model=list[StockRead])
def list_stock(
    item: str,
    services: Services = Depends(services_dep),
) -> list[StockRead]:
    return [StockRead.model_validate(s) for s in services.ledger.list_for_item(item)]
