from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from inventario import models  # noqa: F401  registers tables on Base.metadata
from inventario.db import Base, engine, settings
from inventario.errors import InventarioError
from inventario.logging_config import configure_logging
from inventario.routers.health import router as health_router
from inventario.routers.inventory import router as inventory_router
from inventario.routers.purchase_orders import router as purchase_orders_router
from inventario.routers.reservations import router as reservations_router
from inventario.routers.sales_orders import router as sales_orders_router

logger = logging.getLogger(__name__)


def _run_startup_tasks() -> None:
    """Configura logging y crea las tablas que falten."""
    configure_logging(level=settings.log_level, json_format=settings.log_json)
    Base.metadata.create_all(bind=engine)
    logger.info("startup complete", extra={"database": engine.url.render_as_string(hide_password=True)})


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Lifecycle manager para FastAPI."""
    _run_startup_tasks()
    yield


app = FastAPI(title="Inventario", lifespan=lifespan)


@app.exception_handler(InventarioError)
async def inventario_error_handler(request: Request, exc: InventarioError) -> JSONResponse:
    level = logging.WARNING if exc.status_code >= 500 or exc.retryable else logging.INFO
    logger.log(
        level,
        "request failed",
        extra={"path": request.url.path, "code": exc.code, "status": exc.status_code},
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


app.include_router(health_router)
app.include_router(inventory_router)
app.include_router(reservations_router)
app.include_router(purchase_orders_router)
app.include_router(sales_orders_router)
