"""Shared fixtures: an in-memory ledger per test and a file-backed one for threads."""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from inventario import models  # noqa: F401
from inventario.db import Base, build_engine
from inventario.deps import Services, build_services
from inventario.models import Movement
from inventario.schemas import MovementCreate


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def services(db) -> Services:
    return build_services(db)


@pytest.fixture
def seed_stock(services):
    """Put ``cantidad`` units of ``item`` into ``warehouse`` with an entrada."""

    def _seed(
        item: str,
        warehouse: str,
        cantidad: int,
        costo: Optional[Decimal] = None,
    ) -> Movement:
        return services.movements.apply_movement(
            MovementCreate(
                tipo="entrada",
                item=item,
                cantidad=cantidad,
                warehouse_to=warehouse,
                costo_unitario=costo,
            ),
            actor="seed",
        )

    return _seed


@pytest.fixture
def file_engine(tmp_path):
    """SQLite on disk so several threads can hold their own connections."""
    engine = build_engine(f"sqlite+pysqlite:///{tmp_path / 'inventario.db'}", lock_timeout_ms=10000)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def file_session_factory(file_engine):
    return sessionmaker(bind=file_engine, autoflush=False, autocommit=False)
