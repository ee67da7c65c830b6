from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from inventario.config import load_settings

settings = load_settings()

DATABASE_URL = settings.database_url


def build_engine(url: str, lock_timeout_ms: int = 5000) -> Engine:
    connect_args: dict = {}
    if url.startswith("sqlite"):
        # pysqlite's busy timeout bounds how long a writer waits for the file lock.
        connect_args = {"check_same_thread": False, "timeout": lock_timeout_ms / 1000}

    if connect_args:
        return create_engine(
            url,
            connect_args=connect_args,
            pool_pre_ping=True,
        )
    return create_engine(
        url,
        pool_pre_ping=True,
    )


engine = build_engine(DATABASE_URL, settings.lock_timeout_ms)

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


class Base(DeclarativeBase):
    pass


def get_session() -> Session:
    return SessionLocal()
