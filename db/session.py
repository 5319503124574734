# db/session.py
from __future__ import annotations

import logging
import os
import pathlib
from typing import Iterable, Optional

from dotenv import load_dotenv
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

_log = logging.getLogger("reservation-core")


def _load_env_files(candidates: Iterable[str]) -> None:
    """
    Load env files from both CWD and project root (relative to this file),
    without overriding values already provided by the platform.
    """
    here = pathlib.Path(__file__).resolve()
    roots = {
        pathlib.Path.cwd(),
        here.parent.parent,
    }
    for fname in candidates:
        for root in roots:
            p = root / fname
            if p.exists():
                load_dotenv(p, override=False)


_load_env_files((".env.local", "env.local", ".env"))

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./reservations.db")


def _use_immediate_transactions(engine: AsyncEngine) -> None:
    """
    SQLite: take the write lock at BEGIN so concurrent writers queue on the busy
    timeout instead of failing a SHARED -> RESERVED upgrade mid-transaction.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # hand transaction control to the "begin" hook below
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def make_engine(url: Optional[str] = None, *, echo: Optional[bool] = None) -> AsyncEngine:
    url = url or DATABASE_URL
    if echo is None:
        echo = bool(os.getenv("SQL_ECHO"))
    if url.startswith("sqlite"):
        engine = create_async_engine(
            url,
            echo=echo,
            poolclass=NullPool,
            connect_args={"timeout": 30},
        )
        _use_immediate_transactions(engine)
        return engine
    return create_async_engine(
        url,
        echo=echo,
        pool_pre_ping=True,
        pool_size=int(os.getenv("DB_POOL_SIZE", "8")),
        max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
        pool_timeout=30,
    )


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


engine = make_engine()
Session = make_session_factory(engine)


async def ping(eng: Optional[AsyncEngine] = None) -> bool:
    """Connectivity check for startup and readiness probes."""
    try:
        async with (eng or engine).connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:  # noqa: BLE001
        _log.warning("Database ping failed: %s", e)
        return False
