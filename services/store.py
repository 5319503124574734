# services/store.py
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Awaitable, Optional, TypeVar

from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError, TimeoutError as PoolTimeout

from common.errors import SystemUnavailable

_log = logging.getLogger("reservation-core")

T = TypeVar("T")

STORE_ERRORS = (asyncio.TimeoutError, OperationalError, InterfaceError, PoolTimeout, OSError, ConnectionError)


def _is_unreachable(exc: BaseException) -> bool:
    if isinstance(exc, STORE_ERRORS):
        return True
    # asyncpg surfaces dropped connections as DBAPIError with connection_invalidated
    return isinstance(exc, DBAPIError) and bool(getattr(exc, "connection_invalidated", False))


@asynccontextmanager
async def store_guard(operation: str):
    """Convert timeouts and connectivity failures into SystemUnavailable."""
    try:
        yield
    except SystemUnavailable:
        raise
    except Exception as e:
        if not _is_unreachable(e):
            raise
        _log.warning("Store unavailable during %s: %s", operation, e)
        raise SystemUnavailable(f"Store unavailable during {operation}") from e


async def with_timeout(aw: Awaitable[T], seconds: Optional[float], operation: str) -> T:
    """Await with an upper bound; a timeout is a SystemUnavailable condition."""
    async with store_guard(operation):
        if not seconds:
            return await aw
        return await asyncio.wait_for(aw, timeout=seconds)
