"""
Async database access helpers (raw SQL) using asyncpg.

The pool itself is owned by a `ConnectionCache` (see `core/connection.py`);
`api/main.py` builds it with `connection_cache()` at startup and closes it on
shutdown. Helpers here take the pool explicitly.

SQL parameter style:
- asyncpg uses positional placeholders: $1, $2, $3, ...

Driver errors are translated at this boundary:
- dead/unreachable connection -> ConnectionLost (invalidates the cached pool)
- statement deadline exceeded -> QueryTimeout (pool stays cached)
- constraint or data errors   -> RecordValidationError
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import asyncpg

from .connection import ConnectionCache
from .errors import ConnectionLost, QueryTimeout, RecordValidationError

logger = logging.getLogger(__name__)

COMMAND_TIMEOUT_S = 30.0
POOL_CLOSE_GRACE_S = 30.0

# TimeoutError subclasses OSError, so it must be matched before CONNECTION_ERRORS.
TIMEOUT_ERRORS: tuple[type[BaseException], ...] = (
    asyncio.TimeoutError,
    TimeoutError,
    asyncpg.exceptions.QueryCanceledError,
)

CONNECTION_ERRORS: tuple[type[BaseException], ...] = (
    OSError,
    asyncpg.exceptions.PostgresConnectionError,
    asyncpg.exceptions.InterfaceError,
)

VALIDATION_ERRORS: tuple[type[BaseException], ...] = (
    asyncpg.exceptions.IntegrityConstraintViolationError,
    asyncpg.exceptions.DataError,
)


def sanitize_database_url(url: str) -> str:
    parts = urlsplit(url)
    if not parts.query:
        return url

    params = [(k, v) for (k, v) in parse_qsl(parts.query, keep_blank_values=True) if k != "sslmode"]
    query = urlencode(params)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


async def create_pool(dsn: str, *, timeout_s: float) -> asyncpg.Pool:
    return await asyncpg.create_pool(
        dsn=sanitize_database_url(dsn),
        min_size=1,
        max_size=5,
        command_timeout=COMMAND_TIMEOUT_S,
        timeout=timeout_s,
    )


def _pool_is_alive(pool: asyncpg.Pool) -> bool:
    return not pool.is_closing()


_retiring: set[asyncio.Task[None]] = set()


async def _close_pool(pool: asyncpg.Pool, grace_s: float) -> None:
    try:
        await asyncio.wait_for(pool.close(), timeout=grace_s)
    except Exception as exc:
        logger.warning("pool_close_forced grace_s=%s error=%s", grace_s, exc)
        pool.terminate()
        return None
    logger.info("pool_retired")


def discard_pool(pool: asyncpg.Pool, *, grace_s: float = POOL_CLOSE_GRACE_S) -> asyncio.Task[None] | None:
    """
    Retire an invalidated pool in the background.

    `pool.close()` waits for connections other requests still hold, so their
    in-flight statements finish; the pool is only terminated if that takes
    longer than `grace_s`.
    """
    if pool.is_closing():
        return None
    task = asyncio.ensure_future(_close_pool(pool, grace_s))
    _retiring.add(task)
    task.add_done_callback(_retiring.discard)
    return task


def connection_cache(dsn: str, *, timeout_s: float) -> ConnectionCache[asyncpg.Pool]:
    """
    Build the process-wide cache for the asyncpg pool. Nothing connects until
    the first `acquire()`.
    """
    return ConnectionCache(
        lambda: create_pool(dsn, timeout_s=timeout_s),
        timeout_s=timeout_s,
        close=lambda pool: pool.close(),
        discard=discard_pool,
        is_alive=_pool_is_alive,
        broken_errors=(ConnectionLost,),
    )


@contextmanager
def translate_errors() -> Iterator[None]:
    try:
        yield
    except VALIDATION_ERRORS as exc:
        raise RecordValidationError(_postgres_message(exc)) from exc
    except TIMEOUT_ERRORS as exc:
        raise QueryTimeout("Database query timed out.") from exc
    except CONNECTION_ERRORS as exc:
        raise ConnectionLost("Database connection was lost.") from exc


def _postgres_message(exc: BaseException) -> str:
    # Postgres errors carry a clean primary message; avoid leaking SQL details.
    message = getattr(exc, "message", None) or str(exc)
    return str(message).strip() or "Invalid record."


def _record_to_dict(record: asyncpg.Record) -> dict[str, Any]:
    return dict(record)


async def fetch_one(pool: asyncpg.Pool, sql: str, *args: Any) -> dict[str, Any] | None:
    """
    Run a query and return a single row as a dict (or None).
    """
    with translate_errors():
        row = await pool.fetchrow(sql, *args)
    return _record_to_dict(row) if row is not None else None


async def fetch_all(pool: asyncpg.Pool, sql: str, *args: Any) -> list[dict[str, Any]]:
    """
    Run a query and return all rows as a list of dicts.
    """
    with translate_errors():
        rows = await pool.fetch(sql, *args)
    return [_record_to_dict(r) for r in rows]


async def fetch_value(pool: asyncpg.Pool, sql: str, *args: Any) -> Any:
    with translate_errors():
        return await pool.fetchval(sql, *args)


async def execute(pool: asyncpg.Pool, sql: str, *args: Any) -> None:
    """
    Run a statement (INSERT/UPDATE/DELETE/DDL). No result returned.
    """
    with translate_errors():
        await pool.execute(sql, *args)
