"""
Process-wide connection cache.

One `ConnectionCache` is created per process (see `api/main.py`) and shared by
every request. It connects lazily, reuses the handle on the hot path, lets
concurrent callers share a single in-flight connect attempt, and drops the
handle when it is reported broken so the next caller reconnects.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, Generic, TypeVar

from .errors import ConnectionLost, StoreUnavailable

H = TypeVar("H")

logger = logging.getLogger(__name__)


class ConnectionCache(Generic[H]):
    def __init__(
        self,
        connect: Callable[[], Awaitable[H]],
        *,
        timeout_s: float,
        close: Callable[[H], Awaitable[None]] | None = None,
        discard: Callable[[H], object] | None = None,
        is_alive: Callable[[H], bool] | None = None,
        broken_errors: tuple[type[BaseException], ...] = (ConnectionLost,),
    ) -> None:
        """
        - `connect`: opens a new handle (the only I/O this class does)
        - `timeout_s`: deadline for one connect attempt
        - `close`: graceful close used on shutdown
        - `discard`: non-blocking teardown used when a handle is invalidated
        - `is_alive`: cheap, I/O-free liveness check run on every acquire
        - `broken_errors`: exceptions escaping `session()` that mean the handle is dead
        """
        if timeout_s <= 0:
            raise ValueError("timeout_s must be > 0.")
        self._connect = connect
        self._timeout_s = timeout_s
        self._close = close
        self._discard = discard
        self._is_alive = is_alive
        self._broken_errors = broken_errors

        self._handle: H | None = None
        self._pending: asyncio.Future[H] | None = None
        self.last_error: BaseException | None = None
        self.connect_attempts = 0

    @property
    def handle(self) -> H | None:
        return self._handle

    @property
    def is_connecting(self) -> bool:
        return self._pending is not None

    async def acquire(self) -> H:
        """
        Return the shared handle, connecting first if needed.

        Raises StoreUnavailable when the connect attempt fails or times out.
        """
        handle = self._handle
        if handle is not None:
            if self._is_alive is None or self._is_alive(handle):
                return handle
            self.invalidate(handle)

        pending = self._pending
        if pending is None:
            pending = asyncio.ensure_future(self._establish())
            pending.add_done_callback(_consume_exception)
            self._pending = pending

        # Shield so one cancelled waiter does not cancel the attempt for everyone else.
        return await asyncio.shield(pending)

    async def _establish(self) -> H:
        self.connect_attempts += 1
        attempt = self.connect_attempts
        try:
            handle = await asyncio.wait_for(self._connect(), timeout=self._timeout_s)
        except asyncio.TimeoutError as exc:
            self._handle = None
            self.last_error = exc
            logger.warning("store_connect_timeout attempt=%s timeout_s=%s", attempt, self._timeout_s)
            raise StoreUnavailable(
                f"Could not connect to the database within {self._timeout_s:g}s."
            ) from exc
        except Exception as exc:
            self._handle = None
            self.last_error = exc
            logger.warning("store_connect_failed attempt=%s error=%s", attempt, exc)
            raise StoreUnavailable("Could not connect to the database.") from exc
        finally:
            self._pending = None

        self._handle = handle
        self.last_error = None
        logger.info("store_connected attempt=%s", attempt)
        return handle

    def invalidate(self, handle: H | None = None, error: BaseException | None = None) -> bool:
        """
        Health-signal entry point: forget the current handle.

        When `handle` is given, only that handle is dropped; a stale signal about a
        handle that was already replaced is ignored. Returns True if a handle was dropped.
        """
        current = self._handle
        if current is None:
            return False
        if handle is not None and handle is not current:
            return False

        self._handle = None
        if error is not None:
            self.last_error = error
        logger.warning("store_connection_invalidated error=%s", error)

        if self._discard is not None:
            try:
                self._discard(current)
            except Exception:
                logger.exception("store_discard_failed")
        return True

    @asynccontextmanager
    async def session(self) -> AsyncIterator[H]:
        """
        Acquire the handle for one unit of work.

        Connection-level failures raised inside the block invalidate the handle
        before they propagate.
        """
        handle = await self.acquire()
        try:
            yield handle
        except self._broken_errors as exc:
            self.invalidate(handle, exc)
            raise

    async def close(self) -> None:
        """
        Shutdown: let an in-flight attempt settle, then close the handle.
        """
        pending = self._pending
        if pending is not None:
            await asyncio.wait({pending})

        handle, self._handle = self._handle, None
        if handle is None:
            return None
        if self._close is not None:
            await self._close(handle)
        logger.info("store_connection_closed")


def _consume_exception(future: asyncio.Future[Any]) -> None:
    # Every waiter may have been cancelled; keep asyncio from warning about an unread error.
    if not future.cancelled():
        future.exception()
