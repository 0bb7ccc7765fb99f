from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager, suppress

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from mediaflow.core.config import settings
from mediaflow.db.session import engine

logger = logging.getLogger(__name__)

_RETRY_SECONDS = 15
_LEADER_ENGINE: AsyncEngine | None = None
_RUNNING: set[str] = set()


class JobAlreadyRunning(RuntimeError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Job {name!r} is already running")
        self.name = name


def _uses_advisory_locks() -> bool:
    return engine.url.get_backend_name() == "postgresql"


def lock_key(name: str) -> int:
    """Stable signed 64-bit key for pg_try_advisory_lock derived from the job name."""
    digest = hashlib.sha256(name.encode("utf-8")).digest()[:8]
    return int.from_bytes(digest, "big", signed=True)


def _lock_engine() -> AsyncEngine:
    # The advisory lock lives as long as its session, so the leader keeps one connection
    # checked out for the whole loop; a one-connection pool keeps that off the request pool.
    global _LEADER_ENGINE
    if _LEADER_ENGINE is None:
        _LEADER_ENGINE = create_async_engine(
            settings.database_url,
            future=True,
            pool_size=1,
            max_overflow=0,
            pool_pre_ping=True,
        )
    return _LEADER_ENGINE


async def _pause(stop: asyncio.Event, seconds: float) -> None:
    with suppress(asyncio.TimeoutError):
        await asyncio.wait_for(stop.wait(), timeout=seconds)


def is_running(name: str) -> bool:
    return name in _RUNNING


@asynccontextmanager
async def exclusive(name: str) -> AsyncIterator[None]:
    """
    Non-reentrant in-process guard around one run of a job.

    A second entry while the first is still inside raises JobAlreadyRunning instead of
    waiting, so a slow pass is never stacked behind by the next timer tick or a manual
    trigger.
    """
    if name in _RUNNING:
        raise JobAlreadyRunning(name)
    _RUNNING.add(name)
    try:
        yield
    finally:
        _RUNNING.discard(name)


async def run_as_leader(
    *,
    name: str,
    stop: asyncio.Event,
    work: Callable[[asyncio.Event], Awaitable[None]],
    retry_seconds: int = _RETRY_SECONDS,
) -> None:
    """
    Run `work(stop)` on exactly one replica.

    On Postgres the replica holding the advisory lock for `name` runs the loop; the others
    poll every `retry_seconds` until it is released or `stop` is set. Other backends have
    no cross-process lock and run the loop directly.
    """
    if not _uses_advisory_locks():
        await work(stop)
        return

    key = lock_key(name)
    retry = max(5, int(retry_seconds))
    while not stop.is_set():
        try:
            async with _lock_engine().connect() as conn:
                locked = await conn.scalar(text("SELECT pg_try_advisory_lock(:key)"), {"key": key})
                if not locked:
                    await _pause(stop, retry)
                    continue
                logger.info("leader_lock_acquired", extra={"lock_name": name, "lock_key": key})
                try:
                    await work(stop)
                finally:
                    with suppress(Exception):
                        await conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": key})
                return
        except asyncio.CancelledError:
            break
        except Exception as exc:
            logger.warning("leader_lock_failed", extra={"lock_name": name, "lock_key": key, "error": str(exc)})
            await _pause(stop, retry)
