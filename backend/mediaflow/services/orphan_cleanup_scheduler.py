from __future__ import annotations

import asyncio
import logging
from contextlib import suppress

from fastapi import FastAPI

from mediaflow.core.config import settings
from mediaflow.services import leader_lock, orphan_cleanup

logger = logging.getLogger(__name__)


async def _run_once() -> orphan_cleanup.CleanupReport | None:
    if not bool(getattr(settings, "orphan_cleanup_enabled", True)):
        return None
    try:
        return await orphan_cleanup.run_cleanup()
    except leader_lock.JobAlreadyRunning:
        logger.info("orphan_cleanup_overlap_skipped")
        return None


async def _loop(stop: asyncio.Event) -> None:
    # First pass runs immediately at startup, then every interval.
    interval = max(60, int(getattr(settings, "orphan_cleanup_interval_seconds", 21600) or 21600))
    while not stop.is_set():
        try:
            await _run_once()
        except asyncio.CancelledError:
            break
        except Exception as exc:
            logger.warning("orphan_cleanup_scheduler_failed", extra={"error": str(exc)})

        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=interval)


def start(app: FastAPI) -> None:
    if not bool(getattr(settings, "orphan_cleanup_enabled", True)):
        return
    if getattr(app.state, "orphan_cleanup_scheduler_task", None) is not None:
        return

    stop = asyncio.Event()
    task = asyncio.create_task(leader_lock.run_as_leader(name="orphan_cleanup_scheduler", stop=stop, work=_loop))
    app.state.orphan_cleanup_scheduler_stop = stop
    app.state.orphan_cleanup_scheduler_task = task


async def stop(app: FastAPI) -> None:
    stop_event = getattr(app.state, "orphan_cleanup_scheduler_stop", None)
    task = getattr(app.state, "orphan_cleanup_scheduler_task", None)
    if stop_event:
        stop_event.set()
    if task:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    if getattr(app.state, "orphan_cleanup_scheduler_stop", None) is not None:
        delattr(app.state, "orphan_cleanup_scheduler_stop")
    if getattr(app.state, "orphan_cleanup_scheduler_task", None) is not None:
        delattr(app.state, "orphan_cleanup_scheduler_task")
