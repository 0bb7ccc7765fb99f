from __future__ import annotations

import asyncio
import logging
from contextlib import suppress

from fastapi import FastAPI

from mediaflow.core.config import settings
from mediaflow.services import leader_lock, variant_generation

logger = logging.getLogger(__name__)


async def _run_once() -> int:
    if not bool(getattr(settings, "variant_backfill_enabled", True)):
        return 0
    try:
        report = await variant_generation.run_variant_pass()
    except leader_lock.JobAlreadyRunning:
        logger.info("variant_backfill_overlap_skipped")
        return 0
    return report.processed


async def _loop(stop: asyncio.Event) -> None:
    interval = max(60, int(getattr(settings, "variant_backfill_interval_seconds", 3600) or 3600))
    while not stop.is_set():
        try:
            processed = await _run_once()
            if processed:
                logger.info("variant_backfill_pass_done", extra={"processed": int(processed)})
        except asyncio.CancelledError:
            break
        except Exception as exc:
            logger.warning("variant_backfill_scheduler_failed", extra={"error": str(exc)})

        with suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop.wait(), timeout=interval)


def start(app: FastAPI) -> None:
    if not bool(getattr(settings, "variant_backfill_enabled", True)):
        return
    if getattr(app.state, "variant_backfill_scheduler_task", None) is not None:
        return

    stop = asyncio.Event()
    task = asyncio.create_task(leader_lock.run_as_leader(name="variant_backfill_scheduler", stop=stop, work=_loop))
    app.state.variant_backfill_scheduler_stop = stop
    app.state.variant_backfill_scheduler_task = task


async def stop(app: FastAPI) -> None:
    stop_event = getattr(app.state, "variant_backfill_scheduler_stop", None)
    task = getattr(app.state, "variant_backfill_scheduler_task", None)
    if stop_event:
        stop_event.set()
    if task:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
    for attr in ("variant_backfill_scheduler_stop", "variant_backfill_scheduler_task"):
        if getattr(app.state, attr, None) is not None:
            delattr(app.state, attr)
