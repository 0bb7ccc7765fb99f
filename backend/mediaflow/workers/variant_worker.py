from __future__ import annotations

import asyncio
import json
import logging
import os
import socket
from datetime import datetime, timezone
from pathlib import Path
from uuid import uuid4

from mediaflow.core.config import settings
from mediaflow.core.logging_config import configure_logging
from mediaflow.services import leader_lock, variant_generation

logger = logging.getLogger(__name__)

HEARTBEAT_FILE = str(settings.variant_worker_heartbeat_file or "/tmp/variant-worker-heartbeat.json")


def _worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"


def _heartbeat_payload(worker_id: str, *, last_report: dict[str, int] | None) -> dict[str, object]:
    return {
        "worker_id": worker_id,
        "hostname": socket.gethostname(),
        "pid": os.getpid(),
        "app_version": (settings.app_version or "").strip() or None,
        "last_seen_at": datetime.now(timezone.utc).isoformat(),
        "last_report": last_report,
    }


def _write_heartbeat_file(payload: dict[str, object], path: str | None = None) -> None:
    try:
        target = Path(path or HEARTBEAT_FILE)
        target.parent.mkdir(parents=True, exist_ok=True)
        temp = target.with_suffix(f"{target.suffix}.tmp")
        temp.write_text(json.dumps(payload, separators=(",", ":"), ensure_ascii=False), encoding="utf-8")
        temp.replace(target)
    except Exception:
        logger.exception("variant_worker_heartbeat_file_failed")


async def run_pass_once() -> dict[str, int] | None:
    try:
        report = await variant_generation.run_variant_pass()
    except leader_lock.JobAlreadyRunning:
        logger.info("variant_worker_overlap_skipped")
        return None
    return report.as_dict()


async def run_variant_worker(*, poll_interval_seconds: float | None = None, stop: asyncio.Event | None = None) -> None:
    """Run backfill passes until `stop` is set, writing a heartbeat file after every pass."""
    worker_id = _worker_id()
    interval = max(1.0, float(poll_interval_seconds or settings.variant_worker_poll_seconds))
    stop_event = stop or asyncio.Event()
    last_report: dict[str, int] | None = None
    logger.info("variant_worker_started", extra={"worker_id": worker_id, "poll_interval_seconds": interval})
    while not stop_event.is_set():
        try:
            last_report = await run_pass_once() or last_report
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("variant_worker_loop_error", extra={"worker_id": worker_id})
        _write_heartbeat_file(_heartbeat_payload(worker_id, last_report=last_report))
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue
    logger.info("variant_worker_stopped", extra={"worker_id": worker_id})


def main() -> None:  # pragma: no cover
    configure_logging(json_logs=settings.log_json)
    asyncio.run(run_variant_worker())


if __name__ == "__main__":  # pragma: no cover
    main()
