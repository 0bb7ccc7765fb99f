from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone

from sqlalchemy import Row, and_, delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mediaflow.core import metrics
from mediaflow.core.config import settings
from mediaflow.db.session import SessionLocal
from mediaflow.models.media import ProvisionalUpload, ProvisionalUploadStatus
from mediaflow.services import leader_lock, provisional_uploads
from mediaflow.services.object_store import ObjectStore, ObjectStoreError, get_object_store

logger = logging.getLogger(__name__)

JOB_NAME = "orphan_cleanup"
_DELETE_BATCH_SIZE = 500


@dataclass(slots=True)
class CleanupReport:
    marked_orphan: int = 0
    deleted: int = 0
    delete_failed: int = 0
    pruned_used: int = 0
    failed_phases: list[str] = field(default_factory=list)
    tally: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return asdict(self)


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def mark_stale_pending(session: AsyncSession, *, now: datetime, threshold_hours: int) -> int:
    cutoff = now - timedelta(hours=max(1, int(threshold_hours)))
    marked = await provisional_uploads.mark_orphans(session, cutoff=cutoff, now=now)
    logger.info("orphan_cleanup_marked", extra={"count": marked, "cutoff": cutoff.isoformat()})
    return marked


async def _expired_orphan_page(
    session: AsyncSession,
    *,
    cutoff: datetime,
    after: tuple[datetime, uuid.UUID] | None,
) -> list[Row]:
    stmt = select(ProvisionalUpload.id, ProvisionalUpload.file_url, ProvisionalUpload.orphaned_at).where(
        ProvisionalUpload.status == ProvisionalUploadStatus.orphan,
        ProvisionalUpload.orphaned_at < cutoff,
    )
    if after is not None:
        last_orphaned_at, last_id = after
        stmt = stmt.where(
            or_(
                ProvisionalUpload.orphaned_at > last_orphaned_at,
                and_(ProvisionalUpload.orphaned_at == last_orphaned_at, ProvisionalUpload.id > last_id),
            )
        )
    stmt = stmt.order_by(ProvisionalUpload.orphaned_at, ProvisionalUpload.id).limit(_DELETE_BATCH_SIZE)
    return list((await session.execute(stmt)).all())


async def delete_expired_orphans(
    session: AsyncSession,
    *,
    store: ObjectStore,
    now: datetime,
    delete_days: int,
) -> tuple[int, int]:
    """
    Delete the stored object of each long-orphaned upload, then its row.

    The row is the only pointer to the object, so it is removed only after the object
    delete succeeded; rows whose URL cannot be mapped to a key are kept for inspection.
    Every expired row is visited: pages follow an (orphaned_at, id) cursor, so rows kept
    after a failure are stepped past rather than selected again.
    """
    cutoff = now - timedelta(days=max(1, int(delete_days)))
    deleted = 0
    failed = 0
    cursor: tuple[datetime, uuid.UUID] | None = None
    while True:
        rows = await _expired_orphan_page(session, cutoff=cutoff, after=cursor)
        if not rows:
            break
        cursor = (rows[-1].orphaned_at, rows[-1].id)
        for upload_id, file_url, _ in rows:
            key = store.key_from_url(file_url)
            if not key:
                failed += 1
                logger.warning(
                    "orphan_cleanup_unparseable_url", extra={"upload_id": str(upload_id), "file_url": file_url}
                )
                continue
            try:
                await store.delete_object(key)
            except ObjectStoreError as exc:
                failed += 1
                logger.warning(
                    "orphan_cleanup_object_delete_failed",
                    extra={"upload_id": str(upload_id), "key": key, "error": str(exc), "code": exc.code},
                )
                continue
            await session.execute(delete(ProvisionalUpload).where(ProvisionalUpload.id == upload_id))
            await session.commit()
            deleted += 1

    logger.info("orphan_cleanup_deleted", extra={"count": deleted, "failed": failed, "cutoff": cutoff.isoformat()})
    return deleted, failed


async def prune_used(session: AsyncSession, *, now: datetime, retention_days: int) -> int:
    cutoff = now - timedelta(days=max(1, int(retention_days)))
    result = await session.execute(
        delete(ProvisionalUpload)
        .where(
            ProvisionalUpload.status == ProvisionalUploadStatus.used,
            ProvisionalUpload.used_at < cutoff,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    pruned = int(result.rowcount or 0)
    logger.info("orphan_cleanup_pruned_used", extra={"count": pruned, "cutoff": cutoff.isoformat()})
    return pruned


async def run_cleanup(
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    store: ObjectStore | None = None,
    now: datetime | None = None,
) -> CleanupReport:
    """
    One lifecycle pass: PENDING -> ORPHAN by age, delete old orphans, prune old USED rows.

    Each phase commits on its own; a failing phase is logged and the remaining phases
    still run.
    """
    factory = session_factory or SessionLocal
    object_store = store or get_object_store()
    stamp = now or _now()
    report = CleanupReport()

    async with leader_lock.exclusive(JOB_NAME):
        async with factory() as session:
            try:
                report.marked_orphan = await mark_stale_pending(
                    session, now=stamp, threshold_hours=settings.orphan_threshold_hours
                )
            except Exception as exc:
                await session.rollback()
                report.failed_phases.append("mark")
                logger.warning("orphan_cleanup_phase_failed", extra={"phase": "mark", "error": str(exc)})

            try:
                report.deleted, report.delete_failed = await delete_expired_orphans(
                    session, store=object_store, now=stamp, delete_days=settings.orphan_delete_days
                )
            except Exception as exc:
                await session.rollback()
                report.failed_phases.append("delete")
                logger.warning("orphan_cleanup_phase_failed", extra={"phase": "delete", "error": str(exc)})

            try:
                report.pruned_used = await prune_used(
                    session, now=stamp, retention_days=settings.used_retention_days
                )
            except Exception as exc:
                await session.rollback()
                report.failed_phases.append("prune")
                logger.warning("orphan_cleanup_phase_failed", extra={"phase": "prune", "error": str(exc)})

            report.tally = await provisional_uploads.status_counts(session)

    metrics.record_cleanup(marked=report.marked_orphan, deleted=report.deleted, pruned=report.pruned_used)
    logger.info("orphan_cleanup_completed", extra=report.as_dict())
    return report
