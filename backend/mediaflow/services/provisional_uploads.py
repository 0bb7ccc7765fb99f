from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mediaflow.models.media import ProvisionalUpload, ProvisionalUploadStatus

logger = logging.getLogger(__name__)

# ORPHAN has no successor status: its only exit is deletion of the row.
ALLOWED_TRANSITIONS: dict[ProvisionalUploadStatus, frozenset[ProvisionalUploadStatus]] = {
    ProvisionalUploadStatus.pending: frozenset({ProvisionalUploadStatus.used, ProvisionalUploadStatus.orphan}),
    ProvisionalUploadStatus.used: frozenset(),
    ProvisionalUploadStatus.orphan: frozenset(),
}


@dataclass(slots=True)
class AttachResult:
    marked_used: int = 0
    already_used: int = 0
    not_pending: int = 0


def _now() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: ProvisionalUploadStatus, target: ProvisionalUploadStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def sources_of(target: ProvisionalUploadStatus) -> tuple[ProvisionalUploadStatus, ...]:
    """States a row may be in for a conditional UPDATE to `target` to apply."""
    return tuple(status for status in ProvisionalUploadStatus if can_transition(status, target))


async def record_upload(
    session: AsyncSession,
    *,
    file_url: str,
    file_name: str,
    file_size: int,
    file_type: str | None,
    form_config_id: str | None,
    field_name: str | None,
    ip_address: str | None,
    uploaded_at: datetime | None = None,
) -> ProvisionalUpload | None:
    """
    Insert a PENDING tracking row for an object that is already in storage.

    Best-effort: the object write has happened, so a failure here is logged with the URL
    (for later reconciliation) and swallowed instead of failing the upload.
    """
    row = ProvisionalUpload(
        file_url=file_url,
        file_name=(file_name or "file")[:255],
        file_size=max(0, int(file_size or 0)),
        file_type=(file_type or None),
        form_config_id=form_config_id,
        field_name=field_name,
        ip_address=(ip_address or None),
        status=ProvisionalUploadStatus.pending,
        uploaded_at=uploaded_at or _now(),
    )
    try:
        session.add(row)
        await session.commit()
    except Exception as exc:
        await session.rollback()
        logger.error(
            "provisional_upload_record_failed",
            extra={"file_url": file_url, "file_name": file_name, "error": str(exc)},
        )
        return None
    return row


async def mark_used(session: AsyncSession, *, file_urls: list[str], now: datetime | None = None) -> AttachResult:
    """
    Attachment contract: the consuming application asserts these uploads are now referenced.

    The PENDING check happens inside the UPDATE itself, so a row orphaned (or deleted) by
    a concurrent cleanup pass after the caller looked at it is never moved to USED.
    """
    result = AttachResult()
    urls = sorted({url.strip() for url in file_urls if url and url.strip()})
    if not urls:
        return result
    stamp = now or _now()
    moved = await session.execute(
        update(ProvisionalUpload)
        .where(
            ProvisionalUpload.file_url.in_(urls),
            ProvisionalUpload.status.in_(sources_of(ProvisionalUploadStatus.used)),
        )
        .values(status=ProvisionalUploadStatus.used, used_at=stamp)
        .execution_options(synchronize_session=False)
    )
    result.marked_used = int(moved.rowcount or 0)

    rows = (
        await session.execute(
            select(ProvisionalUpload.id, ProvisionalUpload.file_url, ProvisionalUpload.status).where(
                ProvisionalUpload.file_url.in_(urls)
            )
        )
    ).all()
    used = 0
    for upload_id, file_url, status in rows:
        if ProvisionalUploadStatus(status) == ProvisionalUploadStatus.used:
            used += 1
            continue
        result.not_pending += 1
        logger.warning(
            "provisional_upload_attach_rejected",
            extra={"upload_id": str(upload_id), "status": ProvisionalUploadStatus(status).value, "file_url": file_url},
        )
    result.already_used = max(0, used - result.marked_used)
    await session.commit()
    return result


async def mark_orphans(session: AsyncSession, *, cutoff: datetime, now: datetime | None = None) -> int:
    """Bulk PENDING -> ORPHAN for rows uploaded before `cutoff`; returns the number of rows moved."""
    stmt = (
        update(ProvisionalUpload)
        .where(
            ProvisionalUpload.status.in_(sources_of(ProvisionalUploadStatus.orphan)),
            ProvisionalUpload.uploaded_at < cutoff,
        )
        .values(status=ProvisionalUploadStatus.orphan, orphaned_at=now or _now())
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    await session.commit()
    return int(result.rowcount or 0)


async def status_counts(session: AsyncSession) -> dict[str, int]:
    rows = (
        await session.execute(select(ProvisionalUpload.status, func.count()).group_by(ProvisionalUpload.status))
    ).all()
    counts = {status.value: 0 for status in ProvisionalUploadStatus}
    for status, count in rows:
        key = status.value if hasattr(status, "value") else str(status)
        counts[key] = int(count or 0)
    return counts
