from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from mediaflow.core import metrics
from mediaflow.models.media import ProvisionalUpload, ProvisionalUploadStatus
from mediaflow.services import leader_lock, orphan_cleanup

NOW = datetime(2026, 7, 1, 6, 0, tzinfo=timezone.utc)
PENDING = ProvisionalUploadStatus.pending
USED = ProvisionalUploadStatus.used
ORPHAN = ProvisionalUploadStatus.orphan


async def _add(session_factory, **fields) -> None:
    fields.setdefault("file_name", "f.png")
    fields.setdefault("file_size", 10)
    async with session_factory() as session:
        session.add(ProvisionalUpload(**fields))
        await session.commit()


async def _rows(session_factory) -> dict[str, ProvisionalUpload]:
    async with session_factory() as session:
        rows = (await session.execute(select(ProvisionalUpload))).scalars().all()
    return {row.file_url: row for row in rows}


@pytest.mark.anyio
async def test_stale_pending_is_orphaned_exactly_once(session_factory, store) -> None:
    url = store.public_url("form-attachments/f/1-abc-x.png")
    store.objects["form-attachments/f/1-abc-x.png"] = b"data"
    await _add(session_factory, file_url=url, status=PENDING, uploaded_at=NOW - timedelta(hours=25))

    first = await orphan_cleanup.run_cleanup(session_factory=session_factory, store=store, now=NOW)
    rows = await _rows(session_factory)
    assert first.marked_orphan == 1
    assert rows[url].status == ORPHAN
    first_orphaned_at = rows[url].orphaned_at

    second = await orphan_cleanup.run_cleanup(session_factory=session_factory, store=store, now=NOW + timedelta(hours=6))
    rows = await _rows(session_factory)
    assert second.marked_orphan == 0
    assert rows[url].orphaned_at == first_orphaned_at
    # Marking is metadata only; the object stays until the delete phase.
    assert "form-attachments/f/1-abc-x.png" in store.objects


@pytest.mark.anyio
async def test_expired_orphan_is_deleted_with_its_object(session_factory, store) -> None:
    key = "form-attachments/f/2-def-y.png"
    store.objects[key] = b"data"
    url = store.public_url(key)
    await _add(
        session_factory,
        file_url=url,
        status=ORPHAN,
        uploaded_at=NOW - timedelta(days=9),
        orphaned_at=NOW - timedelta(days=8),
    )

    report = await orphan_cleanup.run_cleanup(session_factory=session_factory, store=store, now=NOW)

    assert report.deleted == 1
    assert store.deleted == [key]
    assert key not in store.objects
    assert await _rows(session_factory) == {}
    assert metrics.snapshot()["orphans_deleted"] == 1


@pytest.mark.anyio
async def test_row_is_kept_when_object_delete_fails(session_factory, store) -> None:
    key = "form-attachments/f/3-ghi-z.png"
    store.objects[key] = b"data"
    store.fail_delete.add(key)
    url = store.public_url(key)
    await _add(session_factory, file_url=url, status=ORPHAN, orphaned_at=NOW - timedelta(days=8))

    report = await orphan_cleanup.run_cleanup(session_factory=session_factory, store=store, now=NOW)

    assert report.deleted == 0
    assert report.delete_failed == 1
    assert url in await _rows(session_factory)

    store.fail_delete.clear()
    retry = await orphan_cleanup.run_cleanup(session_factory=session_factory, store=store, now=NOW)
    assert retry.deleted == 1
    assert await _rows(session_factory) == {}


@pytest.mark.anyio
async def test_unparseable_url_keeps_row(session_factory, store) -> None:
    await _add(session_factory, file_url="not a url", status=ORPHAN, orphaned_at=NOW - timedelta(days=30))
    await _add(
        session_factory,
        file_url="https://elsewhere.example.org/file.png",
        status=ORPHAN,
        orphaned_at=NOW - timedelta(days=30),
    )

    report = await orphan_cleanup.run_cleanup(session_factory=session_factory, store=store, now=NOW)

    assert report.delete_failed == 2
    assert store.deleted == []
    assert len(await _rows(session_factory)) == 2


@pytest.mark.anyio
async def test_rows_kept_after_failures_do_not_block_newer_orphans(
    session_factory, store, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(orphan_cleanup, "_DELETE_BATCH_SIZE", 2)
    stuck_at = NOW - timedelta(days=30)
    for i in range(5):
        await _add(session_factory, file_url=f"not-a-url-{i}", status=ORPHAN, orphaned_at=stuck_at)
    key = "form-attachments/f/2-def-late.png"
    store.objects[key] = b"late"
    await _add(session_factory, file_url=store.public_url(key), status=ORPHAN, orphaned_at=NOW - timedelta(days=8))

    report = await orphan_cleanup.run_cleanup(session_factory=session_factory, store=store, now=NOW)

    assert (report.deleted, report.delete_failed) == (1, 5)
    assert store.deleted == [key]
    assert sorted(await _rows(session_factory)) == [f"not-a-url-{i}" for i in range(5)]


@pytest.mark.anyio
async def test_recent_orphans_are_not_deleted(session_factory, store) -> None:
    url = store.public_url("form-attachments/f/4.png")
    await _add(session_factory, file_url=url, status=ORPHAN, orphaned_at=NOW - timedelta(days=6))

    report = await orphan_cleanup.run_cleanup(session_factory=session_factory, store=store, now=NOW)

    assert report.deleted == 0
    assert report.delete_failed == 0
    assert url in await _rows(session_factory)


@pytest.mark.anyio
async def test_old_used_rows_are_pruned_without_touching_objects(session_factory, store) -> None:
    old_key = "form-attachments/f/old.png"
    store.objects[old_key] = b"data"
    await _add(session_factory, file_url=store.public_url(old_key), status=USED, used_at=NOW - timedelta(days=31))
    await _add(session_factory, file_url="recent-used", status=USED, used_at=NOW - timedelta(days=29))

    report = await orphan_cleanup.run_cleanup(session_factory=session_factory, store=store, now=NOW)

    assert report.pruned_used == 1
    assert list(await _rows(session_factory)) == ["recent-used"]
    assert old_key in store.objects
    assert report.tally == {"PENDING": 0, "USED": 1, "ORPHAN": 0}


@pytest.mark.anyio
async def test_failing_phase_does_not_stop_later_phases(
    session_factory, store, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def broken_mark(*args, **kwargs):
        raise RuntimeError("mark failed")

    monkeypatch.setattr(orphan_cleanup, "mark_stale_pending", broken_mark)
    await _add(session_factory, file_url="old-used", status=USED, used_at=NOW - timedelta(days=40))

    report = await orphan_cleanup.run_cleanup(session_factory=session_factory, store=store, now=NOW)

    assert report.failed_phases == ["mark"]
    assert report.pruned_used == 1


@pytest.mark.anyio
async def test_overlapping_run_is_refused(session_factory, store) -> None:
    async with leader_lock.exclusive(orphan_cleanup.JOB_NAME):
        with pytest.raises(leader_lock.JobAlreadyRunning):
            await orphan_cleanup.run_cleanup(session_factory=session_factory, store=store, now=NOW)
    assert not leader_lock.is_running(orphan_cleanup.JOB_NAME)
