from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from functools import partial
from typing import Any
from uuid import UUID

import anyio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mediaflow.core import metrics
from mediaflow.core.config import settings
from mediaflow.db.session import SessionLocal
from mediaflow.models.media import VARIANT_NAMES, MediaAsset
from mediaflow.services import leader_lock
from mediaflow.services.image_transform import (
    SIZE_PROFILES,
    WEBP_PROFILE,
    ImageMetadata,
    ImageTransformError,
    RenderedVariant,
    extract_metadata,
    open_image,
    render_jpeg_variant,
    render_webp_variant,
)
from mediaflow.services.object_store import ObjectStore, ObjectStoreError, get_object_store

logger = logging.getLogger(__name__)

JOB_NAME = "variant_generation"
VARIANT_PREFIX = "variants"
# Variant keys are stable per asset and get overwritten on regeneration.
VARIANT_CACHE_CONTROL = "public, max-age=86400"
_UNDECODABLE_MIME_TYPES = frozenset({"image/svg+xml"})

OUTCOME_SUCCESS = "success"
OUTCOME_SKIPPED = "skipped"
OUTCOME_ERROR = "error"


@dataclass(slots=True)
class VariantPassReport:
    processed: int = 0
    success: int = 0
    skipped: int = 0
    errors: int = 0
    asset_ids: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data.pop("asset_ids", None)
        return data


@dataclass(slots=True)
class _RenderResult:
    metadata: ImageMetadata
    variants: list[RenderedVariant]
    failures: dict[str, str]


def variant_key(name: str, storage_key: str, extension: str) -> str:
    return f"{VARIANT_PREFIX}/{name}/{storage_key.strip('/')}.{extension}"


def needs_variants(variants: dict[str, Any] | None) -> bool:
    if not variants:
        return True
    return any(not variants.get(name) for name in VARIANT_NAMES)


def _is_transformable(mime_type: str | None) -> bool:
    if not mime_type:
        return True
    mime = mime_type.lower()
    return mime.startswith("image/") and mime not in _UNDECODABLE_MIME_TYPES


async def find_eligible_asset_ids(
    session: AsyncSession,
    *,
    force: bool = False,
    asset_id: UUID | None = None,
) -> list[UUID]:
    stmt = select(MediaAsset.id, MediaAsset.variants, MediaAsset.mime_type).order_by(MediaAsset.created_at)
    if asset_id is not None:
        stmt = stmt.where(MediaAsset.id == asset_id)
    rows = (await session.execute(stmt)).all()
    return [
        row_id
        for row_id, variants, mime_type in rows
        if _is_transformable(mime_type) and (force or needs_variants(variants))
    ]


def _render_all(data: bytes, *, jpeg_quality: int, webp_quality: int) -> _RenderResult:
    """CPU-bound; runs in a worker thread. Decode failures abort, per-variant failures are collected."""
    img = open_image(data)
    metadata = extract_metadata(img, size_bytes=len(data))
    rendered: list[RenderedVariant] = []
    failures: dict[str, str] = {}
    for profile in SIZE_PROFILES:
        try:
            rendered.append(render_jpeg_variant(img, profile, quality=jpeg_quality))
        except Exception as exc:
            failures[profile.name] = str(exc)
    try:
        rendered.append(render_webp_variant(img, WEBP_PROFILE, quality=webp_quality))
    except Exception as exc:
        failures[WEBP_PROFILE.name] = str(exc)
    return _RenderResult(metadata=metadata, variants=rendered, failures=failures)


async def _store_variant(store: ObjectStore, asset: MediaAsset, variant: RenderedVariant) -> str:
    key = variant_key(variant.name, asset.storage_key, variant.extension)
    await store.put_object(key, variant.data, content_type=variant.content_type, cache_control=VARIANT_CACHE_CONTROL)
    return key


async def process_asset(
    asset_id: UUID,
    *,
    session_factory: async_sessionmaker[AsyncSession],
    store: ObjectStore,
    force: bool = False,
) -> str:
    """
    Generate every variant of one asset and persist the result in a single update.

    A source that cannot be fetched or decoded leaves the row untouched so the next pass
    retries it. A variant that fails to render or upload is left out of the map (with a
    warning) while the others are still recorded.
    """
    async with session_factory() as session:
        asset = await session.get(MediaAsset, asset_id)
        if asset is None or not (force or needs_variants(asset.variants)):
            return OUTCOME_SKIPPED

        source_key = asset.source_key
        try:
            data = await store.get_object(source_key)
        except ObjectStoreError as exc:
            logger.warning(
                "variant_generation_skipped",
                extra={"asset_id": str(asset_id), "key": source_key, "reason": "fetch_failed", "error": str(exc)},
            )
            metrics.record_asset_skipped()
            return OUTCOME_SKIPPED

        try:
            result = await anyio.to_thread.run_sync(
                partial(
                    _render_all,
                    data,
                    jpeg_quality=int(settings.variant_jpeg_quality),
                    webp_quality=int(settings.variant_webp_quality),
                )
            )
        except ImageTransformError as exc:
            logger.warning(
                "variant_generation_skipped",
                extra={"asset_id": str(asset_id), "key": source_key, "reason": "decode_failed", "error": str(exc)},
            )
            metrics.record_asset_skipped()
            return OUTCOME_SKIPPED

        failures = dict(result.failures)
        stored = await asyncio.gather(
            *(_store_variant(store, asset, variant) for variant in result.variants),
            return_exceptions=True,
        )
        variant_map: dict[str, str] = {}
        for variant, outcome in zip(result.variants, stored):
            if isinstance(outcome, BaseException):
                failures[variant.name] = str(outcome)
            else:
                variant_map[variant.name] = outcome

        for name, error in failures.items():
            logger.warning(
                "variant_generation_variant_failed",
                extra={"asset_id": str(asset_id), "variant": name, "error": error},
            )

        # Keep previously stored entries for variants that failed this time; their keys are unchanged.
        merged = {name: key for name, key in (asset.variants or {}).items() if name in VARIANT_NAMES}
        merged.update(variant_map)

        meta = result.metadata
        asset.width = meta.width
        asset.height = meta.height
        asset.size_bytes = meta.size_bytes
        asset.mime_type = meta.mime_type
        asset.variants = {name: merged[name] for name in VARIANT_NAMES if name in merged}
        session.add(asset)
        await session.commit()

        metrics.record_variants_generated(len(variant_map))
        metrics.record_variant_failures(len(failures))
        logger.info(
            "variant_generation_asset_done",
            extra={"asset_id": str(asset_id), "generated": len(variant_map), "failed": len(failures)},
        )
        return OUTCOME_SUCCESS


async def run_variant_pass(
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    store: ObjectStore | None = None,
    concurrency: int | None = None,
    force: bool = False,
    asset_id: UUID | None = None,
) -> VariantPassReport:
    factory = session_factory or SessionLocal
    object_store = store or get_object_store()
    limit = max(1, int(concurrency or settings.variant_concurrency))
    report = VariantPassReport()

    async with leader_lock.exclusive(JOB_NAME):
        async with factory() as session:
            asset_ids = await find_eligible_asset_ids(session, force=force, asset_id=asset_id)
        if not asset_ids:
            logger.info("variant_generation_nothing_to_do", extra={"force": force})
            return report

        semaphore = asyncio.Semaphore(limit)

        async def _one(target: UUID) -> str:
            async with semaphore:
                try:
                    return await process_asset(target, session_factory=factory, store=object_store, force=force)
                except Exception:
                    logger.exception("variant_generation_asset_failed", extra={"asset_id": str(target)})
                    return OUTCOME_ERROR

        outcomes = await asyncio.gather(*(_one(target) for target in asset_ids))

    report.processed = len(outcomes)
    report.success = sum(1 for outcome in outcomes if outcome == OUTCOME_SUCCESS)
    report.skipped = sum(1 for outcome in outcomes if outcome == OUTCOME_SKIPPED)
    report.errors = sum(1 for outcome in outcomes if outcome == OUTCOME_ERROR)
    report.asset_ids = [str(target) for target in asset_ids]
    logger.info("variant_generation_completed", extra=report.as_dict())
    return report
