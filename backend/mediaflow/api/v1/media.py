from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from mediaflow.db.session import SessionLocal, get_session
from mediaflow.models.media import VARIANT_NAMES, MediaAsset
from mediaflow.schemas.media import MediaAssetRead, RegenerateVariantsRequest, RegenerateVariantsResponse
from mediaflow.services import leader_lock, variant_generation
from mediaflow.services.object_store import ObjectStore, get_object_store

router = APIRouter(prefix="/media", tags=["media"])


def get_session_factory():
    return SessionLocal


def _asset_read(asset: MediaAsset, store: ObjectStore) -> MediaAssetRead:
    stored = asset.variants or {}
    # The variant map holds storage keys; URLs are resolved per request.
    variants = {name: store.public_url(stored[name]) for name in VARIANT_NAMES if stored.get(name)}
    return MediaAssetRead(
        id=asset.id,
        storage_key=asset.storage_key,
        extension=asset.extension,
        original_filename=asset.original_filename,
        file_url=store.public_url(asset.source_key),
        size_bytes=asset.size_bytes,
        mime_type=asset.mime_type,
        width=asset.width,
        height=asset.height,
        variants=variants,
        category=asset.category,
        tags=list(asset.tags or []),
        created_at=asset.created_at,
        updated_at=asset.updated_at,
    )


@router.get("/assets/{asset_id}", response_model=MediaAssetRead)
async def get_asset(
    asset_id: UUID,
    session: AsyncSession = Depends(get_session),
    store: ObjectStore = Depends(get_object_store),
) -> MediaAssetRead:
    asset = await session.get(MediaAsset, asset_id)
    if asset is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Media asset not found")
    return _asset_read(asset, store)


@router.post("/variants/regenerate", response_model=RegenerateVariantsResponse)
async def regenerate_variants(
    payload: RegenerateVariantsRequest,
    session_factory=Depends(get_session_factory),
    store: ObjectStore = Depends(get_object_store),
) -> RegenerateVariantsResponse:
    try:
        report = await variant_generation.run_variant_pass(
            session_factory=session_factory,
            store=store,
            force=payload.force_regenerate,
            asset_id=payload.media_id,
        )
    except leader_lock.JobAlreadyRunning:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Variant generation is already running")
    return RegenerateVariantsResponse(
        success=report.errors == 0,
        processed=report.processed,
        success_count=report.success,
        skipped_count=report.skipped,
        error_count=report.errors,
    )
