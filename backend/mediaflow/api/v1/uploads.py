import logging

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile, status
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from mediaflow.core.rate_limit import UploadRateLimiter
from mediaflow.db.session import get_session
from mediaflow.schemas.error import ErrorResponse
from mediaflow.schemas.uploads import (
    AttachUploadsRequest,
    AttachUploadsResponse,
    PresignedUploadRequest,
    PresignedUploadResponse,
    UploadConfigResponse,
    UploadResponse,
)
from mediaflow.services import provisional_uploads, upload_intake
from mediaflow.services.object_store import ObjectStore, get_object_store

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/uploads", tags=["uploads"])


def get_upload_rate_limiter() -> UploadRateLimiter:
    return upload_intake.upload_rate_limiter


def _upload_failed(exc: Exception) -> JSONResponse:
    payload = ErrorResponse(error="Upload failed", message=str(exc))
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=jsonable_encoder(payload.model_dump(exclude_none=True)),
    )


@router.post("/form-file", response_model=UploadResponse)
async def upload_form_file(
    request: Request,
    file: UploadFile | None = File(default=None),
    form_config_id: str | None = Form(default=None, alias="formConfigId"),
    field_name: str | None = Form(default=None, alias="fieldName"),
    session: AsyncSession = Depends(get_session),
    store: ObjectStore = Depends(get_object_store),
    limiter: UploadRateLimiter = Depends(get_upload_rate_limiter),
):
    try:
        return await upload_intake.accept_form_upload(
            session,
            file=file,
            form_config_id=form_config_id,
            field_name=field_name,
            ip=upload_intake.client_ip(request),
            store=store,
            limiter=limiter,
        )
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("upload_failed", extra={"form_config_id": form_config_id, "field_name": field_name})
        return _upload_failed(exc)


@router.post("/presigned", response_model=PresignedUploadResponse)
async def create_presigned_uploads(
    payload: PresignedUploadRequest,
    request: Request,
    session: AsyncSession = Depends(get_session),
    store: ObjectStore = Depends(get_object_store),
):
    try:
        return await upload_intake.issue_presigned_uploads(
            session,
            payload=payload,
            ip=upload_intake.client_ip(request),
            store=store,
        )
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("presigned_upload_failed", extra={"count": len(payload.files)})
        return _upload_failed(exc)


@router.get("/config", response_model=UploadConfigResponse)
def get_upload_config(store: ObjectStore = Depends(get_object_store)) -> UploadConfigResponse:
    return upload_intake.upload_config(store)


@router.post("/attach", response_model=AttachUploadsResponse)
async def attach_uploads(
    payload: AttachUploadsRequest,
    session: AsyncSession = Depends(get_session),
) -> AttachUploadsResponse:
    """Called by the consuming application once the submitted record references these files."""
    result = await provisional_uploads.mark_used(session, file_urls=payload.file_urls)
    logger.info(
        "provisional_uploads_attached",
        extra={"marked_used": result.marked_used, "already_used": result.already_used, "not_pending": result.not_pending},
    )
    return AttachUploadsResponse(
        marked_used=result.marked_used,
        already_used=result.already_used,
        not_pending=result.not_pending,
    )
