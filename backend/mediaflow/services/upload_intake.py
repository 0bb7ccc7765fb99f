from __future__ import annotations

import asyncio
import base64
import hashlib
import logging
import re
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Protocol
from uuid import uuid4

from fastapi import HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from mediaflow.core import metrics
from mediaflow.core.config import settings
from mediaflow.core.rate_limit import UploadRateLimiter
from mediaflow.schemas.uploads import (
    PresignedUploadItem,
    PresignedUploadRequest,
    PresignedUploadResponse,
    UploadConfigResponse,
    UploadResponse,
)
from mediaflow.services import form_config, provisional_uploads
from mediaflow.services.file_signatures import detect_mime, matches_accept_types, parse_accept_types
from mediaflow.services.object_store import IMMUTABLE_CACHE_CONTROL, ObjectStore, get_object_store

logger = logging.getLogger(__name__)

SIGNATURE_HEAD_BYTES = 16
MAX_PRESIGNED_EXPIRES_SECONDS = 7 * 24 * 60 * 60
FORM_ATTACHMENT_TAGGING = "Type=FormAttachment&AutoDelete=true"
DELEGATED_ALLOWED_TYPES = [
    "image/jpeg",
    "image/png",
    "image/gif",
    "image/webp",
    "image/svg+xml",
    "application/pdf",
]

_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")
_UNSAFE_EXT_RE = re.compile(r"[^a-z0-9]")

upload_rate_limiter = UploadRateLimiter(
    limit=settings.upload_rate_limit_max,
    window_seconds=settings.upload_rate_limit_window_seconds,
    key="form_file_upload",
)


class UploadedFile(Protocol):
    filename: str | None
    content_type: str | None

    async def seek(self, offset: int) -> None: ...

    async def read(self, size: int = -1) -> bytes: ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _reject(reason: str, detail: str, *, status_code: int = status.HTTP_400_BAD_REQUEST) -> HTTPException:
    metrics.record_upload_rejected(reason)
    return HTTPException(status_code=status_code, detail=detail)


def client_ip(request: Request) -> str:
    forwarded = (request.headers.get("x-forwarded-for") or "").split(",")[0].strip()
    if forwarded:
        return forwarded
    real_ip = (request.headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def sanitize_filename(filename: str | None) -> tuple[str, str]:
    """Split into a storage-safe stem and a lowercase alphanumeric extension."""
    name = PurePosixPath(str(filename or "").replace("\\", "/")).name
    stem, dot, ext = name.rpartition(".")
    if not dot:
        stem, ext = name, ""
    safe_stem = _UNSAFE_NAME_RE.sub("-", stem).strip("-._")[:64] or "file"
    safe_ext = _UNSAFE_EXT_RE.sub("", ext.lower())[:16] or "bin"
    return safe_stem, safe_ext


def _safe_segment(value: str) -> str:
    return _UNSAFE_NAME_RE.sub("-", str(value or "")).strip("-.") or "unknown"


def derive_storage_key(content: bytes, *, form_config_id: str, filename: str | None, now: datetime) -> str:
    digest = hashlib.sha256(content).hexdigest()[: max(8, int(settings.upload_key_hash_chars))]
    stem, ext = sanitize_filename(filename)
    timestamp_ms = int(now.timestamp() * 1000)
    prefix = settings.upload_key_prefix.strip("/")
    return f"{prefix}/{_safe_segment(form_config_id)}/{timestamp_ms}-{digest}-{stem}.{ext}"


async def _read_limited(file: UploadedFile, max_bytes: int) -> bytes:
    # One byte past the limit is enough to tell an oversized file apart.
    await file.seek(0)
    return await file.read(max_bytes + 1)


def _object_metadata(*, filename: str, ip: str, rules: form_config.FieldUploadRules, now: datetime) -> dict[str, str]:
    return {
        # S3 metadata is ASCII-only; base64 keeps non-latin filenames intact.
        "originalnamebase64": base64.b64encode(filename.encode("utf-8")).decode("ascii"),
        "uploadedby": ip,
        "formconfigid": rules.form_id,
        "formname": rules.form_name.encode("ascii", "ignore").decode("ascii") or "unknown",
        "fieldname": rules.field_name,
        "uploadtimestamp": str(int(now.timestamp() * 1000)),
    }


async def accept_form_upload(
    session: AsyncSession,
    *,
    file: UploadedFile | None,
    form_config_id: str | None,
    field_name: str | None,
    ip: str,
    store: ObjectStore | None = None,
    limiter: UploadRateLimiter | None = None,
    now: datetime | None = None,
) -> UploadResponse:
    """
    Validate and store one form attachment, then track it as a PENDING provisional upload.

    Checks run fail-fast in order: rate limit, request shape, size, signature. Nothing is
    written to the object store unless every check passes.
    """
    try:
        await (limiter or upload_rate_limiter).check(ip)
    except HTTPException:
        metrics.record_upload_rejected("rate_limited")
        logger.warning("upload_rate_limited", extra={"ip": ip})
        raise

    if file is None:
        raise _reject("malformed", "No file provided")
    if not form_config_id or not field_name:
        raise _reject("malformed", "Missing formConfigId or fieldName")

    rules = await form_config.get_field_upload_rules(session, form_config_id=form_config_id, field_name=field_name)

    content = await _read_limited(file, rules.max_size_bytes)
    if len(content) > rules.max_size_bytes:
        logger.warning(
            "upload_too_large",
            extra={"ip": ip, "field_name": field_name, "max_bytes": rules.max_size_bytes},
        )
        raise _reject("too_large", f"File too large. Maximum size: {rules.max_size_mb:g}MB")
    if not content:
        raise _reject("malformed", "Empty file")

    head = content[:SIGNATURE_HEAD_BYTES]
    accept_types = parse_accept_types(rules.accept)
    if accept_types and not matches_accept_types(head, accept_types):
        logger.warning(
            "upload_type_rejected",
            extra={"ip": ip, "field_name": field_name, "declared_type": file.content_type, "accept": accept_types},
        )
        raise _reject("invalid_type", f"Invalid file type. Accepted types: {rules.accept}")

    stamp = now or _now()
    filename = file.filename or "file"
    key = derive_storage_key(content, form_config_id=rules.form_id, filename=filename, now=stamp)
    content_type = file.content_type or detect_mime(head) or "application/octet-stream"
    object_store = store or get_object_store()

    await object_store.put_object(
        key,
        content,
        content_type=content_type,
        metadata=_object_metadata(filename=filename, ip=ip, rules=rules, now=stamp),
        tagging=FORM_ATTACHMENT_TAGGING,
        cache_control=IMMUTABLE_CACHE_CONTROL,
    )
    file_url = object_store.public_url(key)
    logger.info("upload_stored", extra={"key": key, "size_bytes": len(content), "ip": ip})

    await provisional_uploads.record_upload(
        session,
        file_url=file_url,
        file_name=filename,
        file_size=len(content),
        file_type=content_type,
        form_config_id=rules.form_id,
        field_name=field_name,
        ip_address=ip,
        uploaded_at=stamp,
    )
    metrics.record_upload_accepted()
    return UploadResponse(
        file_url=file_url,
        file_name=filename,
        file_size=len(content),
        file_type=content_type,
        uploaded_at=stamp,
    )


def _presigned_key(filename: str, *, now: datetime) -> str:
    sanitized = re.sub(r"[^a-zA-Z0-9._-]", "_", PurePosixPath(filename.replace("\\", "/")).name)[:128] or "file"
    prefix = settings.presigned_key_prefix.strip("/")
    return f"{prefix}/{int(now.timestamp() * 1000)}-{uuid4().hex[:8]}-{sanitized}"


def _presigned_expiry(raw: int | None) -> int:
    value = int(raw or settings.presigned_default_expires_seconds)
    return max(60, min(value, MAX_PRESIGNED_EXPIRES_SECONDS))


async def issue_presigned_uploads(
    session: AsyncSession,
    *,
    payload: PresignedUploadRequest,
    ip: str,
    store: ObjectStore | None = None,
    now: datetime | None = None,
) -> PresignedUploadResponse:
    """
    Issue delegated PUT credentials for a batch of files.

    The batch is validated as a whole before any credential is signed, so a bad
    descriptor (or an oversized batch) yields one error and no partial issuance.
    """
    files = payload.files
    if not files:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No files specified")
    max_files = int(settings.presigned_max_files)
    if len(files) > max_files:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Maximum {max_files} files per request")
    max_bytes = int(settings.presigned_max_file_size_bytes)
    for descriptor in files:
        if descriptor.size is not None and descriptor.size > max_bytes:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"File too large: {descriptor.filename}",
            )

    stamp = now or _now()
    expires_in = _presigned_expiry(payload.expires_in)
    object_store = store or get_object_store()
    keys = [_presigned_key(descriptor.filename, now=stamp) for descriptor in files]
    upload_urls = await asyncio.gather(
        *(
            object_store.presigned_put(
                key,
                content_type=descriptor.content_type,
                content_length=descriptor.size,
                expires_in=expires_in,
            )
            for key, descriptor in zip(keys, files)
        )
    )

    items = [
        PresignedUploadItem(
            filename=descriptor.filename,
            upload_url=upload_url,
            key=key,
            cdn_url=object_store.public_url(key),
        )
        for descriptor, key, upload_url in zip(files, keys, upload_urls)
    ]
    metrics.record_presigned_issued(len(items))
    logger.info("presigned_uploads_issued", extra={"count": len(items), "expires_in": expires_in, "ip": ip})

    if settings.presigned_track_provisional:
        for descriptor, item in zip(files, items):
            await provisional_uploads.record_upload(
                session,
                file_url=item.cdn_url,
                file_name=descriptor.filename,
                file_size=descriptor.size or 0,
                file_type=descriptor.content_type,
                form_config_id=None,
                field_name=None,
                ip_address=ip,
                uploaded_at=stamp,
            )

    return PresignedUploadResponse(urls=items, acceleration_enabled=object_store.acceleration_enabled)


def upload_config(store: ObjectStore | None = None) -> UploadConfigResponse:
    object_store = store or get_object_store()
    return UploadConfigResponse(
        acceleration_enabled=object_store.acceleration_enabled,
        max_file_size=int(settings.presigned_max_file_size_bytes),
        max_files_per_request=int(settings.presigned_max_files),
        allowed_types=list(DELEGATED_ALLOWED_TYPES),
    )
