from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UploadResponse(_CamelModel):
    success: bool = True
    file_url: str
    file_name: str
    file_size: int
    file_type: str | None = None
    uploaded_at: datetime


class PresignedFileRequest(_CamelModel):
    filename: str = Field(min_length=1, max_length=255)
    content_type: str = Field(min_length=1, max_length=120)
    size: int | None = Field(default=None, ge=0)


class PresignedUploadRequest(_CamelModel):
    # Bounds on `files` are enforced by the intake service so that an over-cap batch
    # yields a single {error} body instead of a validation error list.
    files: list[PresignedFileRequest] = Field(default_factory=list)
    expires_in: int | None = Field(default=None, ge=1)


class PresignedUploadItem(_CamelModel):
    filename: str
    upload_url: str
    key: str
    cdn_url: str


class PresignedUploadResponse(_CamelModel):
    urls: list[PresignedUploadItem]
    acceleration_enabled: bool


class UploadConfigResponse(_CamelModel):
    acceleration_enabled: bool
    max_file_size: int
    max_files_per_request: int
    allowed_types: list[str]


class AttachUploadsRequest(_CamelModel):
    file_urls: list[str] = Field(min_length=1, max_length=100)


class AttachUploadsResponse(_CamelModel):
    marked_used: int
    already_used: int
    not_pending: int
