from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MediaAssetRead(_CamelModel):
    id: UUID
    storage_key: str
    extension: str
    original_filename: str | None = None
    file_url: str
    size_bytes: int | None = None
    mime_type: str | None = None
    width: int | None = None
    height: int | None = None
    variants: dict[str, str] = Field(default_factory=dict)
    category: str | None = None
    tags: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class RegenerateVariantsRequest(_CamelModel):
    force_regenerate: bool = False
    media_id: UUID | None = None


class RegenerateVariantsResponse(_CamelModel):
    success: bool
    processed: int
    success_count: int
    skipped_count: int
    error_count: int
