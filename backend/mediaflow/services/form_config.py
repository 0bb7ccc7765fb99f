from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from uuid import UUID

from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from mediaflow.core.config import settings
from mediaflow.models.media import FormConfig

BASE_FIELDS_LANG = "en"


@dataclass(frozen=True, slots=True)
class FieldUploadRules:
    form_id: str
    form_name: str
    field_name: str
    max_size_mb: float
    accept: str | None

    @property
    def max_size_bytes(self) -> int:
        return int(self.max_size_mb * 1024 * 1024)


def _coerce_max_size_mb(raw: Any) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return float(settings.upload_default_max_size_mb)
    return value if value > 0 else float(settings.upload_default_max_size_mb)


def _find_field(fields: Any, field_name: str) -> dict[str, Any] | None:
    # Fields are stored per language; the base language carries the validation rules.
    per_lang = fields.get(BASE_FIELDS_LANG) if isinstance(fields, dict) else None
    for candidate in per_lang or []:
        if isinstance(candidate, dict) and candidate.get("fieldName") == field_name:
            return candidate
    return None


def rules_from_form(form: FormConfig, field_name: str) -> FieldUploadRules:
    field = _find_field(form.fields, field_name)
    if field is None or field.get("fieldType") != "file":
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid field configuration")
    validation = field.get("validation") or {}
    accept = validation.get("accept") if isinstance(validation, dict) else None
    return FieldUploadRules(
        form_id=str(form.id),
        form_name=form.name or "unknown",
        field_name=field_name,
        max_size_mb=_coerce_max_size_mb(validation.get("maxSize") if isinstance(validation, dict) else None),
        accept=str(accept) if accept else None,
    )


async def get_field_upload_rules(session: AsyncSession, *, form_config_id: str, field_name: str) -> FieldUploadRules:
    try:
        form_uuid = UUID(str(form_config_id))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid form configuration")
    form = await session.get(FormConfig, form_uuid)
    if form is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Form configuration not found")
    return rules_from_form(form, field_name)
