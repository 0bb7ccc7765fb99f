from mediaflow.db.base import Base  # noqa: F401
from mediaflow.models.media import (  # noqa: F401
    VARIANT_NAMES,
    FormConfig,
    MediaAsset,
    ProvisionalUpload,
    ProvisionalUploadStatus,
)

__all__ = [
    "Base",
    "VARIANT_NAMES",
    "FormConfig",
    "MediaAsset",
    "ProvisionalUpload",
    "ProvisionalUploadStatus",
]
