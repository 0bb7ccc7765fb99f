"""Content-type verification by leading-byte signatures.

A field's accept-list (".pdf, image/*, application/zip") is resolved to MIME patterns and
the payload's first bytes must match a signature of at least one of them. Textual types
carry no signature and are accepted on the declared type alone.
"""

from __future__ import annotations

FILE_SIGNATURES: dict[str, tuple[bytes, ...]] = {
    "image/jpeg": (b"\xff\xd8\xff",),
    "image/png": (b"\x89PNG",),
    "image/gif": (b"GIF",),
    "image/webp": (b"RIFF",),
    "image/bmp": (b"BM",),
    "application/pdf": (b"%PDF",),
    # OLE2 compound documents
    "application/msword": (b"\xd0\xcf\x11\xe0",),
    "application/vnd.ms-excel": (b"\xd0\xcf\x11\xe0",),
    # ZIP containers
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": (b"PK\x03\x04",),
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": (b"PK\x03\x04",),
    "application/zip": (b"PK\x03\x04",),
}

TEXTUAL_TYPES = frozenset({"text/plain", "text/markdown"})

EXTENSION_TO_MIME: dict[str, str] = {
    ".pdf": "application/pdf",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".xls": "application/vnd.ms-excel",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    ".zip": "application/zip",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
    ".txt": "text/plain",
    ".md": "text/markdown",
}


def parse_accept_types(accept: str | list[str] | tuple[str, ...] | None) -> list[str]:
    """Normalize an accept-list into MIME types / wildcard patterns; unknown extensions are dropped."""
    if not accept:
        return []
    raw_items = accept.split(",") if isinstance(accept, str) else list(accept)
    mime_types: list[str] = []
    for raw in raw_items:
        item = str(raw or "").strip().lower()
        if not item:
            continue
        if item.startswith("."):
            mime = EXTENSION_TO_MIME.get(item)
            if mime:
                mime_types.append(mime)
            continue
        mime_types.append(item)
    return mime_types


def _matches(head: bytes, mime: str) -> bool:
    return any(head.startswith(signature) for signature in FILE_SIGNATURES.get(mime, ()))


def _webp_confirmed(head: bytes) -> bool:
    return len(head) >= 12 and head[8:12] == b"WEBP"


def matches_accept_types(head: bytes, accept_types: list[str]) -> bool:
    for accepted in accept_types:
        if accepted in TEXTUAL_TYPES:
            return True
        if "*" in accepted:
            base = accepted.split("/", 1)[0]
            if base == "text":
                return True
            candidates = [mime for mime in FILE_SIGNATURES if mime.startswith(f"{base}/")] if base != "*" else list(FILE_SIGNATURES)
        else:
            candidates = [accepted]
        for mime in candidates:
            if not _matches(head, mime):
                continue
            # RIFF alone also prefixes WAV/AVI; require the WEBP fourcc.
            if mime == "image/webp" and not _webp_confirmed(head):
                continue
            return True
    return False


def detect_mime(head: bytes) -> str | None:
    """Best-effort MIME from signatures; ambiguous containers resolve to their generic type."""
    for mime in ("image/jpeg", "image/png", "image/gif", "image/bmp", "application/pdf", "application/zip"):
        if _matches(head, mime):
            return mime
    if _matches(head, "image/webp") and _webp_confirmed(head):
        return "image/webp"
    if _matches(head, "application/msword"):
        return "application/x-ole-storage"
    return None
