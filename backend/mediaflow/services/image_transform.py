from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO

from PIL import Image, ImageOps, UnidentifiedImageError


@dataclass(frozen=True, slots=True)
class SizeProfile:
    name: str
    width: int
    height: int | None = None

    @property
    def crop(self) -> bool:
        return self.height is not None


SIZE_PROFILES: tuple[SizeProfile, ...] = (
    SizeProfile("thumbnail", 150, 150),
    SizeProfile("small", 400),
    SizeProfile("medium", 800),
    SizeProfile("large", 1200),
    SizeProfile("xlarge", 1920),
)
WEBP_PROFILE = SizeProfile("webp", 1920)

JPEG_CONTENT_TYPE = "image/jpeg"
WEBP_CONTENT_TYPE = "image/webp"


class ImageTransformError(Exception):
    pass


@dataclass(frozen=True, slots=True)
class ImageMetadata:
    width: int
    height: int
    size_bytes: int
    mime_type: str
    format: str


@dataclass(frozen=True, slots=True)
class RenderedVariant:
    name: str
    data: bytes
    content_type: str
    extension: str
    width: int
    height: int


def open_image(data: bytes) -> Image.Image:
    """Decode the full payload and apply EXIF orientation; raises ImageTransformError."""
    try:
        img = Image.open(BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as exc:
        raise ImageTransformError(f"Cannot decode image: {exc}") from exc
    source_format = img.format
    img = ImageOps.exif_transpose(img)
    # exif_transpose returns a new image without `format`; keep it for metadata.
    img.format = source_format
    return img


def extract_metadata(img: Image.Image, *, size_bytes: int) -> ImageMetadata:
    fmt = (img.format or "").upper()
    if not fmt:
        raise ImageTransformError("Unknown image format")
    mime = Image.MIME.get(fmt) or f"image/{fmt.lower()}"
    width, height = img.size
    return ImageMetadata(width=int(width), height=int(height), size_bytes=int(size_bytes), mime_type=mime, format=fmt)


def _has_alpha(img: Image.Image) -> bool:
    return img.mode in ("RGBA", "LA", "PA") or (img.mode == "P" and "transparency" in img.info)


def _flatten_to_rgb(img: Image.Image) -> Image.Image:
    if _has_alpha(img):
        rgba = img.convert("RGBA")
        background = Image.new("RGB", rgba.size, (255, 255, 255))
        background.paste(rgba, mask=rgba.getchannel("A"))
        return background
    if img.mode != "RGB":
        return img.convert("RGB")
    return img.copy()


def _bound_width(img: Image.Image, max_width: int) -> Image.Image:
    width, height = img.size
    if width <= max_width:
        return img.copy()
    new_height = max(1, round(height * max_width / width))
    return img.resize((max_width, new_height), Image.Resampling.LANCZOS)


def _cover(img: Image.Image, width: int, height: int) -> Image.Image:
    src_w, src_h = img.size
    if src_w >= width and src_h >= height:
        return ImageOps.fit(img, (width, height), method=Image.Resampling.LANCZOS, centering=(0.5, 0.5))
    # Too small to fill the box: crop to the target aspect ratio without enlarging.
    target_ratio = width / height
    if src_w / src_h > target_ratio:
        crop_w, crop_h = max(1, round(src_h * target_ratio)), src_h
    else:
        crop_w, crop_h = src_w, max(1, round(src_w / target_ratio))
    left = (src_w - crop_w) // 2
    top = (src_h - crop_h) // 2
    return img.crop((left, top, left + crop_w, top + crop_h))


def render_jpeg_variant(img: Image.Image, profile: SizeProfile, *, quality: int = 85) -> RenderedVariant:
    rgb = _flatten_to_rgb(img)
    if profile.crop:
        out = _cover(rgb, profile.width, int(profile.height or profile.width))
    else:
        out = _bound_width(rgb, profile.width)
    buf = BytesIO()
    out.save(buf, format="JPEG", quality=int(quality), progressive=True, optimize=True)
    return RenderedVariant(
        name=profile.name,
        data=buf.getvalue(),
        content_type=JPEG_CONTENT_TYPE,
        extension="jpg",
        width=out.width,
        height=out.height,
    )


def render_webp_variant(img: Image.Image, profile: SizeProfile = WEBP_PROFILE, *, quality: int = 90) -> RenderedVariant:
    source = img.convert("RGBA") if _has_alpha(img) else img.convert("RGB")
    out = _bound_width(source, profile.width)
    buf = BytesIO()
    out.save(buf, format="WEBP", quality=int(quality), method=6)
    return RenderedVariant(
        name=profile.name,
        data=buf.getvalue(),
        content_type=WEBP_CONTENT_TYPE,
        extension="webp",
        width=out.width,
        height=out.height,
    )
