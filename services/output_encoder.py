# services/output_encoder.py
import io
import logging
from dataclasses import dataclass

from PIL import Image

from config import DEFAULT_OUTPUT_FORMAT, DEFAULT_QUALITY
from services.exceptions import UnsupportedFormatError

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "tiff": "image/tiff",
}

FORMAT_ALIASES = {"jpg": "jpeg", "tif": "tiff"}

FILE_EXTENSIONS = {"jpeg": "jpg", "png": "png", "webp": "webp", "tiff": "tiff"}


@dataclass(frozen=True)
class EncodedImage:
    data: bytes
    content_type: str
    format: str

    @property
    def extension(self) -> str:
        return FILE_EXTENSIONS[self.format]


def normalize_format(output_format: str) -> str:
    """Canonical format name, e.g. 'JPG' -> 'jpeg'. Raises UnsupportedFormatError."""
    fmt = (output_format or "").strip().lower()
    fmt = FORMAT_ALIASES.get(fmt, fmt)
    if fmt not in CONTENT_TYPES:
        raise UnsupportedFormatError(f"Unsupported output format: '{output_format}'")
    return fmt


def png_compress_level(quality: int) -> int:
    """Maps quality 1-100 onto zlib effort 0-9."""
    level = int(quality / 100 * 9 + 0.5)
    return max(0, min(9, level))


def _flatten(img: Image.Image) -> Image.Image:
    if img.mode == "RGB":
        return img
    if img.mode in ("RGBA", "LA") or (img.mode == "P" and "transparency" in img.info):
        return img.convert("RGBA").convert("RGB")
    return img.convert("RGB")


def _keep_alpha(img: Image.Image) -> Image.Image:
    if img.mode in ("RGB", "RGBA"):
        return img
    if img.mode in ("LA", "PA") or "transparency" in img.info:
        return img.convert("RGBA")
    return img.convert("RGB")


def encode(img: Image.Image, output_format: str = DEFAULT_OUTPUT_FORMAT, quality: int = DEFAULT_QUALITY) -> EncodedImage:
    """
    Serialises a Pillow image in the requested format.

    jpeg drops alpha; png, webp and tiff keep it. For png the quality value
    only selects the zlib compression effort. An unknown format or a quality
    outside 1-100 raises UnsupportedFormatError, there is no fallback format.
    """
    fmt = normalize_format(output_format or DEFAULT_OUTPUT_FORMAT)
    if quality is None:
        quality = DEFAULT_QUALITY
    if isinstance(quality, bool) or not isinstance(quality, (int, float)) or not 1 <= quality <= 100:
        raise UnsupportedFormatError(f"Quality must be between 1 and 100, got {quality!r}")
    quality = int(quality)

    buffer = io.BytesIO()
    if fmt == "jpeg":
        _flatten(img).save(buffer, format="JPEG", quality=quality)
    elif fmt == "png":
        _keep_alpha(img).save(buffer, format="PNG", compress_level=png_compress_level(quality))
    elif fmt == "webp":
        _keep_alpha(img).save(buffer, format="WEBP", quality=quality)
    else:
        out = _keep_alpha(img)
        if out.mode == "RGBA":
            out.save(buffer, format="TIFF", compression="tiff_adobe_deflate")
        else:
            out.save(buffer, format="TIFF", compression="jpeg", quality=quality)

    data = buffer.getvalue()
    logger.debug(f"Encoded {img.size[0]}x{img.size[1]} image as {fmt} (quality={quality}, {len(data)} bytes)")
    return EncodedImage(data=data, content_type=CONTENT_TYPES[fmt], format=fmt)
