import io
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np
import rawpy
from PIL import Image, ImageOps, UnidentifiedImageError
from pillow_heif import register_heif_opener

from config import ALLOWED_INPUT_FORMATS, DEFAULT_OUTPUT_FORMAT, DEFAULT_QUALITY
from schemas.settings_schemas import CropRect, ManualAdjustments, Settings, WatermarkOptions
from services.exceptions import ImageProcessingError, InvalidCropError, InvalidInputError, UnsupportedImageError
from services.geometry import round_half_up
from services.notices import CollectingNoticeSink, Notice, NoticeSink, log_notice
from services.output_encoder import encode
from services.watermark import WatermarkLoader, apply_watermark_to_image

register_heif_opener()

logger = logging.getLogger(__name__)

# Pillow format name -> allow-list name
PIL_FORMATS = {
    "JPEG": "jpeg",
    "PNG": "png",
    "WEBP": "webp",
    "TIFF": "tiff",
    "HEIF": "heif",
}

MIME_TYPES = {
    "jpeg": "image/jpeg",
    "png": "image/png",
    "webp": "image/webp",
    "tiff": "image/tiff",
    "heif": "image/heif",
    "raw": "image/x-raw",
}

# Rec. 601 luma weights, used for saturation
LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114], dtype=np.float32)

WHITE_BALANCE_MAX_GAIN = 1.5
MANUAL_SHARPEN_MAX_SIGMA = 5.0
MANUAL_HIGHLIGHT_OFFSET = 0.15


# --- Probing & decoding ---

@dataclass(frozen=True)
class ImageInfo:
    format: str
    width: int
    height: int
    mime_type: str
    has_alpha: bool = False


def _has_alpha(img: Image.Image) -> bool:
    return img.mode in ("RGBA", "LA", "PA") or (img.mode == "P" and "transparency" in img.info)


def _probe_raw(image_bytes: bytes) -> ImageInfo:
    with rawpy.imread(io.BytesIO(image_bytes)) as raw:
        width, height = raw.sizes.width, raw.sizes.height
        if raw.sizes.flip in (5, 6):
            width, height = height, width
    return ImageInfo(format="raw", width=width, height=height, mime_type=MIME_TYPES["raw"])


def probe_image(image_bytes: bytes, allowed_formats: Sequence[str] = ALLOWED_INPUT_FORMATS) -> ImageInfo:
    """
    Reads format and dimensions without decoding pixels.
    Raises UnsupportedImageError for corrupt data or a format outside allowed_formats.
    """
    if not image_bytes:
        raise UnsupportedImageError("Image data is empty.")

    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            fmt = PIL_FORMATS.get(img.format)
            if fmt is None:
                raise UnsupportedImageError(f"Unsupported image format: {img.format}")
            width, height = img.size
            # EXIF orientations 5-8 rotate by 90 degrees
            if img.getexif().get(0x0112) in (5, 6, 7, 8):
                width, height = height, width
            info = ImageInfo(format=fmt, width=width, height=height, mime_type=MIME_TYPES[fmt], has_alpha=_has_alpha(img))
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError):
        try:
            info = _probe_raw(image_bytes)
        except Exception as e:
            raise UnsupportedImageError(f"Could not read image metadata: {e}") from e

    if info.format not in allowed_formats:
        raise UnsupportedImageError(f"Input format '{info.format}' is not allowed.")
    return info


def decode_image(image_bytes: bytes, info: Optional[ImageInfo] = None) -> Image.Image:
    """Decodes to an upright RGB or RGBA Pillow image."""
    info = info or probe_image(image_bytes)
    try:
        if info.format == "raw":
            with rawpy.imread(io.BytesIO(image_bytes)) as raw:
                rgb = raw.postprocess(use_camera_wb=True, output_bps=8)
            return Image.fromarray(rgb, mode="RGB")

        with Image.open(io.BytesIO(image_bytes)) as img:
            img = ImageOps.exif_transpose(img)
            return img.convert("RGBA" if _has_alpha(img) else "RGB")
    except Exception as e:
        raise UnsupportedImageError(f"Could not decode image: {e}") from e


# --- Pixel buffer & stages ---

@dataclass
class PixelBuffer:
    """Working copy of an image: float32 RGB in 0..255 plus an optional uint8 alpha plane."""
    rgb: np.ndarray
    alpha: Optional[np.ndarray] = None

    @property
    def width(self) -> int:
        return self.rgb.shape[1]

    @property
    def height(self) -> int:
        return self.rgb.shape[0]

    @classmethod
    def from_image(cls, img: Image.Image) -> "PixelBuffer":
        if img.mode == "RGBA":
            arr = np.array(img)
            return cls(rgb=arr[..., :3].astype(np.float32), alpha=arr[..., 3].copy())
        return cls(rgb=np.array(img.convert("RGB")).astype(np.float32))

    def to_image(self) -> Image.Image:
        rgb = np.clip(np.rint(self.rgb), 0, 255).astype(np.uint8)
        if self.alpha is None:
            return Image.fromarray(rgb, mode="RGB")
        return Image.fromarray(np.dstack([rgb, self.alpha]), mode="RGBA")

    def with_rgb(self, rgb: np.ndarray) -> "PixelBuffer":
        return PixelBuffer(rgb=np.clip(rgb, 0, 255).astype(np.float32), alpha=self.alpha)


def apply_modulate(buf: PixelBuffer, brightness: float = 1.0, saturation: float = 1.0) -> PixelBuffer:
    """Brightness multiplies every channel; saturation scales chroma around per-pixel luma."""
    rgb = buf.rgb * brightness
    if saturation != 1.0:
        gray = (rgb @ LUMA_WEIGHTS)[..., np.newaxis]
        rgb = gray + (rgb - gray) * saturation
    return buf.with_rgb(rgb)


def apply_linear(buf: PixelBuffer, factor: Union[float, Tuple[float, float, float]], offset: float = 0.0) -> PixelBuffer:
    """out = in * factor + offset; factor may be per channel (r, g, b)."""
    return buf.with_rgb(buf.rgb * np.asarray(factor, dtype=np.float32) + offset)


def temperature_factors(temperature: float) -> Tuple[float, float, float]:
    t = temperature / 100
    if t > 0:
        return 1 + 0.5 * t, 1.0, 1 - 0.3 * t
    return 1 + 0.3 * t, 1.0, 1 - 0.5 * t


def white_balance_factors(buf: PixelBuffer) -> Optional[Tuple[float, float, float]]:
    means = buf.rgb.reshape(-1, 3).mean(axis=0)
    max_mean = float(means.max())
    if max_mean <= 0:
        return None
    return tuple(
        WHITE_BALANCE_MAX_GAIN if mean <= 0 else min(max_mean / float(mean), WHITE_BALANCE_MAX_GAIN)
        for mean in means
    )


def apply_white_balance(buf: PixelBuffer) -> PixelBuffer:
    factors = white_balance_factors(buf)
    if factors is None:
        return buf
    return apply_linear(buf, factors)


def apply_sharpen(buf: PixelBuffer, sigma: float) -> PixelBuffer:
    """Unsharp mask with a Gaussian of the given sigma."""
    if not sigma or sigma <= 0:
        return buf
    blurred = cv2.GaussianBlur(buf.rgb, (0, 0), sigmaX=float(sigma))
    return buf.with_rgb(buf.rgb + (buf.rgb - blurred))


def median_window(noise_reduction: Optional[float]) -> int:
    """Median window for a noise reduction strength; 0 means skip."""
    if not noise_reduction or noise_reduction <= 0:
        return 0
    window = round_half_up(noise_reduction * 5)
    if window <= 1:
        return 0
    # cv2.medianBlur only takes odd apertures
    return window if window % 2 else window + 1


def apply_median(buf: PixelBuffer, window: int) -> PixelBuffer:
    if window <= 1:
        return buf
    rgb8 = np.ascontiguousarray(np.clip(np.rint(buf.rgb), 0, 255).astype(np.uint8))
    return buf.with_rgb(cv2.medianBlur(rgb8, window).astype(np.float32))


def apply_gamma(buf: PixelBuffer, gamma: float) -> PixelBuffer:
    """x -> 255 * (x / 255) ** (1 / gamma)"""
    if gamma <= 0:
        raise ImageProcessingError(f"Gamma must be positive, got {gamma}")
    normalized = np.clip(buf.rgb, 0, 255) / 255.0
    return buf.with_rgb(255.0 * np.power(normalized, 1.0 / gamma))


def apply_vertical_stretch(buf: PixelBuffer, scale: float) -> PixelBuffer:
    """Affine stretch with horizontal scale 1; the output height scales with it."""
    new_height = round_half_up(buf.height * scale)
    if new_height < 1:
        raise InvalidInputError(f"Vertical perspective scale {scale} collapses the image.")
    matrix = np.float32([[1, 0, 0], [0, scale, 0]])
    size = (buf.width, new_height)
    rgb = cv2.warpAffine(buf.rgb, matrix, size, flags=cv2.INTER_LINEAR, borderMode=cv2.BORDER_REPLICATE)
    alpha = None
    if buf.alpha is not None:
        alpha = cv2.warpAffine(buf.alpha, matrix, size, flags=cv2.INTER_LINEAR, borderMode=cv2.BORDER_REPLICATE)
    return PixelBuffer(rgb=rgb, alpha=alpha)


def apply_crop(buf: PixelBuffer, crop: CropRect) -> PixelBuffer:
    """
    Extracts the crop rectangle, rounding each value half-up.
    Raises InvalidCropError if the rectangle is empty or leaves the image.
    """
    left = round_half_up(crop.left)
    top = round_half_up(crop.top)
    width = round_half_up(crop.width)
    height = round_half_up(crop.height)

    if left < 0 or top < 0 or width <= 0 or height <= 0 or left + width > buf.width or top + height > buf.height:
        raise InvalidCropError(
            f"Invalid crop rectangle [{left},{top},{width},{height}] for image size {buf.width}x{buf.height}."
        )

    rgb = buf.rgb[top:top + height, left:left + width].copy()
    alpha = None if buf.alpha is None else buf.alpha[top:top + height, left:left + width].copy()
    return PixelBuffer(rgb=rgb, alpha=alpha)


# --- Parameter conversion ---

@dataclass
class StagePlan:
    """Concrete per-stage parameters; identity values mean the stage is skipped."""
    brightness: float = 1.0
    saturation: float = 1.0
    contrast: float = 1.0
    temperature: Optional[Tuple[float, float, float]] = None
    white_balance: bool = False
    sharpen_sigma: float = 0.0
    median_window: int = 0
    shadow_gamma: Optional[float] = None
    highlights: Optional[Tuple[float, float]] = None  # (factor, offset)
    auto_perspective: bool = False
    vertical_scale: Optional[float] = None
    crop: Optional[CropRect] = None
    watermark: Optional[WatermarkOptions] = None
    output_format: str = DEFAULT_OUTPUT_FORMAT
    quality: int = DEFAULT_QUALITY


def _manual_factor(value: Optional[float]) -> float:
    return 1.0 if value is None else 1 + value / 100


def plan_from_settings(settings: Settings) -> StagePlan:
    """Auto mode: factors are used as given."""
    plan = StagePlan(
        brightness=settings.brightness if settings.brightness is not None else 1.0,
        saturation=settings.saturation if settings.saturation is not None else 1.0,
        contrast=settings.contrast if settings.contrast is not None else 1.0,
        white_balance=bool(settings.white_balance),
        sharpen_sigma=settings.sharpness or 0.0,
        median_window=median_window(settings.noise_reduction),
        auto_perspective=bool(settings.perspective),
    )
    if settings.shadows is not None and settings.shadows > 0:
        plan.shadow_gamma = 1 + settings.shadows / 100
    if settings.highlights is not None and settings.highlights < 0:
        plan.highlights = (1 + settings.highlights / 100, 0.0)
    if settings.watermark is not None and settings.watermark.enabled:
        plan.watermark = settings.watermark
    if settings.output is not None:
        plan.output_format = settings.output.format or DEFAULT_OUTPUT_FORMAT
        plan.quality = settings.output.quality if settings.output.quality is not None else DEFAULT_QUALITY
    return plan


def plan_from_adjustments(adjustments: ManualAdjustments) -> StagePlan:
    """Manual mode: -100..100 sliders converted to factors, gammas and sigmas."""
    plan = StagePlan()
    color = adjustments.color
    if color is not None:
        plan.brightness = _manual_factor(color.brightness)
        plan.saturation = _manual_factor(color.saturation)
        plan.contrast = _manual_factor(color.contrast)
        if color.temperature:
            plan.temperature = temperature_factors(color.temperature)

    if adjustments.sharpness is not None and adjustments.sharpness.amount:
        plan.sharpen_sigma = adjustments.sharpness.amount / 100 * MANUAL_SHARPEN_MAX_SIGMA

    tonal = adjustments.tonal_adjustments
    if tonal is not None:
        if tonal.shadows:
            if tonal.shadows > 0:
                plan.shadow_gamma = 1 + tonal.shadows / 100
            else:
                plan.shadow_gamma = 1 / (1 + abs(tonal.shadows) / 100)
        if tonal.highlights:
            plan.highlights = (1 - tonal.highlights / 100, MANUAL_HIGHLIGHT_OFFSET)

    if adjustments.perspective is not None and adjustments.perspective.vertical:
        plan.vertical_scale = 1 + adjustments.perspective.vertical / 100

    if adjustments.crop_enabled and adjustments.crop is not None and adjustments.crop.is_complete():
        plan.crop = adjustments.crop

    if adjustments.watermark_enabled:
        plan.watermark = adjustments.watermark_options()

    if adjustments.output is not None:
        plan.output_format = adjustments.output.format or DEFAULT_OUTPUT_FORMAT
        plan.quality = adjustments.output.quality if adjustments.output.quality is not None else DEFAULT_QUALITY
    return plan


def run_stages(buf: PixelBuffer, plan: StagePlan) -> PixelBuffer:
    """Runs the pixel stages in their fixed order. Watermark and encoding happen afterwards."""
    if plan.brightness != 1.0 or plan.saturation != 1.0:
        buf = apply_modulate(buf, plan.brightness, plan.saturation)
    if plan.contrast != 1.0:
        buf = apply_linear(buf, plan.contrast)
    if plan.temperature is not None:
        buf = apply_linear(buf, plan.temperature)
    if plan.white_balance:
        buf = apply_white_balance(buf)
    if plan.sharpen_sigma > 0:
        buf = apply_sharpen(buf, plan.sharpen_sigma)
    if plan.median_window > 1:
        buf = apply_median(buf, plan.median_window)
    if plan.shadow_gamma is not None:
        buf = apply_gamma(buf, plan.shadow_gamma)
    if plan.highlights is not None:
        factor, offset = plan.highlights
        buf = apply_linear(buf, factor, offset)
    if plan.auto_perspective:
        # Automatic perspective correction is not implemented; the image passes through.
        logger.debug("Automatic perspective correction requested; passing image through unchanged")
    if plan.vertical_scale is not None and plan.vertical_scale != 1.0:
        buf = apply_vertical_stretch(buf, plan.vertical_scale)
    if plan.crop is not None:
        buf = apply_crop(buf, plan.crop)
    return buf


# --- Pipeline ---

@dataclass
class ProcessingResult:
    success: bool
    data: Optional[bytes] = None
    content_type: Optional[str] = None
    format: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    applied_settings: Optional[dict] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    notices: List[Notice] = field(default_factory=list)


class EnhancementPipeline:
    """
    Runs one image through probe, pixel stages, watermark and encoder.

    Never raises for bad input or a failing stage: the outcome is reported as a
    ProcessingResult, and a failed result never carries image bytes. Side effects
    that did not stop processing (a skipped watermark) come back as notices.
    """

    def __init__(self, notify: NoticeSink = log_notice, allowed_formats: Sequence[str] = ALLOWED_INPUT_FORMATS):
        self.notify = notify
        self.allowed_formats = allowed_formats

    def process(
        self,
        image_bytes: bytes,
        params: Union[Settings, ManualAdjustments],
        mode: str,
        watermark_loader: Optional[WatermarkLoader] = None,
    ) -> ProcessingResult:
        sink = CollectingNoticeSink(forward=self.notify)
        try:
            if mode == "auto":
                if not isinstance(params, Settings):
                    raise InvalidInputError("Auto mode expects Settings")
                plan = plan_from_settings(params)
            elif mode == "manual":
                if not isinstance(params, ManualAdjustments):
                    raise InvalidInputError("Manual mode expects ManualAdjustments")
                plan = plan_from_adjustments(params)
            else:
                raise InvalidInputError(f"Unknown processing mode: '{mode}'")

            info = probe_image(image_bytes, self.allowed_formats)
            logger.info(f"Processing {info.format} image {info.width}x{info.height} in {mode} mode")

            buf = run_stages(PixelBuffer.from_image(decode_image(image_bytes, info)), plan)
            img = buf.to_image()

            if plan.watermark is not None:
                img = apply_watermark_to_image(img, watermark_loader, plan.watermark, notify=sink)

            encoded = encode(img, plan.output_format, plan.quality)
        except ImageProcessingError as e:
            logger.warning(f"Processing failed ({e.error_type}): {e}")
            return ProcessingResult(success=False, error=str(e), error_type=e.error_type, notices=sink.notices)
        except Exception as e:
            logger.error(f"Unexpected error while processing image: {e}", exc_info=True)
            return ProcessingResult(
                success=False,
                error=f"Image processing failed: {e}",
                error_type=ImageProcessingError.error_type,
                notices=sink.notices,
            )

        return ProcessingResult(
            success=True,
            data=encoded.data,
            content_type=encoded.content_type,
            format=encoded.format,
            width=img.width,
            height=img.height,
            applied_settings=params.to_dict(),
            notices=sink.notices,
        )
