# services/watermark.py
"""
Watermark compositing and the per-user watermark lifecycle.

Compositing is best effort: whatever goes wrong while loading, resizing or
blending the watermark, the caller gets the unwatermarked image back and a
notice is emitted.
"""
import io
import logging
import uuid
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

import numpy as np
from PIL import Image, UnidentifiedImageError
from sqlalchemy.orm import Session

from config import WATERMARK_DEFAULT_PADDING
from db import crud
from models import models as db_models
from schemas.settings_schemas import WatermarkOptions, WatermarkSettings, WatermarkSettingsUpdate, merge_watermark_options
from services.exceptions import InvalidInputError, UnsupportedImageError
from services.geometry import round_half_up
from services.notices import Notice, NoticeSink, log_notice
from services.storage_service import StorageService

logger = logging.getLogger(__name__)

ANCHORS = {
    "topLeft": ("north", "west"),
    "topRight": ("north", "east"),
    "bottomLeft": ("south", "west"),
    "bottomRight": ("south", "east"),
    "center": ("center",),
}


@dataclass(frozen=True)
class WatermarkAsset:
    data: bytes
    settings: WatermarkSettings


WatermarkLoader = Callable[[], Optional[WatermarkAsset]]


def position_to_anchor(position: Optional[str]) -> Tuple[str, ...]:
    """Unknown or missing positions fall back to bottomRight."""
    return ANCHORS.get(position, ANCHORS["bottomRight"])


def anchor_offset(anchor: Tuple[str, ...], base_size: Tuple[int, int], mark_size: Tuple[int, int], padding: int) -> Tuple[int, int]:
    """Top-left corner of the watermark; padding only moves it along the anchor's axes."""
    base_w, base_h = base_size
    mark_w, mark_h = mark_size
    x = (base_w - mark_w) // 2
    y = (base_h - mark_h) // 2
    if "west" in anchor:
        x = padding
    elif "east" in anchor:
        x = base_w - mark_w - padding
    if "north" in anchor:
        y = padding
    elif "south" in anchor:
        y = base_h - mark_h - padding
    return x, y


def prepare_watermark(mark: Image.Image, base_width: int, size_percent: float, opacity: float) -> Image.Image:
    """Scales the watermark to size_percent of the base width and multiplies its alpha by opacity."""
    mark = mark.convert("RGBA")
    target_w = max(1, round_half_up(base_width * size_percent / 100))
    target_h = max(1, round_half_up(mark.height * target_w / mark.width))
    mark = mark.resize((target_w, target_h), Image.LANCZOS)

    pixels = np.array(mark, dtype=np.float32)
    pixels[..., 3] = np.clip(pixels[..., 3] * opacity + 0.5, 0, 255)
    return Image.fromarray(pixels.astype(np.uint8), mode="RGBA")


def composite_watermark(img: Image.Image, mark: Image.Image, settings: WatermarkSettings) -> Image.Image:
    """Blends mark over img. The result keeps img's alpha if it had one."""
    has_alpha = img.mode == "RGBA"
    base = img.convert("RGBA")

    mark = prepare_watermark(mark, base.width, settings.size, settings.opacity)
    anchor = position_to_anchor(settings.position)
    padding = WATERMARK_DEFAULT_PADDING if settings.padding is None else settings.padding
    if anchor == ANCHORS["center"]:
        padding = 0
    x, y = anchor_offset(anchor, base.size, mark.size, padding)

    layer = Image.new("RGBA", base.size, (0, 0, 0, 0))
    layer.paste(mark, (x, y))
    out = Image.alpha_composite(base, layer)
    logger.debug(f"Watermark {mark.size} composited at ({x}, {y}) anchor={anchor}")
    return out if has_alpha else out.convert("RGB")


def _degraded(reason: Exception, notify: NoticeSink) -> None:
    logger.error(f"Watermark skipped: {reason}", exc_info=True)
    notify(Notice(
        kind="watermark_skipped",
        message=f"Watermark could not be applied: {reason}",
        detail={"error_type": type(reason).__name__},
    ))


def apply_watermark_to_image(
    img: Image.Image,
    loader: Optional[WatermarkLoader],
    requested: Optional[WatermarkOptions] = None,
    notify: NoticeSink = log_notice,
) -> Image.Image:
    """Pipeline variant of apply_watermark working on a decoded image."""
    if loader is None:
        return img
    try:
        asset = loader()
        if asset is None:
            logger.info("Watermark requested but none is configured; skipping")
            return img
        settings = merge_watermark_options(
            asset.settings, requested,
            prefer_stored=bool(requested and requested.use_user_watermark),
        )
        with Image.open(io.BytesIO(asset.data)) as mark:
            mark.load()
            return composite_watermark(img, mark, settings)
    except Exception as e:
        _degraded(e, notify)
        return img


def apply_watermark(
    image_bytes: bytes,
    watermark_bytes: Optional[bytes],
    settings: Optional[WatermarkSettings] = None,
    notify: NoticeSink = log_notice,
) -> bytes:
    """
    Composites watermark_bytes over image_bytes and re-encodes in the source format.
    Returns image_bytes unchanged when there is no watermark or anything fails.
    """
    if not watermark_bytes:
        return image_bytes
    settings = settings or WatermarkSettings()
    try:
        with Image.open(io.BytesIO(image_bytes)) as img, Image.open(io.BytesIO(watermark_bytes)) as mark:
            source_format = img.format or "PNG"
            img.load()
            mark.load()
            base = img if img.mode in ("RGB", "RGBA") else img.convert("RGBA" if "transparency" in img.info else "RGB")
            out = composite_watermark(base, mark, settings)
        if source_format == "JPEG":
            out = out.convert("RGB")
        buffer = io.BytesIO()
        out.save(buffer, format=source_format)
        return buffer.getvalue()
    except Exception as e:
        _degraded(e, notify)
        return image_bytes


def settings_from_record(record: db_models.Watermark) -> WatermarkSettings:
    return WatermarkSettings(
        position=record.position,
        opacity=record.opacity,
        size=record.size_percent,
        padding=record.padding,
        auto_apply=record.auto_apply,
    )


def _settings_columns(settings: WatermarkSettings) -> dict:
    return {
        "position": settings.position,
        "opacity": settings.opacity,
        "size_percent": settings.size,
        "padding": settings.padding,
        "auto_apply": settings.auto_apply,
    }


def _apply_update(settings: WatermarkSettings, update: Optional[WatermarkSettingsUpdate]) -> WatermarkSettings:
    if update is None:
        return settings
    values = {name: value for name, value in update if value is not None}
    return settings.model_copy(update=values)


class WatermarkService:
    """One watermark per user: the image lives in the blob store, its settings in the database."""

    def __init__(self, db: Session, storage: StorageService, notify: NoticeSink = log_notice):
        self.db = db
        self.storage = storage
        self.notify = notify

    def get_for_user(self, user_id: uuid.UUID) -> Optional[db_models.Watermark]:
        return crud.get_watermark_for_user(self.db, user_id=user_id)

    def save(self, user_id: uuid.UUID, data: bytes, filename: str, update: Optional[WatermarkSettingsUpdate] = None) -> db_models.Watermark:
        """Stores a new watermark image, replacing (and deleting) any previous one."""
        try:
            with Image.open(io.BytesIO(data)) as mark:
                mark.load()
                width, height = mark.size
                if mark.format != "PNG":
                    buffer = io.BytesIO()
                    mark.convert("RGBA").save(buffer, format="PNG")
                    data = buffer.getvalue()
        except (UnidentifiedImageError, OSError) as e:
            raise UnsupportedImageError(f"Watermark is not a readable image: {e}") from e

        existing = self.get_for_user(user_id)
        if existing is not None:
            self._delete_blob(existing.storage_key)

        key = f"watermarks/{user_id}/{uuid.uuid4()}.png"
        self.storage.put(data, key, "image/png")
        logger.info(f"Stored watermark for user {user_id} at {key}")

        base = settings_from_record(existing) if existing is not None else WatermarkSettings()
        settings = _apply_update(base, update)
        fields = {
            "storage_key": key,
            "original_filename": filename,
            "mime_type": "image/png",
            "size": len(data),
            "width": width,
            "height": height,
            **_settings_columns(settings),
        }
        if existing is not None:
            return crud.update_watermark(self.db, existing, **fields)
        return crud.create_watermark(self.db, user_id=user_id, **fields)

    def update_settings(self, user_id: uuid.UUID, update: WatermarkSettingsUpdate) -> Optional[db_models.Watermark]:
        record = self.get_for_user(user_id)
        if record is None:
            return None
        try:
            settings = _apply_update(settings_from_record(record), update)
        except ValueError as e:
            raise InvalidInputError(f"Invalid watermark settings: {e}") from e
        return crud.update_watermark(self.db, record, **_settings_columns(settings))

    def remove(self, user_id: uuid.UUID) -> bool:
        record = self.get_for_user(user_id)
        if record is None:
            return False
        self._delete_blob(record.storage_key)
        crud.delete_watermark(self.db, record)
        logger.info(f"Removed watermark for user {user_id}")
        return True

    def load_asset(self, user_id: uuid.UUID) -> Optional[WatermarkAsset]:
        record = self.get_for_user(user_id)
        if record is None:
            return None
        return WatermarkAsset(data=self.storage.get(record.storage_key), settings=settings_from_record(record))

    def loader_for(self, user_id: uuid.UUID) -> WatermarkLoader:
        """Loads the asset once, now, and returns a loader that hands out that result to every caller."""
        try:
            asset = self.load_asset(user_id)
        except Exception as e:
            error = e

            def failing_loader():
                raise error
            return failing_loader
        return lambda: asset

    def _delete_blob(self, key: str) -> None:
        try:
            self.storage.delete(key)
        except Exception as e:
            self.notify(Notice(
                kind="watermark_blob_not_deleted",
                message=f"Could not delete watermark blob {key}: {e}",
                detail={"storage_key": key},
            ))
