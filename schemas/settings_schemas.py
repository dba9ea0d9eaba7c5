# schemas/settings_schemas.py
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from config import (
    WATERMARK_DEFAULT_OPACITY,
    WATERMARK_DEFAULT_PADDING,
    WATERMARK_DEFAULT_POSITION,
    WATERMARK_DEFAULT_SIZE,
)

WatermarkPosition = Literal["topLeft", "topRight", "bottomLeft", "bottomRight", "center"]


class _CamelModel(BaseModel):
    # Frozen: a settings object is built per request and never mutated.
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        extra="ignore",
    )

    def to_dict(self) -> Dict[str, Any]:
        """Serialised form with camelCase keys and unset fields omitted."""
        return self.model_dump(by_alias=True, exclude_none=True)


class OutputSettings(_CamelModel):
    # Format is validated by the encoder so an unknown value fails the
    # pipeline instead of being rejected before it starts.
    format: Optional[str] = None
    quality: Optional[int] = None


class WatermarkOptions(_CamelModel):
    enabled: Optional[bool] = None
    position: Optional[str] = None
    opacity: Optional[float] = Field(default=None, ge=0, le=1)
    size: Optional[float] = Field(default=None, ge=5, le=50)
    padding: Optional[int] = Field(default=None, ge=0, le=100)
    use_user_watermark: Optional[bool] = None


class Settings(_CamelModel):
    """Auto-mode settings. Multiplicative factors are on their natural scale."""
    brightness: Optional[float] = None
    contrast: Optional[float] = None
    saturation: Optional[float] = None
    sharpness: Optional[float] = None
    temperature: Optional[float] = None
    shadows: Optional[float] = None
    highlights: Optional[float] = None
    white_balance: Optional[bool] = None
    noise_reduction: Optional[float] = None
    perspective: Optional[bool] = None
    crop_detection: Optional[bool] = None
    output: Optional[OutputSettings] = None
    watermark: Optional[WatermarkOptions] = None


# --- Manual-mode convention: sliders on a -100..100 scale ---

class ColorAdjustments(_CamelModel):
    brightness: Optional[float] = Field(default=None, ge=-100, le=100)
    contrast: Optional[float] = Field(default=None, ge=-100, le=100)
    saturation: Optional[float] = Field(default=None, ge=-100, le=100)
    temperature: Optional[float] = Field(default=None, ge=-100, le=100)


class SharpnessAdjustment(_CamelModel):
    amount: Optional[float] = Field(default=None, ge=0, le=100)


class TonalAdjustments(_CamelModel):
    shadows: Optional[float] = Field(default=None, ge=-100, le=100)
    highlights: Optional[float] = Field(default=None, ge=-100, le=100)


class PerspectiveAdjustment(_CamelModel):
    vertical: Optional[float] = Field(default=None, ge=-100, le=100)
    # Accepted for compatibility; only the vertical stretch is applied.
    horizontal: Optional[float] = Field(default=None, ge=-100, le=100)


class CropRect(_CamelModel):
    left: Optional[float] = None
    top: Optional[float] = None
    width: Optional[float] = None
    height: Optional[float] = None

    def is_complete(self) -> bool:
        return bool(self.width) and bool(self.height) and self.left is not None and self.top is not None


class ManualAdjustments(_CamelModel):
    color: Optional[ColorAdjustments] = None
    sharpness: Optional[SharpnessAdjustment] = None
    tonal_adjustments: Optional[TonalAdjustments] = None
    perspective: Optional[PerspectiveAdjustment] = None
    crop_enabled: Optional[bool] = None
    crop: Optional[CropRect] = None
    watermark_enabled: Optional[bool] = None
    watermark_position: Optional[str] = None
    watermark_opacity: Optional[float] = Field(default=None, ge=0, le=1)
    watermark_size: Optional[float] = Field(default=None, ge=5, le=50)
    watermark_padding: Optional[int] = Field(default=None, ge=0, le=100)
    use_user_watermark: Optional[bool] = None
    output: Optional[OutputSettings] = None

    def watermark_options(self) -> WatermarkOptions:
        return WatermarkOptions(
            enabled=self.watermark_enabled,
            position=self.watermark_position,
            opacity=self.watermark_opacity,
            size=self.watermark_size,
            padding=self.watermark_padding,
            use_user_watermark=self.use_user_watermark,
        )


class WatermarkSettings(_CamelModel):
    """Stored per-user watermark settings, fully populated."""
    position: WatermarkPosition = WATERMARK_DEFAULT_POSITION
    opacity: float = Field(default=WATERMARK_DEFAULT_OPACITY, ge=0, le=1)
    size: float = Field(default=WATERMARK_DEFAULT_SIZE, ge=5, le=50)
    padding: int = Field(default=WATERMARK_DEFAULT_PADDING, ge=0, le=100)
    auto_apply: bool = False


class WatermarkSettingsUpdate(_CamelModel):
    position: Optional[WatermarkPosition] = None
    opacity: Optional[float] = Field(default=None, ge=0, le=1)
    size: Optional[float] = Field(default=None, ge=5, le=50)
    padding: Optional[int] = Field(default=None, ge=0, le=100)
    auto_apply: Optional[bool] = None


def _merge_models(base, overlay):
    """Field-wise merge: fields explicitly set to a non-None value on overlay win."""
    if overlay is None:
        return base
    if base is None:
        return overlay
    updates = {name: value for name, value in overlay if value is not None}
    return base.model_copy(update=updates)


def merge_settings(
    defaults: Optional[Settings],
    preset: Optional[Settings] = None,
    overrides: Optional[Settings] = None,
) -> Settings:
    """
    Ordered merge ``defaults <- preset <- overrides``.

    A later layer wins only for fields it actually sets; the nested ``output``
    and ``watermark`` objects are merged field by field rather than replaced.
    """
    merged = defaults or Settings()
    for layer in (preset, overrides):
        if layer is None:
            continue
        updates = {}
        for name, value in layer:
            if value is None:
                continue
            if name in ("output", "watermark"):
                value = _merge_models(getattr(merged, name), value)
            updates[name] = value
        merged = merged.model_copy(update=updates)
    return merged


def merge_watermark_options(
    stored: Optional[WatermarkSettings],
    requested: Optional[WatermarkOptions],
    prefer_stored: bool = False,
) -> WatermarkSettings:
    """
    Effective watermark settings for one run.

    By default per-request values override the stored user settings. With
    ``prefer_stored`` (the request asked for the user's own watermark setup)
    the stored settings are used as they are.
    """
    base = stored or WatermarkSettings()
    if requested is None or prefer_stored:
        return base
    updates = {
        name: getattr(requested, name)
        for name in ("position", "opacity", "size", "padding")
        if getattr(requested, name) is not None
    }
    # model_copy skips validation, so an unknown position reaches the
    # compositor, which falls back to bottomRight.
    return base.model_copy(update=updates)
