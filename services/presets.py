# services/presets.py
import json
import logging
import uuid
from typing import Dict, List, Optional, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import DEFAULT_OUTPUT_FORMAT, DEFAULT_QUALITY
from db import crud
from models import models as db_models
from schemas.settings_schemas import OutputSettings, Settings
from services.exceptions import DependencyFailureError
from services.notices import Notice, NoticeSink, log_notice

logger = logging.getLogger(__name__)

# Baseline for auto mode; presets and request options are layered on top.
AUTO_DEFAULTS = Settings(
    brightness=1.05,
    contrast=1.10,
    saturation=1.05,
    sharpness=1.2,
    white_balance=True,
    noise_reduction=0.5,
    perspective=True,
    crop_detection=True,
    output=OutputSettings(format=DEFAULT_OUTPUT_FORMAT, quality=DEFAULT_QUALITY),
)

BUILTIN_PRESETS: Dict[str, Settings] = {
    "natural": Settings(
        brightness=1.05, contrast=1.10, saturation=1.05, sharpness=1.2,
        white_balance=True, noise_reduction=0.5, perspective=True,
    ),
    "bright": Settings(
        brightness=1.15, contrast=1.15, saturation=1.1, sharpness=1.3,
        white_balance=True, noise_reduction=0.6, perspective=True,
    ),
    "professional": Settings(
        brightness=1.03, contrast=1.15, saturation=1.02, sharpness=1.4,
        white_balance=True, noise_reduction=0.7, perspective=True,
    ),
    "hdr": Settings(
        brightness=1.05, contrast=1.25, saturation=1.1, sharpness=1.3,
        white_balance=True, noise_reduction=0.5, perspective=True,
        highlights=-15, shadows=15,
    ),
    "interior": Settings(
        brightness=1.12, contrast=1.08, saturation=1.0, sharpness=1.2,
        white_balance=True, noise_reduction=0.8, perspective=True,
        shadows=20, highlights=-10,
    ),
    "exterior": Settings(
        brightness=1.05, contrast=1.18, saturation=1.15, sharpness=1.4,
        white_balance=True, noise_reduction=0.4, perspective=True,
        shadows=10, highlights=-5,
    ),
    "twilight": Settings(
        brightness=1.08, contrast=1.2, saturation=0.95, sharpness=1.1,
        white_balance=False, noise_reduction=0.9, perspective=True,
        shadows=25, highlights=-5,
    ),
}

BUILTIN_PRESET_NAMES = {
    "natural": "Natural Look",
    "bright": "Bright & Airy",
    "professional": "Professional",
    "hdr": "HDR Effect",
    "interior": "Interior Boost",
    "exterior": "Exterior Pro",
    "twilight": "Twilight/Evening",
}

BUILTIN_PRESET_DESCRIPTIONS = {
    "natural": "Balanced enhancements for natural appearance",
    "bright": "Increased brightness and contrast for a light, airy feel",
    "professional": "Sharp details with balanced colors and professional polish",
    "hdr": "High dynamic range look with detail in shadows and highlights",
    "interior": "Optimized for indoor spaces with balanced window exposure",
    "exterior": "Enhanced architecture with vibrant colors and clear details",
    "twilight": "Evening mood with warm tones and balanced lighting",
}

# Scene classifier output -> preset suggestion
SCENE_PRESET_SUGGESTIONS = {
    "interior": "interior",
    "exterior": "exterior",
    "twilight": "twilight",
    "default": "natural",
}


def format_preset_name(key: str) -> str:
    return BUILTIN_PRESET_NAMES.get(key, key[:1].upper() + key[1:])


def settings_from_json(raw: Optional[str]) -> Settings:
    if not raw:
        return Settings()
    return Settings.model_validate(json.loads(raw))


class PresetStore(Protocol):
    def find_by_user_and_name_or_id(self, user_id: uuid.UUID, key: str) -> Optional[db_models.Preset]: ...
    def increment_usage(self, preset_id: uuid.UUID) -> None: ...
    def save(self, user_id: uuid.UUID, name: str, settings: Settings, description: Optional[str] = None) -> db_models.Preset: ...


class SqlPresetStore:
    """PresetStore backed by the application database session."""

    def __init__(self, db: Session):
        self.db = db

    def find_by_user_and_name_or_id(self, user_id: uuid.UUID, key: str) -> Optional[db_models.Preset]:
        try:
            return crud.get_preset_by_name_or_id(self.db, user_id=user_id, name_or_id=key)
        except SQLAlchemyError as e:
            raise DependencyFailureError(f"Preset store unavailable: {e}") from e

    def increment_usage(self, preset_id: uuid.UUID) -> None:
        try:
            crud.increment_preset_usage(self.db, preset_id=preset_id)
        except SQLAlchemyError:
            # Leave the session usable for the rest of the run
            self.db.rollback()
            raise

    def save(self, user_id: uuid.UUID, name: str, settings: Settings, description: Optional[str] = None) -> db_models.Preset:
        try:
            return crud.upsert_preset(
                self.db,
                user_id=user_id,
                name=name,
                settings_json=json.dumps(settings.to_dict()),
                description=description,
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            raise DependencyFailureError(f"Could not save preset '{name}': {e}") from e


class PresetResolver:
    """
    Resolves a preset name or id into concrete Settings.

    Built-in presets are returned verbatim and are never counted. A user
    preset matched by id or name has its usage count incremented once per
    resolution; that increment is best effort and a failure is reported
    through the notice sink instead of aborting processing.
    """

    def __init__(self, store: PresetStore, notify: NoticeSink = log_notice):
        self.store = store
        self.notify = notify

    def resolve(self, name_or_id: Optional[str], user_id: Optional[uuid.UUID]) -> Optional[Settings]:
        if not name_or_id:
            return None

        builtin = BUILTIN_PRESETS.get(name_or_id)
        if builtin is not None:
            logger.debug(f"Resolved built-in preset '{name_or_id}'")
            return builtin

        if user_id is None:
            return None

        preset = self.store.find_by_user_and_name_or_id(user_id, name_or_id)
        if preset is None:
            logger.info(f"Preset '{name_or_id}' not found for user {user_id}; falling back to defaults")
            return None

        try:
            self.store.increment_usage(preset.id)
        except Exception as e:
            self.notify(Notice(
                kind="preset_usage_not_recorded",
                message=f"Could not record usage of preset {preset.id}: {e}",
                detail={"preset_id": str(preset.id), "user_id": str(user_id)},
            ))

        return settings_from_json(preset.settings_json)


def list_presets(db: Session, user_id: uuid.UUID) -> List[dict]:
    """Built-in presets followed by the user's own, most recently updated first."""
    presets = [
        {
            "id": key,
            "name": format_preset_name(key),
            "description": BUILTIN_PRESET_DESCRIPTIONS.get(key, "Custom preset"),
            "is_default": True,
            "settings": settings.to_dict(),
            "usage_count": 0,
        }
        for key, settings in BUILTIN_PRESETS.items()
    ]
    for preset in crud.get_presets_by_user(db, user_id=user_id):
        presets.append({
            "id": str(preset.id),
            "name": preset.name,
            "description": preset.description or "",
            "is_default": preset.is_default,
            "settings": settings_from_json(preset.settings_json).to_dict(),
            "usage_count": preset.usage_count,
        })
    return presets
