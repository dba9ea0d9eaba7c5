# db/crud.py

import uuid
from datetime import datetime
from typing import Optional, List

from sqlalchemy import or_
from sqlalchemy.orm import Session

from models import models as db_models
from schemas import image_schemas, user_schemas

from auth_utils import hash_password


def _as_uuid(value) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        return None

# --- User CRUD ---
def get_user_by_email(db: Session, email: str) -> Optional[db_models.User]:
    return db.query(db_models.User).filter(db_models.User.email == email).first()

def get_user_by_id(db: Session, user_id: uuid.UUID) -> Optional[db_models.User]:
    return db.query(db_models.User).filter(db_models.User.id == user_id).first()

def create_user(db: Session, user: user_schemas.UserCreate) -> db_models.User:
    db_user = db_models.User(email=user.email, hashed_password=hash_password(user.password))
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    return db_user

# --- Image CRUD ---
def create_image(db: Session, image: image_schemas.ImageCreate, user_id: uuid.UUID) -> db_models.Image:
    """Creates a new image record (original upload or processed output)."""
    db_image = db_models.Image(user_id=user_id, **image.model_dump())
    db.add(db_image)
    db.commit()
    db.refresh(db_image)
    return db_image

def get_user_image(db: Session, image_id: uuid.UUID, user_id: uuid.UUID) -> Optional[db_models.Image]:
    return db.query(db_models.Image).filter(
        db_models.Image.id == image_id,
        db_models.Image.user_id == user_id,
        db_models.Image.is_deleted.is_(False),
    ).first()

def get_user_images_by_ids(db: Session, image_ids: List[uuid.UUID], user_id: uuid.UUID) -> List[db_models.Image]:
    return db.query(db_models.Image).filter(
        db_models.Image.id.in_(image_ids),
        db_models.Image.user_id == user_id,
        db_models.Image.is_deleted.is_(False),
    ).all()

# --- Preset CRUD ---
def get_presets_by_user(db: Session, user_id: uuid.UUID) -> List[db_models.Preset]:
    return db.query(db_models.Preset).filter(db_models.Preset.user_id == user_id).order_by(db_models.Preset.updated_at.desc()).all()

def get_preset_by_name_or_id(db: Session, user_id: uuid.UUID, name_or_id: str) -> Optional[db_models.Preset]:
    """Matches ``id == name_or_id OR name == name_or_id`` within the user's presets."""
    conditions = [db_models.Preset.name == name_or_id]
    preset_id = _as_uuid(name_or_id)
    if preset_id is not None:
        conditions.append(db_models.Preset.id == preset_id)
    return db.query(db_models.Preset).filter(
        db_models.Preset.user_id == user_id,
        or_(*conditions),
    ).first()

def increment_preset_usage(db: Session, preset_id: uuid.UUID) -> None:
    db.query(db_models.Preset).filter(db_models.Preset.id == preset_id).update(
        {db_models.Preset.usage_count: db_models.Preset.usage_count + 1},
        synchronize_session=False,
    )
    db.commit()

def upsert_preset(db: Session, user_id: uuid.UUID, name: str, settings_json: str, description: Optional[str] = None) -> db_models.Preset:
    """Creates the preset, or replaces the settings of the user's preset with the same name."""
    db_preset = db.query(db_models.Preset).filter(
        db_models.Preset.user_id == user_id,
        db_models.Preset.name == name,
    ).first()
    if db_preset:
        db_preset.settings_json = settings_json
        if description is not None:
            db_preset.description = description
        db_preset.updated_at = datetime.utcnow()
    else:
        db_preset = db_models.Preset(
            user_id=user_id,
            name=name,
            description=description,
            settings_json=settings_json,
            is_default=False,
            is_public=False,
        )
        db.add(db_preset)
    db.commit()
    db.refresh(db_preset)
    return db_preset

# --- Watermark CRUD ---
def get_watermark_for_user(db: Session, user_id: uuid.UUID) -> Optional[db_models.Watermark]:
    return db.query(db_models.Watermark).filter(db_models.Watermark.user_id == user_id).first()

def create_watermark(db: Session, user_id: uuid.UUID, **fields) -> db_models.Watermark:
    db_watermark = db_models.Watermark(user_id=user_id, **fields)
    db.add(db_watermark)
    db.commit()
    db.refresh(db_watermark)
    return db_watermark

def update_watermark(db: Session, db_watermark: db_models.Watermark, **fields) -> db_models.Watermark:
    for key, value in fields.items():
        setattr(db_watermark, key, value)
    db_watermark.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(db_watermark)
    return db_watermark

def delete_watermark(db: Session, db_watermark: db_models.Watermark) -> None:
    db.delete(db_watermark)
    db.commit()
