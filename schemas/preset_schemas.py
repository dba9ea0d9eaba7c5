# schemas/preset_schemas.py
import uuid
from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel, constr

from schemas.settings_schemas import Settings

MAX_STRING_LENGTH = 255

class PresetCreate(BaseModel):
    name: constr(min_length=1, max_length=MAX_STRING_LENGTH)
    description: Optional[constr(max_length=MAX_STRING_LENGTH * 2)] = None
    settings: Settings

# Built-in presets use their key as id, user presets their UUID
class PresetSummary(BaseModel):
    id: str
    name: str
    description: str
    is_default: bool
    settings: Dict[str, Any]
    usage_count: int

class PresetSchema(BaseModel):
    id: uuid.UUID
    user_id: uuid.UUID
    name: str
    description: Optional[str] = None
    is_default: bool
    usage_count: int
    created_at: datetime

    class Config:
        from_attributes = True
