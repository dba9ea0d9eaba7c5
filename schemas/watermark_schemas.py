# schemas/watermark_schemas.py
import uuid
from datetime import datetime
from typing import Optional
from pydantic import BaseModel

from schemas.settings_schemas import WatermarkSettings

class WatermarkSchema(BaseModel):
    id: uuid.UUID
    original_filename: str
    mime_type: str
    size: int
    width: Optional[int] = None
    height: Optional[int] = None
    url: Optional[str] = None
    settings: WatermarkSettings
    updated_at: Optional[datetime] = None
