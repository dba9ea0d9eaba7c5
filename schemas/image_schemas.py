# schemas/image_schemas.py
import uuid
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, constr, conint

MAX_STRING_LENGTH = 255

# Pydantic schema for creating an Image (uploaded original or processed output)
class ImageCreate(BaseModel):
    original_name: constr(max_length=MAX_STRING_LENGTH)
    storage_key: constr(max_length=MAX_STRING_LENGTH * 2)
    url: Optional[str] = None
    size: conint(ge=0)
    width: Optional[conint(gt=0)] = None
    height: Optional[conint(gt=0)] = None
    mime_type: constr(max_length=MAX_STRING_LENGTH)
    parent_image_id: Optional[uuid.UUID] = None
    processing_type: Optional[str] = None
    processing_settings_json: Optional[str] = None
    is_processed: bool = False

# Pydantic schema for reading/returning an Image
class ImageSchema(BaseModel):
    id: uuid.UUID
    original_name: str
    url: Optional[str] = None
    size: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    mime_type: Optional[str] = None
    parent_image_id: Optional[uuid.UUID] = None
    processing_type: Optional[str] = None
    is_processed: bool
    created_at: datetime

    class Config:
        from_attributes = True
