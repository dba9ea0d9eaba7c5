# schemas/processing_schemas.py
import uuid
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, Field

from config import MAX_BATCH_SIZE
from schemas.settings_schemas import Settings

# Auto mode request body: an optional preset plus per-request overrides
class AutoProcessRequest(Settings):
    preset: Optional[str] = None

    def overrides(self) -> Settings:
        return Settings(**{name: value for name, value in self if name != "preset"})

class BatchProcessRequest(BaseModel):
    image_ids: List[uuid.UUID] = Field(min_length=1, max_length=MAX_BATCH_SIZE, alias="imageIds")
    mode: Literal["auto", "manual"] = "auto"
    # Validated against AutoProcessRequest or ManualAdjustments depending on mode
    options: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        populate_by_name = True

class ProcessedImageResponse(BaseModel):
    id: uuid.UUID
    original_image_id: uuid.UUID
    name: str
    url: Optional[str] = None
    width: Optional[int] = None
    height: Optional[int] = None
    size: int
    processing_type: str
    processing_settings: Dict[str, Any]
    created_at: datetime
    notices: List[str] = []

class BatchItemSuccess(BaseModel):
    id: uuid.UUID
    original_id: uuid.UUID
    name: str
    url: Optional[str] = None

class BatchItemFailure(BaseModel):
    id: uuid.UUID
    name: Optional[str] = None
    error: str
    error_type: Optional[str] = None

class BatchProcessResponse(BaseModel):
    message: str
    success: List[BatchItemSuccess]
    failed: List[BatchItemFailure]

class SceneDetectionResponse(BaseModel):
    image_id: uuid.UUID
    scene_type: str
    suggested_preset: str
