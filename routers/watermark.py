# routers/watermark.py
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile, status
from pydantic import ValidationError
from werkzeug.utils import secure_filename

from auth_utils import get_current_user
from config import MAX_WATERMARK_SIZE_MB
from dependencies import get_storage_service, get_watermark_service, http_error
from models import models as db_models
from rate_limiter import get_dynamic_rate_limit, limiter
from schemas.settings_schemas import WatermarkSettingsUpdate
from schemas.watermark_schemas import WatermarkSchema
from services.exceptions import ImageProcessingError
from services.storage_service import StorageService
from services.watermark import WatermarkService, settings_from_record

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/watermark",
    tags=["watermark"],
    responses={404: {"description": "No watermark for this user"}},
)

MAX_WATERMARK_BYTES = MAX_WATERMARK_SIZE_MB * 1024 * 1024


def _to_schema(record: db_models.Watermark, storage: StorageService) -> WatermarkSchema:
    try:
        url = storage.url_for(record.storage_key)
    except ImageProcessingError as e:
        logger.warning(f"Could not build watermark URL for {record.storage_key}: {e}")
        url = None
    return WatermarkSchema(
        id=record.id,
        original_filename=record.original_filename,
        mime_type=record.mime_type,
        size=record.size,
        width=record.width,
        height=record.height,
        url=url,
        settings=settings_from_record(record),
        updated_at=record.updated_at,
    )


def _not_found() -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No watermark found for this user")


@router.post("", response_model=WatermarkSchema, status_code=status.HTTP_201_CREATED)
@limiter.limit(get_dynamic_rate_limit)
async def upload_watermark(
    request: Request,
    file: UploadFile = File(...),
    position: Optional[str] = Form(None),
    opacity: Optional[float] = Form(None),
    size: Optional[float] = Form(None),
    padding: Optional[int] = Form(None),
    auto_apply: Optional[bool] = Form(None, alias="autoApply"),
    service: WatermarkService = Depends(get_watermark_service),
    storage: StorageService = Depends(get_storage_service),
    current_user: db_models.User = Depends(get_current_user),
):
    """Uploads the user's watermark. Non-PNG images are converted to PNG; a previous watermark is replaced."""
    contents = await file.read()
    if len(contents) > MAX_WATERMARK_BYTES:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"Watermark too large. Maximum size is {MAX_WATERMARK_SIZE_MB}MB.",
        )
    try:
        update = WatermarkSettingsUpdate(position=position, opacity=opacity, size=size, padding=padding, auto_apply=auto_apply)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.errors(include_url=False))

    filename = secure_filename(file.filename or "") or "watermark.png"
    try:
        record = service.save(current_user.id, contents, filename, update)
    except ImageProcessingError as e:
        raise http_error(e.error_type, str(e))
    return _to_schema(record, storage)


@router.get("", response_model=WatermarkSchema)
def get_watermark(
    service: WatermarkService = Depends(get_watermark_service),
    storage: StorageService = Depends(get_storage_service),
    current_user: db_models.User = Depends(get_current_user),
):
    record = service.get_for_user(current_user.id)
    if record is None:
        raise _not_found()
    return _to_schema(record, storage)


@router.put("/settings", response_model=WatermarkSchema)
def update_watermark_settings(
    update: WatermarkSettingsUpdate,
    service: WatermarkService = Depends(get_watermark_service),
    storage: StorageService = Depends(get_storage_service),
    current_user: db_models.User = Depends(get_current_user),
):
    record = service.update_settings(current_user.id, update)
    if record is None:
        raise _not_found()
    return _to_schema(record, storage)


@router.delete("", status_code=status.HTTP_200_OK)
def delete_watermark(
    service: WatermarkService = Depends(get_watermark_service),
    current_user: db_models.User = Depends(get_current_user),
):
    try:
        removed = service.remove(current_user.id)
    except ImageProcessingError as e:
        raise http_error(e.error_type, str(e))
    if not removed:
        raise _not_found()
    return {"message": "Watermark removed successfully"}
