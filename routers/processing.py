# routers/processing.py
import json
import logging
import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy.orm import Session

from auth_utils import get_current_user
from db.database import get_db
from dependencies import get_processing_service, get_storage_service, get_user_image, http_error
from models import models as db_models
from rate_limiter import BATCH_RATE_LIMIT, get_dynamic_rate_limit, limiter
from schemas import preset_schemas, processing_schemas
from schemas.settings_schemas import ManualAdjustments
from services import presets as preset_service
from services.exceptions import ImageProcessingError
from services.image_processing import ProcessingResult
from services.processing_service import ProcessingService
from services.scene_classifier import classify_scene, suggested_preset
from services.storage_service import StorageService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/processing",
    tags=["processing"],
    responses={404: {"description": "Image not found"}},
)


def _respond(
    result: ProcessingResult,
    record: Optional[db_models.Image],
    source: db_models.Image,
    preview: bool,
):
    if not result.success:
        raise http_error(result.error_type, f"Image processing failed: {result.error}")
    if preview:
        return Response(content=result.data, media_type=result.content_type)
    return processing_schemas.ProcessedImageResponse(
        id=record.id,
        original_image_id=source.id,
        name=record.original_name,
        url=record.url,
        width=record.width,
        height=record.height,
        size=record.size,
        processing_type=record.processing_type,
        processing_settings=json.loads(record.processing_settings_json or "{}"),
        created_at=record.created_at,
        notices=[notice.message for notice in result.notices],
    )


@router.post("/auto/{image_id}", response_model=processing_schemas.ProcessedImageResponse)
@limiter.limit(get_dynamic_rate_limit)
def auto_process(
    request: Request,
    image_id: uuid.UUID,
    body: Optional[processing_schemas.AutoProcessRequest] = None,
    preview: bool = False,
    source: db_models.Image = Depends(get_user_image),
    service: ProcessingService = Depends(get_processing_service),
    current_user: db_models.User = Depends(get_current_user),
):
    """
    Enhances an image with the automatic pipeline: defaults, then the named
    preset (built-in key, or the id/name of one of the user's presets), then any
    overrides in the body. With ``?preview=true`` the encoded image is returned
    directly and nothing is stored.
    """
    body = body or processing_schemas.AutoProcessRequest()
    logger.info(f"Auto processing image {image_id} (preset={body.preset}, preview={preview})")
    try:
        result, record = service.process_auto(source, body, current_user.id, preview=preview)
    except ImageProcessingError as e:
        logger.error(f"Auto processing of image {image_id} failed: {e}")
        raise http_error(e.error_type, str(e))
    return _respond(result, record, source, preview)


@router.post("/manual/{image_id}", response_model=processing_schemas.ProcessedImageResponse)
@limiter.limit(get_dynamic_rate_limit)
def manual_process(
    request: Request,
    image_id: uuid.UUID,
    adjustments: ManualAdjustments,
    preview: bool = False,
    source: db_models.Image = Depends(get_user_image),
    service: ProcessingService = Depends(get_processing_service),
    current_user: db_models.User = Depends(get_current_user),
):
    logger.info(f"Manual processing image {image_id} (preview={preview})")
    try:
        result, record = service.process_manual(source, adjustments, current_user.id, preview=preview)
    except ImageProcessingError as e:
        logger.error(f"Manual processing of image {image_id} failed: {e}")
        raise http_error(e.error_type, str(e))
    return _respond(result, record, source, preview)


@router.post("/batch", response_model=processing_schemas.BatchProcessResponse)
@limiter.limit(BATCH_RATE_LIMIT)
def batch_process(
    request: Request,
    batch: processing_schemas.BatchProcessRequest,
    service: ProcessingService = Depends(get_processing_service),
    current_user: db_models.User = Depends(get_current_user),
):
    try:
        results = service.process_batch(batch.image_ids, batch.mode, batch.options, current_user.id)
    except ImageProcessingError as e:
        raise http_error(e.error_type, str(e))
    return processing_schemas.BatchProcessResponse(
        message=f"Batch processing complete. {len(results['success'])} succeeded, {len(results['failed'])} failed.",
        success=results["success"],
        failed=results["failed"],
    )


@router.get("/presets", response_model=List[preset_schemas.PresetSummary])
def get_presets(db: Session = Depends(get_db), current_user: db_models.User = Depends(get_current_user)):
    return preset_service.list_presets(db, user_id=current_user.id)


@router.post("/presets", response_model=preset_schemas.PresetSummary, status_code=status.HTTP_201_CREATED)
@limiter.limit(get_dynamic_rate_limit)
def save_preset(
    request: Request,
    preset_in: preset_schemas.PresetCreate,
    db: Session = Depends(get_db),
    current_user: db_models.User = Depends(get_current_user),
):
    """Creates a user preset, or replaces the settings of the one with the same name."""
    if preset_in.name in preset_service.BUILTIN_PRESETS:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"'{preset_in.name}' is a built-in preset name.",
        )
    store = preset_service.SqlPresetStore(db)
    try:
        preset = store.save(current_user.id, preset_in.name, preset_in.settings, description=preset_in.description)
    except ImageProcessingError as e:
        raise http_error(e.error_type, str(e))
    return preset_schemas.PresetSummary(
        id=str(preset.id),
        name=preset.name,
        description=preset.description or "",
        is_default=preset.is_default,
        settings=preset_service.settings_from_json(preset.settings_json).to_dict(),
        usage_count=preset.usage_count,
    )


@router.get("/detect-scene/{image_id}", response_model=processing_schemas.SceneDetectionResponse)
def detect_scene(
    image_id: uuid.UUID,
    source: db_models.Image = Depends(get_user_image),
    storage: StorageService = Depends(get_storage_service),
):
    """Brightness-based scene guess with a matching preset. Advisory only."""
    try:
        image_bytes = storage.get(source.storage_key)
    except ImageProcessingError as e:
        raise http_error(e.error_type, str(e))
    scene = classify_scene(image_bytes)
    return processing_schemas.SceneDetectionResponse(
        image_id=image_id,
        scene_type=scene,
        suggested_preset=suggested_preset(scene),
    )
