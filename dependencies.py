# dependencies.py
import logging
import uuid

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from auth_utils import get_current_user
from db import crud
from db.database import get_db
from models import models as db_models
from services.processing_service import ProcessingService
from services.storage_service import StorageService
from services.watermark import WatermarkService

logger = logging.getLogger(__name__)


def get_storage_service(request: Request) -> StorageService:
    """The StorageService built once at startup from the resolved storage config."""
    storage = getattr(request.app.state, "storage", None)
    if storage is None:
        logger.error("StorageService requested but not initialised on app.state.")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Image storage service is not configured or unavailable.",
        )
    return storage


def get_processing_service(
    db: Session = Depends(get_db),
    storage: StorageService = Depends(get_storage_service),
) -> ProcessingService:
    return ProcessingService(db, storage)


def get_watermark_service(
    db: Session = Depends(get_db),
    storage: StorageService = Depends(get_storage_service),
) -> WatermarkService:
    return WatermarkService(db, storage)


def get_user_image(
    image_id: uuid.UUID,
    db: Session = Depends(get_db),
    current_user: db_models.User = Depends(get_current_user),
) -> db_models.Image:
    """
    Retrieves an Image owned by the current user. Images of other users are
    reported as not found.
    """
    db_image = crud.get_user_image(db, image_id=image_id, user_id=current_user.id)
    if not db_image:
        logger.warning(f"Image {image_id} not found for user {current_user.id}")
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Image not found or access denied",
        )
    return db_image


# error_type -> HTTP status, shared by raised errors and failed ProcessingResults
ERROR_TYPE_STATUS = {
    "invalid_input": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "unsupported_image": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "not_found": status.HTTP_404_NOT_FOUND,
    "dependency_failure": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def http_error(error_type: str, detail: str) -> HTTPException:
    return HTTPException(
        status_code=ERROR_TYPE_STATUS.get(error_type, status.HTTP_500_INTERNAL_SERVER_ERROR),
        detail=detail,
    )
