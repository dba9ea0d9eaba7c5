# routers/images.py
import logging
import os
import uuid

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile, status
from sqlalchemy.orm import Session
from werkzeug.utils import secure_filename

from auth_utils import get_current_user
from config import MAX_UPLOAD_SIZE_MB
from db import crud
from db.database import get_db
from dependencies import get_storage_service, get_user_image
from models import models as db_models
from rate_limiter import get_dynamic_rate_limit, limiter
from schemas import image_schemas
from services.exceptions import DependencyFailureError, UnsupportedImageError
from services.image_processing import probe_image
from services.storage_service import StorageService

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/images",
    tags=["Image Upload"]
)

MAX_FILE_SIZE_BYTES = MAX_UPLOAD_SIZE_MB * 1024 * 1024
FORMAT_TO_EXTENSION = {
    "jpeg": ".jpg",
    "png": ".png",
    "webp": ".webp",
    "tiff": ".tiff",
    "heif": ".heic",
}


@router.post(
    "/upload",
    response_model=image_schemas.ImageSchema,
    status_code=status.HTTP_201_CREATED,
    summary="Upload, Validate, and Store a New Image"
)
@limiter.limit(get_dynamic_rate_limit)
async def upload_image(
    request: Request,
    file: UploadFile = File(...),
    db: Session = Depends(get_db),
    storage: StorageService = Depends(get_storage_service),
    current_user: db_models.User = Depends(get_current_user),
):
    """
    Validates the file (size, decodable allowed format), stores the original in
    the blob store and records it. RAW files keep their original extension.
    """
    contents = await file.read()
    file_size = len(contents)

    if file_size > MAX_FILE_SIZE_BYTES:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File too large. Maximum size is {MAX_UPLOAD_SIZE_MB}MB."
        )

    sanitized_filename = secure_filename(file.filename or "") or f"upload_{uuid.uuid4().hex}"
    try:
        info = probe_image(contents)
    except UnsupportedImageError as e:
        logger.info(f"Rejected upload '{sanitized_filename}': {e}")
        raise HTTPException(status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE, detail=str(e))

    extension = FORMAT_TO_EXTENSION.get(info.format) or os.path.splitext(sanitized_filename)[1].lower() or ".raw"
    storage_key = f"originals/{current_user.id}/{uuid.uuid4().hex}{extension}"
    try:
        url = storage.put(contents, storage_key, info.mime_type)
    except DependencyFailureError as e:
        logger.error(f"Failed to store upload '{sanitized_filename}': {e}")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Could not store the uploaded image.")

    image_data = image_schemas.ImageCreate(
        original_name=sanitized_filename,
        storage_key=storage_key,
        url=url,
        size=file_size,
        width=info.width,
        height=info.height,
        mime_type=info.mime_type,
    )
    db_image = crud.create_image(db=db, image=image_data, user_id=current_user.id)
    logger.info(f"Stored upload {db_image.id} ({info.format}, {info.width}x{info.height}) for user {current_user.id}")
    return db_image


@router.get("/{image_id}", response_model=image_schemas.ImageSchema)
def get_image(db_image: db_models.Image = Depends(get_user_image)):
    return db_image
