import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import text
from sqlalchemy.orm import Session

from db.database import get_db

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/api/health",
    tags=["health"]
)

@router.get(
    "/live",
    summary="Liveness Probe",
    status_code=status.HTTP_200_OK,
)
async def liveness_check():
    """Returns `{"status": "alive"}` while the process is serving requests."""
    return {"status": "alive"}

@router.get(
    "/ready",
    summary="Readiness Probe",
    status_code=status.HTTP_200_OK,
    responses={
        status.HTTP_503_SERVICE_UNAVAILABLE: {
            "content": {"application/json": {"example": {"detail": {"status": "database_error", "detail": "Cannot connect to database."}}}},
            "description": "Database unreachable or storage not initialised."
        }
    }
)
def readiness_check(request: Request, db: Session = Depends(get_db)):
    """Ready when the database answers and a storage backend has been built."""
    try:
        db.execute(text("SELECT 1")).fetchone()
    except Exception as e:
        logger.error(f"Readiness check: database connection failed: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "database_error", "detail": "Cannot connect to database."}
        )

    storage = getattr(request.app.state, "storage", None)
    if storage is None:
        logger.error("Readiness check: storage backend not initialised.")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"status": "storage_error", "detail": "Storage backend not initialised."}
        )
    return {"status": "ready", "storage": storage.mode}
