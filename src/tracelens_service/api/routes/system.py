"""System status endpoints."""

from fastapi import APIRouter, Depends
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tracelens_service.api.dependencies import get_detector
from tracelens_service.api.schemas import SystemStatusResponse
from tracelens_service.core.logging import get_logger
from tracelens_service.db.session import get_db
from tracelens_service.faces.detector import FaceDetectionProvider

logger = get_logger(__name__)
router = APIRouter(prefix="/system", tags=["system"])


@router.get("/status", response_model=SystemStatusResponse)
async def get_system_status(
    detector: FaceDetectionProvider = Depends(get_detector),
    db: AsyncSession = Depends(get_db),
) -> SystemStatusResponse:
    """Report the active face detector and whether the database answers.

    Returns:
        Status with ``degraded`` when the database is unreachable
    """
    try:
        await db.execute(text("SELECT 1"))
        database_ok = True
    except (SQLAlchemyError, OSError) as e:
        logger.warning(f"Database unreachable during status check: {e}")
        database_ok = False

    return SystemStatusResponse(
        status="ok" if database_ok else "degraded",
        detector_provider=detector.provider_id,
        database="connected" if database_ok else "unavailable",
    )
