"""API routes and endpoints."""

from fastapi import APIRouter

from tracelens_service.api.routes.images import router as images_router
from tracelens_service.api.routes.system import router as system_router

router = APIRouter()


@router.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint that works without external dependencies.

    Returns:
        Status dictionary indicating service health
    """
    return {"status": "ok"}


# API v1 router with all endpoints
api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(images_router)
api_v1_router.include_router(system_router)
