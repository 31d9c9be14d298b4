"""FastAPI application factory with lazy initialization."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tracelens_service.api.routes import api_v1_router, router
from tracelens_service.core.config import Settings, get_settings
from tracelens_service.core.logging import configure_logging, get_logger
from tracelens_service.db.session import close_db
from tracelens_service.faces.detector import FaceDetectionProvider, create_face_detector
from tracelens_service.storage import AsyncFileStorage, create_file_storage

configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown.

    Note: The database engine is lazily initialized on first use,
    so we only need to handle cleanup here.
    """
    logger.info(
        "Application starting up",
        extra={"provider": app.state.detector.provider_id},
    )
    yield
    logger.info("Application shutting down")
    await close_db()


def create_app(
    settings: Settings | None = None,
    detector: FaceDetectionProvider | None = None,
    storage: AsyncFileStorage | None = None,
) -> FastAPI:
    """Create and configure FastAPI application.

    Args:
        settings: Settings to use; defaults to the cached environment settings
        detector: Face detector; defaults to the one selected by FACE_DETECTOR_PROVIDER
        storage: File storage; defaults to local storage under UPLOAD_DIR

    Returns:
        Configured FastAPI application instance
    """
    settings = settings or get_settings()

    app = FastAPI(
        title="TraceLens Service",
        description="Image upload and face detection",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.detector = detector or create_face_detector(settings)
    app.state.storage = storage or create_file_storage(settings)

    # Add CORS middleware (enabled by default, disable with ENABLE_CORS=false)
    if settings.enable_cors:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
        logger.info("CORS middleware enabled")
    else:
        logger.info("CORS middleware disabled via ENABLE_CORS=false")

    # Register routes
    app.include_router(router)
    app.include_router(api_v1_router)

    return app


app = create_app()
