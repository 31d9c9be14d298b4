"""FastAPI dependencies wiring request-scoped services.

Long-lived collaborators (settings, face detector, file storage) are created
once by the application factory and kept on ``app.state``; services bound to
a database session are built per request.
"""

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from tracelens_service.core.config import Settings
from tracelens_service.db.image_store import ImageRecordStore
from tracelens_service.db.session import get_db
from tracelens_service.faces.detector import FaceDetectionProvider
from tracelens_service.services.detection_service import BatchDetectionOrchestrator
from tracelens_service.services.upload_service import UploadIngestor
from tracelens_service.storage.async_wrapper import AsyncFileStorage


def get_app_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def get_detector(request: Request) -> FaceDetectionProvider:
    detector: FaceDetectionProvider = request.app.state.detector
    return detector


def get_storage(request: Request) -> AsyncFileStorage:
    storage: AsyncFileStorage = request.app.state.storage
    return storage


def get_image_store(db: AsyncSession = Depends(get_db)) -> ImageRecordStore:
    return ImageRecordStore(db)


def get_orchestrator(
    store: ImageRecordStore = Depends(get_image_store),
    storage: AsyncFileStorage = Depends(get_storage),
    detector: FaceDetectionProvider = Depends(get_detector),
    settings: Settings = Depends(get_app_settings),
) -> BatchDetectionOrchestrator:
    return BatchDetectionOrchestrator.from_settings(settings, store, storage, detector)


def get_ingestor(
    store: ImageRecordStore = Depends(get_image_store),
    storage: AsyncFileStorage = Depends(get_storage),
    settings: Settings = Depends(get_app_settings),
) -> UploadIngestor:
    return UploadIngestor(store=store, storage=storage, settings=settings)
