"""Image upload, face detection and record management endpoints.

Every endpoint is scoped to the authenticated owner; another owner's image
behaves exactly like a missing one.
"""

from typing import Literal

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile, status
from fastapi.responses import JSONResponse

from tracelens_service.api.auth import get_current_owner_id
from tracelens_service.api.dependencies import (
    get_app_settings,
    get_image_store,
    get_ingestor,
    get_orchestrator,
    get_storage,
)
from tracelens_service.api.schemas import (
    BulkDeleteRequest,
    BulkDeleteResponse,
    DeleteImageResponse,
    DetectFacesRequest,
    DetectFacesResponse,
    DetectionOutcome,
    ImageListResponse,
    ImageResponse,
    ImageStatsResponse,
    Pagination,
    UploadError,
    UploadResponse,
)
from tracelens_service.core.config import Settings
from tracelens_service.core.logging import get_logger
from tracelens_service.db.image_store import ImageRecordStore
from tracelens_service.db.models import SortField
from tracelens_service.services.detection_service import (
    BatchDetectionOrchestrator,
    InvalidBatchInputError,
)
from tracelens_service.services.upload_service import (
    IncomingFile,
    UploadIngestor,
    UploadLimitError,
)
from tracelens_service.storage.async_wrapper import AsyncFileStorage
from tracelens_service.storage.exceptions import StorageError, StoredFileNotFoundError

logger = get_logger(__name__)
router = APIRouter(prefix="/images", tags=["images"])


async def _remove_file(storage: AsyncFileStorage, path: str, image_id: int) -> bool:
    """Delete a record's backing file, reporting whether it was removed."""
    try:
        await storage.delete(path)
    except StoredFileNotFoundError:
        logger.warning(f"File for image {image_id} was already missing", extra={"path": path})
        return False
    except StorageError as e:
        logger.error(f"Failed to delete file for image {image_id}: {e}", extra={"path": path})
        return False
    return True


@router.post(
    "/upload",
    response_model=UploadResponse,
    status_code=status.HTTP_201_CREATED,
)
async def upload_images(
    images: list[UploadFile] | None = File(default=None),
    owner_id: int = Depends(get_current_owner_id),
    ingestor: UploadIngestor = Depends(get_ingestor),
    settings: Settings = Depends(get_app_settings),
) -> UploadResponse:
    """Upload up to MAX_FILES_PER_UPLOAD images in one multipart request.

    Args:
        images: Files sent under the ``images`` field
        owner_id: Authenticated owner
        ingestor: Upload intake service
        settings: Application settings

    Returns:
        Registered images and per-file rejections

    Raises:
        HTTPException: 400 if the file count is out of range or every file failed
            validation; 500 if every file was lost to a storage or database failure
    """
    uploads = images or []
    try:
        ingestor.check_request(len(uploads))
    except UploadLimitError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    # Read one byte past the ceiling so oversized files are still detected
    files = [
        IncomingFile(
            filename=upload.filename or "",
            content_type=upload.content_type,
            content=await upload.read(settings.max_file_size + 1),
        )
        for upload in uploads
    ]

    result = await ingestor.ingest(owner_id, files)
    errors = [
        UploadError(filename=r.filename, code=r.code.value, message=r.message)
        for r in result.rejected
    ]

    if not result.accepted:
        if result.only_validation_failures:
            status_code, message = status.HTTP_400_BAD_REQUEST, "No valid images were uploaded"
        else:
            status_code, message = (
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                "Images could not be saved",
            )
        raise HTTPException(
            status_code=status_code,
            detail={
                "message": message,
                "errors": [e.model_dump() for e in errors],
            },
        )

    return UploadResponse(
        images=[ImageResponse.model_validate(record) for record in result.accepted],
        errors=errors,
        message=result.message,
    )


@router.post("/detect-faces", response_model=DetectFacesResponse)
async def detect_faces(
    request: DetectFacesRequest,
    owner_id: int = Depends(get_current_owner_id),
    orchestrator: BatchDetectionOrchestrator = Depends(get_orchestrator),
) -> DetectFacesResponse | JSONResponse:
    """Run face detection over a batch of the caller's images.

    Args:
        request: Ids to process, at most DETECTION_MAX_BATCH_SIZE
        owner_id: Authenticated owner
        orchestrator: Batch detection service

    Returns:
        One outcome per requested id, in request order

    Raises:
        HTTPException: 400 if the batch is empty or too large
    """
    try:
        batch = await orchestrator.run_batch(owner_id, request.image_ids)
    except InvalidBatchInputError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": e.code.value, "message": str(e)},
        )

    response = DetectFacesResponse(
        results=[DetectionOutcome.from_outcome(o) for o in batch.outcomes],
        processed=batch.succeeded,
        failed=batch.failed,
        message=batch.message,
    )

    # Nothing could even be attempted: every id was unknown or had no file
    if batch.only_validation_failures:
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=response.model_dump(mode="json", by_alias=True),
        )
    return response


@router.get("", response_model=ImageListResponse)
async def list_images(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    processed: bool | None = Query(None, description="Filter by processing state"),
    sort_by: SortField = Query(SortField.UPLOADED_AT, alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query("desc", alias="sortOrder"),
    owner_id: int = Depends(get_current_owner_id),
    store: ImageRecordStore = Depends(get_image_store),
) -> ImageListResponse:
    """List the caller's images with pagination, filtering and sorting."""
    result = await store.list_by_owner(
        owner_id,
        processed=processed,
        page=page,
        limit=limit,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return ImageListResponse(
        images=[ImageResponse.model_validate(record) for record in result.items],
        pagination=Pagination(
            page=result.page,
            limit=result.limit,
            total=result.total,
            pages=result.pages,
        ),
    )


@router.get("/stats", response_model=ImageStatsResponse)
async def get_image_stats(
    owner_id: int = Depends(get_current_owner_id),
    store: ImageRecordStore = Depends(get_image_store),
) -> ImageStatsResponse:
    """Aggregate statistics over the caller's images."""
    stats = await store.aggregate_stats_by_owner(owner_id)
    return ImageStatsResponse(
        total_images=stats.total_images,
        processed_images=stats.processed_images,
        total_size=stats.total_size,
        total_faces=stats.total_faces,
        avg_confidence=stats.avg_confidence,
    )


@router.post("/bulk-delete", response_model=BulkDeleteResponse)
async def bulk_delete_images(
    request: BulkDeleteRequest,
    owner_id: int = Depends(get_current_owner_id),
    store: ImageRecordStore = Depends(get_image_store),
    storage: AsyncFileStorage = Depends(get_storage),
) -> BulkDeleteResponse:
    """Delete several of the caller's images; unknown ids are ignored."""
    removed = await store.delete_many_by_owner(request.image_ids, owner_id)

    files_deleted = 0
    for image in removed:
        if await _remove_file(storage, image.path, image.id):
            files_deleted += 1

    logger.info(
        f"Bulk deleted {len(removed)} images",
        extra={"owner_id": owner_id, "deleted": len(removed), "files_deleted": files_deleted},
    )
    return BulkDeleteResponse(deleted=len(removed), files_deleted=files_deleted)


@router.get("/{image_id}", response_model=ImageResponse)
async def get_image(
    image_id: int,
    owner_id: int = Depends(get_current_owner_id),
    store: ImageRecordStore = Depends(get_image_store),
) -> ImageResponse:
    """Get one of the caller's images, including its detection result.

    Raises:
        HTTPException: 404 if the caller has no such image
    """
    record = await store.find_by_id_and_owner(image_id, owner_id)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Image {image_id} not found",
        )
    return ImageResponse.model_validate(record)


@router.delete("/{image_id}", response_model=DeleteImageResponse)
async def delete_image(
    image_id: int,
    owner_id: int = Depends(get_current_owner_id),
    store: ImageRecordStore = Depends(get_image_store),
    storage: AsyncFileStorage = Depends(get_storage),
) -> DeleteImageResponse:
    """Delete an image record, then its file.

    The record is removed first; a file that cannot be removed afterwards is
    reported through ``fileDeleted`` rather than failing the request.

    Raises:
        HTTPException: 404 if the caller has no such image
    """
    removed = await store.delete_by_id_and_owner(image_id, owner_id)
    if removed is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Image {image_id} not found",
        )

    file_deleted = await _remove_file(storage, removed.path, removed.id)
    return DeleteImageResponse(success=True, file_deleted=file_deleted)
