"""Pydantic schemas for API requests and responses."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from tracelens_service.faces.detection import DetectionResult
from tracelens_service.services.detection_service import ItemOutcome


def to_camel(string: str) -> str:
    """Convert snake_case to camelCase."""
    words = string.split("_")
    return words[0] + "".join(word.capitalize() for word in words[1:])


class CamelCaseModel(BaseModel):
    """Base model with camelCase aliases for JSON serialization."""

    model_config = ConfigDict(
        populate_by_name=True,
        alias_generator=to_camel,
    )


# ---------------------------------------------------------------------------
# Detection results
# ---------------------------------------------------------------------------


class BoundingBox(CamelCaseModel):
    """Face bounding box in image pixels."""

    x: int
    y: int
    width: int
    height: int


class Landmark(CamelCaseModel):
    name: str
    x: int
    y: int


class Face(CamelCaseModel):
    bounding_box: BoundingBox
    confidence: float
    landmarks: list[Landmark] = Field(default_factory=list)


class DetectionResultResponse(CamelCaseModel):
    """Detection result as stored on an image record."""

    face_count: int
    faces: list[Face]
    confidence: float
    processing_time_ms: int | None = None
    image_width: int | None = None
    image_height: int | None = None
    provider: str

    @classmethod
    def from_result(cls, result: DetectionResult) -> "DetectionResultResponse":
        return cls.model_validate(result.to_dict())


# ---------------------------------------------------------------------------
# Image records
# ---------------------------------------------------------------------------


class ImageResponse(CamelCaseModel):
    """Image record as exposed to its owner. Storage paths are never included."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    filename: str
    original_name: str
    size: int
    mime_type: str
    width: int | None = None
    height: int | None = None
    uploaded_at: datetime
    processed: bool
    processed_at: datetime | None = None
    detection_result: DetectionResultResponse | None = None


class UploadError(CamelCaseModel):
    filename: str
    code: str
    message: str


class UploadResponse(CamelCaseModel):
    """Result of a multipart upload."""

    images: list[ImageResponse]
    errors: list[UploadError]
    message: str


class Pagination(CamelCaseModel):
    page: int
    limit: int
    total: int
    pages: int


class ImageListResponse(CamelCaseModel):
    images: list[ImageResponse]
    pagination: Pagination


class ImageStatsResponse(CamelCaseModel):
    """Aggregate statistics over the caller's images."""

    total_images: int
    processed_images: int
    total_size: int
    total_faces: int
    avg_confidence: float


class DeleteImageResponse(CamelCaseModel):
    success: bool
    file_deleted: bool


class BulkDeleteRequest(CamelCaseModel):
    image_ids: list[int] = Field(..., min_length=1, max_length=100)


class BulkDeleteResponse(CamelCaseModel):
    deleted: int
    files_deleted: int


# ---------------------------------------------------------------------------
# Face detection
# ---------------------------------------------------------------------------


class DetectFacesRequest(CamelCaseModel):
    """Ids to run face detection on. Size limits are enforced by the service."""

    image_ids: list[int]


class OutcomeError(CamelCaseModel):
    code: str
    message: str


class DetectionOutcome(CamelCaseModel):
    """Outcome for one requested image id."""

    image_id: int
    status: Literal["success", "failed"]
    result: DetectionResultResponse | None = None
    error: OutcomeError | None = None

    @classmethod
    def from_outcome(cls, outcome: ItemOutcome) -> "DetectionOutcome":
        return cls(
            image_id=outcome.image_id,
            status=outcome.status.value,
            result=(
                DetectionResultResponse.from_result(outcome.result)
                if outcome.result is not None
                else None
            ),
            error=(
                OutcomeError(code=outcome.error_code.value, message=outcome.error_message or "")
                if outcome.error_code is not None
                else None
            ),
        )


class DetectFacesResponse(CamelCaseModel):
    results: list[DetectionOutcome]
    processed: int
    failed: int
    message: str


# ---------------------------------------------------------------------------
# System
# ---------------------------------------------------------------------------


class SystemStatusResponse(CamelCaseModel):
    status: Literal["ok", "degraded"]
    detector_provider: str
    database: Literal["connected", "unavailable"]
