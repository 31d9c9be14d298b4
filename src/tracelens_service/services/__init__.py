"""Services package."""

from tracelens_service.services.detection_service import (
    BatchDetectionOrchestrator,
    BatchResult,
    ErrorCode,
    InvalidBatchInputError,
    ItemOutcome,
    OutcomeStatus,
)
from tracelens_service.services.upload_service import (
    IncomingFile,
    IngestResult,
    RejectionCode,
    UploadIngestor,
    UploadLimitError,
    UploadRejection,
)

__all__ = [
    "BatchDetectionOrchestrator",
    "BatchResult",
    "ErrorCode",
    "IncomingFile",
    "IngestResult",
    "InvalidBatchInputError",
    "ItemOutcome",
    "OutcomeStatus",
    "RejectionCode",
    "UploadIngestor",
    "UploadLimitError",
    "UploadRejection",
]
