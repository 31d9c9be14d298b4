"""Exception hierarchy for face detection providers.

Exception Tree:
    DetectionError (base)
    +-- ProviderError            (backend unavailable or raised during inference)
    +-- DetectionTimeoutError    (backend did not answer within the time budget)
    +-- MalformedDetectionError  (backend answered with data that fails validation)
"""

from __future__ import annotations


class DetectionError(Exception):
    """Base exception for all face detection failures."""

    pass


class ProviderError(DetectionError):
    """Raised when the detection backend fails.

    Attributes:
        provider_id: Identifier of the backend that failed.
    """

    def __init__(self, provider_id: str, message: str) -> None:
        self.provider_id = provider_id
        super().__init__(f"{provider_id}: {message}")


class DetectionTimeoutError(DetectionError):
    """Raised when a detector call exceeds its time budget.

    Attributes:
        timeout_seconds: The budget that was exceeded.
    """

    def __init__(self, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Face detection timed out after {timeout_seconds:.1f}s")


class MalformedDetectionError(DetectionError):
    """Raised when a detector result cannot be turned into a valid DetectionResult."""

    pass
