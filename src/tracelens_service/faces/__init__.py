"""Face detection providers and the detection result model.

The mock provider is the default; InsightFace is used when installed and
selected through settings.
"""

from tracelens_service.faces.detection import (
    BoundingBox,
    DetectionResult,
    FaceDetection,
    Landmark,
)
from tracelens_service.faces.detector import (
    FaceDetectionProvider,
    InsightFaceDetector,
    MockFaceDetector,
    create_face_detector,
)

__all__ = [
    "BoundingBox",
    "DetectionResult",
    "FaceDetection",
    "Landmark",
    "FaceDetectionProvider",
    "InsightFaceDetector",
    "MockFaceDetector",
    "create_face_detector",
]
