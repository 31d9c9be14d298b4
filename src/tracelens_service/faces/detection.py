"""Face detection result model.

A ``DetectionResult`` is what every detector returns and what gets stored on
an ``ImageRecord`` once processing succeeds. Values are immutable; the
``finalize()`` step produces the stored form:

    - bounding boxes and landmarks clamped into the image bounds
    - faces ordered by descending confidence
    - image dimensions and processing time filled in

Construction validates the parts a clamp cannot repair (confidence outside
[0, 1], negative box sizes, non-numeric values) and raises
``MalformedDetectionError``.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from typing import Any

from tracelens_service.faces.exceptions import MalformedDetectionError


def _as_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
        raise MalformedDetectionError(f"{name} must be a finite number, got {value!r}")
    return int(round(value))


def _clamp(value: int, low: int, high: int) -> int:
    return max(low, min(value, high))


@dataclass(frozen=True)
class BoundingBox:
    """Face bounding box in pixel coordinates of the original image."""

    x: int
    y: int
    width: int
    height: int

    def __post_init__(self) -> None:
        for name in ("x", "y", "width", "height"):
            object.__setattr__(self, name, _as_int(getattr(self, name), f"bounding_box.{name}"))
        if self.width < 0 or self.height < 0:
            raise MalformedDetectionError(
                f"bounding box size must be non-negative, got {self.width}x{self.height}"
            )

    @property
    def area(self) -> int:
        return self.width * self.height

    def clamped(self, image_width: int, image_height: int) -> BoundingBox:
        """Return the part of this box that lies inside the image."""
        left = _clamp(self.x, 0, image_width)
        top = _clamp(self.y, 0, image_height)
        right = _clamp(self.x + self.width, 0, image_width)
        bottom = _clamp(self.y + self.height, 0, image_height)
        return BoundingBox(x=left, y=top, width=right - left, height=bottom - top)

    def to_dict(self) -> dict[str, int]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(frozen=True)
class Landmark:
    """Named facial keypoint (left_eye, right_eye, nose, mouth, ...)."""

    name: str
    x: int
    y: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "x", _as_int(self.x, f"landmark {self.name}.x"))
        object.__setattr__(self, "y", _as_int(self.y, f"landmark {self.name}.y"))

    def clamped(self, image_width: int, image_height: int) -> Landmark:
        return Landmark(
            name=self.name,
            x=_clamp(self.x, 0, image_width),
            y=_clamp(self.y, 0, image_height),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "x": self.x, "y": self.y}


@dataclass(frozen=True)
class FaceDetection:
    """A single detected face."""

    bounding_box: BoundingBox
    confidence: float
    landmarks: tuple[Landmark, ...] = ()

    def __post_init__(self) -> None:
        confidence = self.confidence
        if (
            isinstance(confidence, bool)
            or not isinstance(confidence, (int, float))
            or not math.isfinite(confidence)
            or not 0.0 <= confidence <= 1.0
        ):
            raise MalformedDetectionError(f"confidence must be within [0, 1], got {confidence!r}")
        object.__setattr__(self, "confidence", float(confidence))
        object.__setattr__(self, "landmarks", tuple(self.landmarks))

    def clamped(self, image_width: int, image_height: int) -> FaceDetection:
        return FaceDetection(
            bounding_box=self.bounding_box.clamped(image_width, image_height),
            confidence=self.confidence,
            landmarks=tuple(lm.clamped(image_width, image_height) for lm in self.landmarks),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "bounding_box": self.bounding_box.to_dict(),
            "confidence": self.confidence,
            "landmarks": [lm.to_dict() for lm in self.landmarks],
        }


def sort_by_confidence(faces: Sequence[FaceDetection]) -> tuple[FaceDetection, ...]:
    """Order faces by descending confidence (stable for ties)."""
    return tuple(sorted(faces, key=lambda f: f.confidence, reverse=True))


@dataclass(frozen=True)
class DetectionResult:
    """Faces found in one image by one provider.

    ``image_width``/``image_height`` are None when the provider could not
    derive them; ``processing_time_ms`` is filled in by the caller that
    measured the call.
    """

    provider: str
    faces: tuple[FaceDetection, ...] = field(default_factory=tuple)
    image_width: int | None = None
    image_height: int | None = None
    processing_time_ms: int | None = None

    def __post_init__(self) -> None:
        faces = tuple(self.faces)
        for face in faces:
            if not isinstance(face, FaceDetection):
                raise MalformedDetectionError(f"unexpected face entry {face!r}")
        object.__setattr__(self, "faces", faces)
        for name in ("image_width", "image_height"):
            value = getattr(self, name)
            if value is not None:
                value = _as_int(value, name)
                if value <= 0:
                    raise MalformedDetectionError(f"{name} must be positive, got {value}")
                object.__setattr__(self, name, value)

    @property
    def face_count(self) -> int:
        return len(self.faces)

    @property
    def confidence(self) -> float:
        """Mean face confidence rounded to two decimals (0.0 without faces)."""
        if not self.faces:
            return 0.0
        return round(sum(f.confidence for f in self.faces) / len(self.faces), 2)

    def finalize(
        self,
        processing_time_ms: int,
        fallback_width: int,
        fallback_height: int,
    ) -> DetectionResult:
        """Produce the stored form of this result.

        Args:
            processing_time_ms: Wall-clock duration measured around the detector call.
            fallback_width: Width to use when the provider reported none.
            fallback_height: Height to use when the provider reported none.

        Returns:
            New result with dimensions set, faces clamped and sorted.
        """
        width = self.image_width or fallback_width
        height = self.image_height or fallback_height
        faces = sort_by_confidence([face.clamped(width, height) for face in self.faces])
        return replace(
            self,
            faces=faces,
            image_width=width,
            image_height=height,
            processing_time_ms=processing_time_ms,
        )

    def to_dict(self) -> dict[str, Any]:
        """JSON-serializable form persisted in ``image_records.detection_result``."""
        return {
            "face_count": self.face_count,
            "faces": [face.to_dict() for face in self.faces],
            "confidence": self.confidence,
            "processing_time_ms": self.processing_time_ms,
            "image_width": self.image_width,
            "image_height": self.image_height,
            "provider": self.provider,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DetectionResult:
        """Rebuild a result from its stored form.

        Raises:
            MalformedDetectionError: If the payload is missing fields or holds invalid values.
        """
        try:
            faces = tuple(
                FaceDetection(
                    bounding_box=BoundingBox(**face["bounding_box"]),
                    confidence=face["confidence"],
                    landmarks=tuple(Landmark(**lm) for lm in face.get("landmarks", [])),
                )
                for face in data.get("faces", [])
            )
            return cls(
                provider=data["provider"],
                faces=faces,
                image_width=data.get("image_width"),
                image_height=data.get("image_height"),
                processing_time_ms=data.get("processing_time_ms"),
            )
        except (KeyError, TypeError) as e:
            raise MalformedDetectionError(f"invalid stored detection result: {e}") from e
