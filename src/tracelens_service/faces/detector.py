"""Face detection providers.

Two interchangeable backends implement ``FaceDetectionProvider``:

- ``MockFaceDetector`` produces plausible random faces. Its random source is
  injected so tests (and demos) can seed it.
- ``InsightFaceDetector`` runs InsightFace/RetinaFace, loaded lazily on first use.

Both accept a file path or raw bytes and return a ``DetectionResult``. Image
dimensions are reported only when they can be read from the image itself;
callers fill in defaults otherwise.
"""

import asyncio
import io
import random
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from PIL import Image, ImageOps

from tracelens_service.core.config import Settings
from tracelens_service.core.logging import get_logger
from tracelens_service.faces.detection import (
    BoundingBox,
    DetectionResult,
    FaceDetection,
    Landmark,
    sort_by_confidence,
)
from tracelens_service.faces.exceptions import ProviderError

logger = get_logger(__name__)

ImageSource = str | Path | bytes

# EXIF orientations that rotate the image by 90 or 270 degrees
_TRANSPOSED_ORIENTATIONS = {5, 6, 7, 8}


def _open_image(source: ImageSource) -> Image.Image:
    if isinstance(source, bytes):
        return Image.open(io.BytesIO(source))
    return Image.open(source)


def read_image_size(source: ImageSource) -> tuple[int, int] | None:
    """Return (width, height) as displayed, honouring EXIF orientation.

    Returns:
        Dimensions, or None if the source cannot be decoded as an image.
    """
    try:
        with _open_image(source) as img:
            width, height = img.size
            orientation = img.getexif().get(0x0112)
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        logger.debug(f"Could not read image dimensions: {e}")
        return None
    if orientation in _TRANSPOSED_ORIENTATIONS:
        return height, width
    return width, height


@runtime_checkable
class FaceDetectionProvider(Protocol):
    """Pluggable face detection capability."""

    provider_id: str

    async def detect(
        self,
        source: ImageSource,
        size_hint: tuple[int, int] | None = None,
    ) -> DetectionResult:
        """Detect faces in an image.

        Args:
            source: Path to the image file, or its raw bytes.
            size_hint: Known (width, height) to fall back on when the image
                header cannot be read.

        Raises:
            DetectionError: On any backend failure.
        """
        ...


# Cumulative probabilities for 0, 1, 2, 3 faces; anything above is 4 faces
_FACE_COUNT_THRESHOLDS = (0.20, 0.50, 0.80, 0.95)

# Landmark positions as fractions of the face box
_LANDMARK_OFFSETS = (
    ("left_eye", 0.30, 0.35),
    ("right_eye", 0.70, 0.35),
    ("nose", 0.50, 0.55),
    ("mouth", 0.50, 0.75),
)


class MockFaceDetector:
    """Random face generator with a realistic-looking output shape.

    Face count follows a fixed weighted distribution (20% none, 30% one,
    30% two, 15% three, 5% four). Boxes are sized relative to the image,
    confidences fall in [0.70, 0.95] and grow with box size, and every face
    gets four landmarks. Faces are returned sorted by descending confidence.
    """

    provider_id = "mock"

    def __init__(
        self,
        rng: random.Random | None = None,
        default_size: tuple[int, int] = (800, 600),
        min_delay_ms: int = 0,
        max_delay_ms: int = 0,
    ) -> None:
        """Initialize the mock detector.

        Args:
            rng: Random source; pass a seeded instance for reproducible output.
            default_size: Dimensions to generate against when neither the
                image nor the caller provides any.
            min_delay_ms: Lower bound of simulated inference latency.
            max_delay_ms: Upper bound of simulated inference latency (0 disables it).
        """
        self._rng = rng or random.Random()
        self._default_size = default_size
        self._min_delay_ms = min_delay_ms
        self._max_delay_ms = max(min_delay_ms, max_delay_ms)

    async def detect(
        self,
        source: ImageSource,
        size_hint: tuple[int, int] | None = None,
    ) -> DetectionResult:
        if isinstance(source, (str, Path)) and not Path(source).is_file():
            raise ProviderError(self.provider_id, f"image not found: {source}")

        measured = await asyncio.to_thread(read_image_size, source)
        width, height = measured or size_hint or self._default_size

        if self._max_delay_ms > 0:
            delay_ms = self._rng.uniform(self._min_delay_ms, self._max_delay_ms)
            await asyncio.sleep(delay_ms / 1000)

        faces = self.generate_faces(width, height)
        logger.debug(f"Generated {len(faces)} mock faces for {width}x{height} image")

        return DetectionResult(
            provider=self.provider_id,
            faces=faces,
            image_width=measured[0] if measured else None,
            image_height=measured[1] if measured else None,
        )

    def generate_faces(self, image_width: int, image_height: int) -> tuple[FaceDetection, ...]:
        """Generate a random set of faces confined to the given image size."""
        face_count = self._choose_face_count()
        faces = [self._generate_face(image_width, image_height) for _ in range(face_count)]
        return sort_by_confidence(faces)

    def _choose_face_count(self) -> int:
        roll = self._rng.random()
        for count, threshold in enumerate(_FACE_COUNT_THRESHOLDS):
            if roll < threshold:
                return count
        return len(_FACE_COUNT_THRESHOLDS)

    def _generate_face(self, image_width: int, image_height: int) -> FaceDetection:
        rng = self._rng
        min_face = min(80.0, image_width * 0.1, image_height * 0.1)
        max_face = min(200.0, image_width * 0.3, image_height * 0.3)
        face_w = min_face + rng.random() * (max_face - min_face)
        face_h = face_w * (1.2 + rng.random() * 0.3)  # faces are taller than wide

        margin = 10
        x = margin + rng.random() * max(0.0, image_width - face_w - 2 * margin)
        y = margin + rng.random() * max(0.0, image_height - face_h - 2 * margin)

        size_bonus = (face_w / max_face) * 0.1 if max_face > 0 else 0.0
        confidence = min(0.95, 0.70 + rng.random() * 0.15 + size_bonus)

        box = BoundingBox(x=round(x), y=round(y), width=round(face_w), height=round(face_h))
        landmarks = self._generate_landmarks(x, y, face_w, face_h)
        face = FaceDetection(
            bounding_box=box,
            confidence=round(confidence, 2),
            landmarks=landmarks,
        )
        return face.clamped(image_width, image_height)

    def _generate_landmarks(
        self, x: float, y: float, width: float, height: float
    ) -> tuple[Landmark, ...]:
        x_jitter = width * 0.05
        y_jitter = height * 0.05
        return tuple(
            Landmark(
                name=name,
                x=round(x + width * fx + (self._rng.random() - 0.5) * x_jitter),
                y=round(y + height * fy + (self._rng.random() - 0.5) * y_jitter),
            )
            for name, fx, fy in _LANDMARK_OFFSETS
        )


_INSIGHTFACE_LANDMARKS = ("left_eye", "right_eye", "nose", "mouth_left", "mouth_right")


class InsightFaceDetector:
    """Face detection using InsightFace/RetinaFace.

    The model is loaded on the first ``detect()`` call and inference runs in
    a worker thread so the event loop stays responsive.
    """

    provider_id = "insightface"

    def __init__(
        self,
        model_name: str = "buffalo_l",
        min_confidence: float = 0.5,
        min_face_size: int = 20,
    ) -> None:
        self.model_name = model_name
        self.min_confidence = min_confidence
        self.min_face_size = min_face_size
        self._face_analysis: Any | None = None

    def _ensure_model_loaded(self) -> Any:
        """Lazy load InsightFace model."""
        if self._face_analysis is None:
            try:
                import onnxruntime
                from insightface.app import FaceAnalysis
            except ImportError as e:
                logger.error(
                    "InsightFace not installed. Run: pip install 'tracelens-service[insightface]'"
                )
                raise ProviderError(self.provider_id, "insightface is not installed") from e

            providers = onnxruntime.get_available_providers()
            gpu_providers = {"CUDAExecutionProvider", "CoreMLExecutionProvider"}
            ctx_id = 0 if any(p in gpu_providers for p in providers) else -1

            face_analysis = FaceAnalysis(name=self.model_name, providers=providers)
            face_analysis.prepare(ctx_id=ctx_id, det_size=(640, 640))
            self._face_analysis = face_analysis
            provider_name = providers[0] if providers else "CPU"
            logger.info(f"Loaded InsightFace model ({self.model_name}) with {provider_name}")
        return self._face_analysis

    async def detect(
        self,
        source: ImageSource,
        size_hint: tuple[int, int] | None = None,
    ) -> DetectionResult:
        return await asyncio.to_thread(self._detect_sync, source)

    def _detect_sync(self, source: ImageSource) -> DetectionResult:
        import numpy as np

        app = self._ensure_model_loaded()

        try:
            # Read with PIL first to apply EXIF orientation
            with _open_image(source) as pil_img:
                pil_img = ImageOps.exif_transpose(pil_img) or pil_img
                image_rgb = np.array(pil_img.convert("RGB"))
        except OSError as e:
            raise ProviderError(self.provider_id, f"could not read image: {e}") from e

        # InsightFace expects BGR channel order
        image_bgr = np.ascontiguousarray(image_rgb[:, :, ::-1])
        height, width = image_bgr.shape[:2]

        try:
            raw_faces = app.get(image_bgr)
        except Exception as e:
            raise ProviderError(self.provider_id, f"inference failed: {e}") from e

        faces: list[FaceDetection] = []
        for face in raw_faces:
            # InsightFace gives x1, y1, x2, y2
            x1, y1, x2, y2 = (int(v) for v in face.bbox)
            w, h = x2 - x1, y2 - y1
            score = float(face.det_score)
            if score < self.min_confidence:
                continue
            if w < self.min_face_size or h < self.min_face_size:
                continue

            landmarks: tuple[Landmark, ...] = ()
            if getattr(face, "kps", None) is not None:
                landmarks = tuple(
                    Landmark(name=name, x=round(float(point[0])), y=round(float(point[1])))
                    for name, point in zip(_INSIGHTFACE_LANDMARKS, face.kps, strict=False)
                )

            faces.append(
                FaceDetection(
                    bounding_box=BoundingBox(x=x1, y=y1, width=w, height=h),
                    confidence=min(1.0, max(0.0, score)),
                    landmarks=landmarks,
                )
            )

        logger.debug(f"Detected {len(faces)} faces in image")
        return DetectionResult(
            provider=self.provider_id,
            faces=sort_by_confidence(faces),
            image_width=width,
            image_height=height,
        )


def create_face_detector(settings: Settings) -> FaceDetectionProvider:
    """Build the detector selected by ``FACE_DETECTOR_PROVIDER``."""
    if settings.face_detector_provider == "insightface":
        logger.info("Using InsightFace face detector")
        return InsightFaceDetector(
            model_name=settings.insightface_model_name,
            min_confidence=settings.insightface_min_confidence,
        )

    seed = settings.mock_detector_seed
    logger.info(
        "Using mock face detector",
        extra={"seed": seed},
    )
    return MockFaceDetector(
        rng=random.Random(seed),
        default_size=(settings.default_image_width, settings.default_image_height),
        min_delay_ms=settings.mock_detector_min_delay_ms,
        max_delay_ms=settings.mock_detector_max_delay_ms,
    )
