"""
Subject-aware crop heuristic.

Picks the most confident detected subject (face or object), pads it, fits it to
an optional target aspect ratio and clamps it inside the raster. With no usable
subjects it falls back to a centred crop. Detection is an injected capability;
when it is missing or fails the heuristic quietly uses the fallback.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from PIL import Image

from .errors import DetectionUnavailable
from .geometry import CropArea, aspect_value, centered_crop, round_half_up
from ..utils.config import Config
from ..utils.logging import get_logger

logger = get_logger(__name__)

FALLBACK_CONFIDENCE = 0.5


@dataclass(frozen=True)
class DetectedSubject:
    """A detector hit: bounding box (x, y, width, height), score and kind."""

    bbox: Tuple[float, float, float, float]
    score: float
    kind: str = "object"
    label: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return self.bbox[2] > 0 and self.bbox[3] > 0

    @property
    def center(self) -> Tuple[float, float]:
        x, y, w, h = self.bbox
        return x + w / 2, y + h / 2


@dataclass
class SmartCropResult:
    """Chosen rectangle, its confidence and every subject seen."""

    crop_area: CropArea
    confidence: float
    detected_subjects: List[DetectedSubject] = field(default_factory=list)

    @property
    def used_fallback(self) -> bool:
        return self.confidence == FALLBACK_CONFIDENCE and not any(s.is_valid for s in self.detected_subjects)


class SubjectDetector:
    """
    Detection capability.

    Implementations return faces as ``[{'bbox': [x, y, w, h], 'score': s}]``
    and objects as ``[{'bbox': [...], 'class': name, 'score': s}]``.
    """

    def detect_faces(self, raster: Image.Image) -> List[dict]:
        raise NotImplementedError

    def detect_objects(self, raster: Image.Image) -> List[dict]:
        raise NotImplementedError


class NullDetector(SubjectDetector):
    """Detector used when no detection backend is installed."""

    def detect_faces(self, raster: Image.Image) -> List[dict]:
        return []

    def detect_objects(self, raster: Image.Image) -> List[dict]:
        return []


class SmartCropper:
    """
    Computes crop rectangles, optionally informed by detected subjects.

    Each ``smart_crop`` call performs exactly one detection pass.
    """

    def __init__(self,
                 detector: Optional[SubjectDetector] = None,
                 config: Optional[Config] = None):
        """
        Args:
            detector: Detection capability; defaults to NullDetector
            config: Configuration (padding ratio)
        """
        self.detector = detector or NullDetector()
        self.config = config or Config()

    def detect_subjects(self, raster: Image.Image) -> List[DetectedSubject]:
        """Faces first, then objects, in detector order. Never raises."""
        try:
            return self._detect(raster)
        except DetectionUnavailable as e:
            logger.info(f"Subject detection unavailable, using centred crop: {e}")
            return []

    def smart_crop(self,
                   raster: Image.Image,
                   aspect: Optional[Tuple[float, float]] = None) -> SmartCropResult:
        """
        Compute the crop rectangle for a raster.

        Args:
            raster: Decoded image
            aspect: Optional (width, height) target ratio

        Returns:
            SmartCropResult
        """
        width, height = raster.size
        subjects = self.detect_subjects(raster)
        valid = [s for s in subjects if s.is_valid]

        if not valid:
            return SmartCropResult(centered_crop(width, height, aspect), FALLBACK_CONFIDENCE, subjects)

        # max keeps the first of equal scores
        best = max(valid, key=lambda s: s.score)
        area = self.crop_around(best, width, height, aspect)
        logger.debug(f"Smart crop on {best.kind} (score {best.score:.2f}): {area}")
        return SmartCropResult(area, float(best.score), subjects)

    def crop_around(self,
                    subject: DetectedSubject,
                    raster_width: int,
                    raster_height: int,
                    aspect: Optional[Tuple[float, float]] = None) -> CropArea:
        """
        Padded, ratio-fitted rectangle centred on ``subject``.

        The box is only shifted, never shrunk, to stay inside the raster; a box
        larger than the raster itself is scaled down keeping its ratio.
        """
        padding = self.config.smart_crop_padding
        _, _, sw, sh = subject.bbox
        crop_w = sw * (1 + padding * 2)
        crop_h = sh * (1 + padding * 2)

        target = aspect_value(aspect)
        if target is not None:
            if crop_w / crop_h > target:
                crop_h = crop_w / target
            else:
                crop_w = crop_h * target

        scale = min(1.0, raster_width / crop_w, raster_height / crop_h)
        crop_w *= scale
        crop_h *= scale

        cx, cy = subject.center
        width = max(1, min(raster_width, round_half_up(crop_w)))
        height = max(1, min(raster_height, round_half_up(crop_h)))
        x = round_half_up(cx - crop_w / 2)
        y = round_half_up(cy - crop_h / 2)
        x = min(max(0, x), raster_width - width)
        y = min(max(0, y), raster_height - height)
        return CropArea(x, y, width, height)

    def _detect(self, raster: Image.Image) -> List[DetectedSubject]:
        try:
            faces = self.detector.detect_faces(raster) or []
            objects = self.detector.detect_objects(raster) or []
        except Exception as e:
            raise DetectionUnavailable(str(e))

        subjects = []
        try:
            for face in faces:
                subjects.append(DetectedSubject(_bbox(face), float(face.get('score', 0.9)), 'face'))
            for obj in objects:
                subjects.append(DetectedSubject(_bbox(obj), float(obj.get('score', 0.0)),
                                                'object', obj.get('class')))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise DetectionUnavailable(f"Malformed detector output: {e}")
        return subjects


def _bbox(hit: dict) -> Tuple[float, float, float, float]:
    x, y, w, h = hit['bbox']
    return float(x), float(y), float(w), float(h)
