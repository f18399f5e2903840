"""
Unit tests for the subject-aware crop heuristic.

Detectors are stubbed; no detection backend is required.
"""

import pytest
from pathlib import Path
import sys
from PIL import Image

# Add package root to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from presetforge.core.geometry import CropArea, centered_crop
from presetforge.core.smart_crop import (
    FALLBACK_CONFIDENCE,
    DetectedSubject,
    SmartCropper,
    SubjectDetector,
)
from presetforge.utils.config import Config


class StubDetector(SubjectDetector):
    """Returns canned detections and counts calls."""

    def __init__(self, faces=None, objects=None):
        self.faces = faces or []
        self.objects = objects or []
        self.calls = 0

    def detect_faces(self, raster):
        self.calls += 1
        return self.faces

    def detect_objects(self, raster):
        return self.objects


class BrokenDetector(SubjectDetector):
    def detect_faces(self, raster):
        raise RuntimeError("model weights missing")

    def detect_objects(self, raster):
        return []


class TestFallback:
    """Test the centred fallback."""

    @pytest.mark.parametrize("size,aspect", [
        ((1200, 800), (1, 1)),
        ((800, 1200), (16, 9)),
        ((1000, 1000), (4, 5)),
        ((640, 480), None),
    ])
    def test_no_subjects_matches_centered_crop(self, size, aspect):
        cropper = SmartCropper(StubDetector())

        result = cropper.smart_crop(Image.new('RGB', size), aspect)

        assert result.crop_area == centered_crop(size[0], size[1], aspect)
        assert result.confidence == FALLBACK_CONFIDENCE
        assert result.used_fallback

    def test_detector_failure_is_absorbed(self):
        cropper = SmartCropper(BrokenDetector())

        result = cropper.smart_crop(Image.new('RGB', (300, 200)), (1, 1))

        assert result.crop_area == centered_crop(300, 200, (1, 1))
        assert result.detected_subjects == []

    def test_malformed_detections_are_absorbed(self):
        cropper = SmartCropper(StubDetector(faces=[{'box': [1, 2, 3, 4]}]))

        result = cropper.smart_crop(Image.new('RGB', (300, 200)))

        assert result.used_fallback

    def test_zero_area_subjects_ignored(self):
        detector = StubDetector(objects=[{'bbox': [10, 10, 0, 50], 'class': 'person', 'score': 0.99}])
        cropper = SmartCropper(detector)

        result = cropper.smart_crop(Image.new('RGB', (300, 200)), (1, 1))

        assert result.confidence == FALLBACK_CONFIDENCE
        assert len(result.detected_subjects) == 1


class TestSubjectCrop:
    """Test crops around detected subjects."""

    def test_padded_box_centred_on_subject(self):
        detector = StubDetector(faces=[{'bbox': [400, 300, 100, 100], 'score': 0.8}])
        cropper = SmartCropper(detector, Config(smart_crop_padding=0.2))

        result = cropper.smart_crop(Image.new('RGB', (1000, 1000)))

        # 100 * (1 + 2 * 0.2) = 140, centred on (450, 350)
        assert result.crop_area == CropArea(380, 280, 140, 140)
        assert result.confidence == pytest.approx(0.8)
        assert not result.used_fallback

    def test_highest_score_wins(self):
        detector = StubDetector(
            faces=[{'bbox': [0, 0, 50, 50], 'score': 0.6}],
            objects=[{'bbox': [500, 500, 50, 50], 'class': 'dog', 'score': 0.9}],
        )
        cropper = SmartCropper(detector)

        result = cropper.smart_crop(Image.new('RGB', (1000, 1000)))

        center_x = result.crop_area.x + result.crop_area.width / 2
        assert center_x == pytest.approx(525, abs=1)
        assert result.confidence == pytest.approx(0.9)

    def test_ties_keep_first(self):
        detector = StubDetector(faces=[
            {'bbox': [0, 0, 50, 50], 'score': 0.7},
            {'bbox': [800, 800, 50, 50], 'score': 0.7},
        ])
        cropper = SmartCropper(detector)

        result = cropper.smart_crop(Image.new('RGB', (1000, 1000)))

        assert result.crop_area.x == 0
        assert result.crop_area.y == 0

    def test_box_grown_to_aspect(self):
        detector = StubDetector(faces=[{'bbox': [450, 450, 100, 100], 'score': 0.9}])
        cropper = SmartCropper(detector, Config(smart_crop_padding=0.0))

        result = cropper.smart_crop(Image.new('RGB', (1000, 1000)), (2, 1))

        assert (result.crop_area.width, result.crop_area.height) == (200, 100)

    def test_clamped_by_shifting_not_shrinking(self):
        detector = StubDetector(faces=[{'bbox': [0, 0, 100, 100], 'score': 0.9}])
        cropper = SmartCropper(detector, Config(smart_crop_padding=0.2))

        result = cropper.smart_crop(Image.new('RGB', (500, 500)))

        assert result.crop_area == CropArea(0, 0, 140, 140)
        assert result.crop_area.within(500, 500)

    def test_oversize_box_scaled_into_raster(self):
        detector = StubDetector(faces=[{'bbox': [0, 0, 300, 200], 'score': 0.9}])
        cropper = SmartCropper(detector)

        result = cropper.smart_crop(Image.new('RGB', (320, 240)), (1, 1))

        area = result.crop_area
        assert area.within(320, 240)
        assert area.width == area.height == 240

    def test_one_detection_pass_per_call(self):
        detector = StubDetector(faces=[{'bbox': [10, 10, 20, 20], 'score': 0.5}])
        cropper = SmartCropper(detector)

        cropper.smart_crop(Image.new('RGB', (100, 100)), (1, 1))

        assert detector.calls == 1


class TestDetectedSubject:
    def test_center_and_validity(self):
        subject = DetectedSubject((10, 20, 30, 40), 0.5)

        assert subject.center == (25, 40)
        assert subject.is_valid
        assert not DetectedSubject((0, 0, -1, 5), 0.5).is_valid
