"""
Unit tests for the batch orchestrator.

Batches run on real worker processes with small in-memory images.
"""

import pytest
import io
from pathlib import Path
import sys
from PIL import Image

# Add package root to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from presetforge.core.batch import BatchOrchestrator, BatchProgress, JobStatus
from presetforge.core.errors import CropOutOfBoundsError, DecodeError
from presetforge.core.geometry import CropArea
from presetforge.core.pipeline import CropSpec, ImageAsset
from presetforge.core.presets import Preset, size_preset
from presetforge.core.smart_crop import SmartCropper, SubjectDetector
from presetforge.utils.config import Config
from presetforge.utils.telemetry import CallbackTelemetry


def png_asset(name: str, width: int, height: int) -> ImageAsset:
    buffer = io.BytesIO()
    Image.new('RGB', (width, height), (90, 160, 30)).save(buffer, format='PNG')
    return ImageAsset(name, buffer.getvalue(), 'image/png')


class CountingDetector(SubjectDetector):
    def __init__(self):
        self.calls = 0

    def detect_faces(self, raster):
        self.calls += 1
        return [{'bbox': [10, 10, 40, 40], 'score': 0.9}]

    def detect_objects(self, raster):
        return []


@pytest.fixture
def config():
    return Config(pool_size=2, job_timeout_s=30.0)


class TestBatchProgress:
    """Test the progress counter."""

    def test_terminal_once(self):
        progress = BatchProgress(total=2)
        progress.mark(0, JobStatus.QUEUED)
        progress.mark(0, JobStatus.PROCESSING)
        progress.mark(0, JobStatus.SUCCEEDED)

        assert progress.completed == 1
        with pytest.raises(ValueError):
            progress.mark(0, JobStatus.FAILED)

    def test_percentage(self):
        progress = BatchProgress(total=4)
        progress.mark(1, JobStatus.FAILED)

        assert progress.percentage == 25.0
        assert BatchProgress(total=0).percentage == 100.0


class TestJobCreation:
    def test_cross_product(self):
        assets = [png_asset("a.png", 10, 10), png_asset("b.png", 12, 12)]
        presets = [size_preset(5, 5), size_preset(8, 8), size_preset(3, 3)]

        jobs = BatchOrchestrator.create_jobs(assets, presets)

        assert len(jobs) == 6
        assert [job.job_id for job in jobs] == list(range(6))
        assert all(job.status == JobStatus.QUEUED for job in jobs)
        assert {(job.asset.filename, job.preset.preset_id) for job in jobs} == {
            (a.filename, p.preset_id) for a in assets for p in presets}


class TestBatchOrchestrator:
    """Test batch runs end to end."""

    def test_square_preset_scenario(self, config):
        assets = [
            png_asset("large.png", 4000, 3000),
            png_asset("square.png", 1000, 1000),
            png_asset("wide.png", 1200, 800),
        ]

        report = BatchOrchestrator(config).run(assets, [size_preset(1080, 1080)])

        assert len(report.succeeded) == 3
        assert report.failed == []
        assert report.progress.completed == 3
        assert all((job.result.width, job.result.height) == (1080, 1080) for job in report.succeeded)
        assert 1 <= report.peak_concurrency <= 2

    def test_partial_failures_reported(self, config):
        good = [png_asset("one.png", 60, 40), png_asset("two.png", 40, 60)]
        bad = ImageAsset("broken.png", b"this is not an image", 'image/png')
        presets = [size_preset(20, 20), size_preset(10, 30)]

        report = BatchOrchestrator(config).run(good + [bad], presets)

        assert len(report.jobs) == 6
        assert len(report.succeeded) == 4
        assert len(report.failed) == 2
        assert report.progress.completed == 6
        assert all(isinstance(job.result.error, DecodeError) for job in report.failed)
        assert all("broken.png" in line for line in report.error_lines())

    def test_failure_inside_pipeline(self, config):
        asset = png_asset("small.png", 50, 50)
        preset = Preset("bad-crop", "Bad crop", operations=[CropSpec(CropArea(-10, 0, 100, 100))])

        report = BatchOrchestrator(config).run([asset], [preset, size_preset(10, 10)])

        assert len(report.succeeded) == 1
        assert len(report.failed) == 1
        failed = report.failed[0]
        assert isinstance(failed.result.error, CropOutOfBoundsError)
        assert failed.result.data is None

    def test_center_preset_for_undecodable_asset(self, config):
        bad = ImageAsset("broken.jpg", b"\xff\xd8 truncated", 'image/jpeg')
        preset = size_preset(100, 100, crop_mode="center")

        report = BatchOrchestrator(config).run([bad], [preset])

        assert len(report.failed) == 1
        assert report.failed[0].result.stage == 'prepare'
        assert report.progress.completed == 1

    def test_progress_monotonic_and_complete(self, config):
        assets = [png_asset(f"img{i}.png", 30, 30) for i in range(3)]
        seen = []

        BatchOrchestrator(config, progress_callback=lambda done, total, msg: seen.append((done, total))).run(
            assets, [size_preset(10, 10), size_preset(15, 15)])

        completed = [done for done, _ in seen]
        assert completed == sorted(completed)
        assert seen[-1] == (6, 6)

    def test_cancellation_stops_dispatch(self):
        config = Config(pool_size=1)
        assets = [png_asset(f"img{i}.png", 30, 30) for i in range(4)]

        def on_progress(done, total, msg):
            if done >= 1:
                orchestrator.cancel()

        orchestrator = BatchOrchestrator(config, progress_callback=on_progress)
        report = orchestrator.run(assets, [size_preset(10, 10)])

        assert report.was_cancelled
        assert len(report.succeeded) == 1
        assert len(report.cancelled) == 3
        assert report.progress.completed == 4
        assert "cancelled" in report.summary()

    def test_smart_crop_one_detection_per_aspect(self, config):
        detector = CountingDetector()
        asset = png_asset("portrait.png", 200, 300)
        presets = [
            size_preset(100, 100, preset_id="small-square", crop_mode="smart"),
            size_preset(50, 50, preset_id="tiny-square", crop_mode="smart"),
            size_preset(160, 90, preset_id="wide", crop_mode="smart"),
        ]

        orchestrator = BatchOrchestrator(config, cropper=SmartCropper(detector, config))
        report = orchestrator.run([asset], presets)

        assert len(report.succeeded) == 3
        assert detector.calls == 2
        sizes = sorted((job.result.width, job.result.height) for job in report.succeeded)
        assert sizes == [(50, 50), (100, 100), (160, 90)]
        assert not asset.is_decoded

    def test_identical_assets_both_released(self, config):
        first = png_asset("first.png", 80, 40)
        second = ImageAsset("second.png", first.data, 'image/png')
        second.decode()
        assert first.asset_id == second.asset_id

        report = BatchOrchestrator(config).run([first, second], [size_preset(20, 20, crop_mode="center")])

        assert len(report.succeeded) == 2
        assert not first.is_decoded
        assert not second.is_decoded

    def test_center_crop_keeps_proportions(self, config):
        asset = png_asset("wide.png", 400, 100)
        preset = size_preset(50, 50, crop_mode="center")

        report = BatchOrchestrator(config).run([asset], [preset])

        job = report.succeeded[0]
        assert (job.result.width, job.result.height) == (50, 50)

    def test_failing_telemetry_does_not_affect_outcome(self, config):
        def explode(event):
            raise RuntimeError("observer down")

        orchestrator = BatchOrchestrator(config, telemetry=CallbackTelemetry(explode))
        report = orchestrator.run([png_asset("a.png", 20, 20)], [size_preset(10, 10)])

        assert len(report.succeeded) == 1

    def test_telemetry_phases(self, config):
        events = []
        orchestrator = BatchOrchestrator(config, telemetry=CallbackTelemetry(events.append))

        orchestrator.run([png_asset("a.png", 20, 20)], [size_preset(10, 10)])

        phases = {event.phase for event in events}
        assert 'batch' in phases
        assert 'job' in phases
        assert events[-1].phase == 'batch'
        assert events[-1].percentage == 100.0

    def test_empty_batch(self, config):
        report = BatchOrchestrator(config).run([], [size_preset(10, 10)])

        assert report.jobs == []
        assert report.progress.completed == 0
