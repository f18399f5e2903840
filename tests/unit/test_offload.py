"""
Unit tests for the offload layer.

These tests start real worker processes. Handlers used by the workers live at
module level so they can be pickled under the 'spawn' start method.
"""

import pytest
import io
import os
import time
from pathlib import Path
import sys
from PIL import Image

# Add package root to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from presetforge.core.errors import OffloadTimeoutError, UnknownOperationError, WorkerCrashedError
from presetforge.core.offload import (
    OffloadPool,
    TaskState,
    WorkerUnit,
    handle_message,
    run_pipeline_offloaded,
)
from presetforge.core.pipeline import ImageAsset, PipelineRequest, PipelineResult, ResizeSpec
from presetforge.utils.config import Config


def png_bytes(width: int, height: int) -> bytes:
    buffer = io.BytesIO()
    Image.new('RGB', (width, height), (20, 120, 220)).save(buffer, format='PNG')
    return buffer.getvalue()


def sleepy_handler(pipeline, message, progress):
    """Sleeps for ``options['sleep']`` seconds, then echoes the payload."""
    progress(10.0, "sleeping")
    time.sleep(message['options'].get('sleep', 0))
    return PipelineResult(success=True, data=message['payload'], format='png').to_dict()


def crashing_handler(pipeline, message, progress):
    """Kills its own process when asked to."""
    if message['options'].get('crash'):
        os._exit(3)
    return PipelineResult(success=True, data=message['payload'], format='png').to_dict()


@pytest.fixture
def config():
    return Config(pool_size=2, job_timeout_s=30.0)


class TestHandleMessage:
    """Test the default handler in-process."""

    def test_pipeline_operation(self):
        from presetforge.core.pipeline import ImagePipeline

        request = PipelineRequest(ImageAsset("a.png", png_bytes(40, 20), 'image/png'), [ResizeSpec(width=20)])
        reply = handle_message(ImagePipeline(), {
            'operation': 'pipeline', 'payload': request.asset.data, 'options': request.to_options()},
            lambda pct, msg: None)

        result = PipelineResult.from_dict(reply)
        assert result.success
        assert (result.width, result.height) == (20, 10)

    def test_unknown_operation(self):
        from presetforge.core.pipeline import ImagePipeline

        with pytest.raises(UnknownOperationError):
            handle_message(ImagePipeline(), {'operation': 'blur', 'payload': b"", 'options': {}},
                           lambda pct, msg: None)


class TestOffloadPool:
    """Test pool scheduling with real worker processes."""

    def test_runs_pipeline(self, config):
        request = PipelineRequest(ImageAsset("a.png", png_bytes(100, 50), 'image/png'),
                                  [ResizeSpec(width=10)], output_format='png')

        with OffloadPool(config) as pool:
            result = pool.run(request)

        assert result.success
        assert (result.width, result.height) == (10, 5)
        assert result.data[:4] == b"\x89PNG"

    def test_probe(self, config):
        with OffloadPool(config, size=1) as pool:
            task = pool.submit_operation('probe', png_bytes(33, 44))
            result = task.wait()

        assert result.success
        assert (result.width, result.height) == (33, 44)
        assert result.format == 'png'

    def test_errors_cross_the_boundary(self, config):
        with OffloadPool(config, size=1) as pool:
            unknown = pool.submit_operation('blur', b"x").wait()
            undecodable = pool.run(PipelineRequest(ImageAsset("bad.png", b"not an image"), []))

        assert isinstance(unknown.error, UnknownOperationError)
        assert not undecodable.success
        assert undecodable.stage == 'decode'

    def test_concurrency_bounded_by_pool_size(self, config):
        with OffloadPool(config, handler=sleepy_handler) as pool:
            tasks = [pool.submit_operation('echo', bytes([i]), {'sleep': 0.2}) for i in range(5)]

            assert pool.idle_slots() < 0
            assert len(pool.in_flight()) == 2

            results = [task.wait() for task in tasks]

        assert all(result.success for result in results)
        assert [result.data for result in results] == [bytes([i]) for i in range(5)]
        assert pool.peak_in_flight == 2
        assert len({task.correlation_id for task in tasks}) == 5

    def test_progress_relayed(self, config):
        events = []

        with OffloadPool(config, size=1, handler=sleepy_handler,
                         on_progress=lambda task, pct, msg: events.append((pct, msg))) as pool:
            pool.submit_operation('echo', b"x", {'sleep': 0}).wait()

        assert (10.0, "sleeping") in events

    def test_timeout_replaces_only_that_slot(self, config):
        with OffloadPool(config, handler=sleepy_handler) as pool:
            # warm both units up before tightening the deadline
            warm = [pool.submit_operation('echo', b"w", {'sleep': 0}) for _ in range(2)]
            for task in warm:
                task.wait()

            pool.timeout = 1.0
            slow = pool.submit_operation('echo', b"slow", {'sleep': 30})
            quick = pool.submit_operation('echo', b"quick", {'sleep': 0.1})
            quick_result = quick.wait()
            slow_result = slow.wait()

            assert quick_result.success
            assert slow.state == TaskState.FAILED
            assert isinstance(slow_result.error, OffloadTimeoutError)
            assert pool.replacements == 1

            pool.timeout = 30.0
            again = pool.submit_operation('echo', b"again", {'sleep': 0}).wait()

        assert again.success
        assert again.data == b"again"

    def test_crash_replaces_unit(self, config):
        with OffloadPool(config, handler=crashing_handler) as pool:
            crashed = pool.submit_operation('echo', b"boom", {'crash': True}).wait()
            survivor = pool.submit_operation('echo', b"ok", {}).wait()

        assert isinstance(crashed.error, WorkerCrashedError)
        assert survivor.success
        assert pool.replacements == 1

    def test_wait_with_timeout(self, config):
        with OffloadPool(config, size=1, handler=sleepy_handler) as pool:
            task = pool.submit_operation('echo', b"slow", {'sleep': 5})

            with pytest.raises(TimeoutError):
                task.wait(timeout=0.2)

            assert not task.done()

    def test_failed_dispatch_returned_by_poll(self, config, monkeypatch):
        original_send = WorkerUnit.send

        def send(unit, message):
            if message['payload'] == b"doomed":
                raise OSError("broken pipe")
            original_send(unit, message)

        monkeypatch.setattr(WorkerUnit, 'send', send)

        with OffloadPool(config, size=1, handler=sleepy_handler) as pool:
            first = pool.submit_operation('echo', b"first", {'sleep': 0.2})
            doomed = pool.submit_operation('echo', b"doomed", {})
            assert doomed.state == TaskState.IDLE

            finished = []
            while pool.has_work():
                finished.extend(pool.wait_any())

        assert first in finished
        assert doomed in finished
        assert isinstance(doomed.result.error, WorkerCrashedError)
        assert pool.replacements == 1

    def test_shutdown_fails_queued_work(self, config):
        pool = OffloadPool(config, size=1, handler=sleepy_handler)
        pool.start()
        running = pool.submit_operation('echo', b"1", {'sleep': 5})
        queued = pool.submit_operation('echo', b"2", {'sleep': 0})

        pool.shutdown()

        assert running.state == TaskState.FAILED
        assert queued.state == TaskState.FAILED
        assert not queued.result.success


class TestRunPipelineOffloaded:
    def test_single_request(self):
        request = PipelineRequest(ImageAsset("a.png", png_bytes(60, 60), 'image/png'),
                                  [ResizeSpec(percentage=50)], output_format='jpeg')

        result = run_pipeline_offloaded(request, Config())

        assert result.success
        assert result.format == 'jpeg'
        assert (result.width, result.height) == (30, 30)
