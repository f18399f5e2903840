"""
Batch orchestrator.

Crosses a set of images with a set of presets and runs the resulting N x M
jobs on a bounded offload pool. Jobs wait in a FIFO queue; whenever any job
reaches a terminal state the next one is dispatched straight away. A failing
job is recorded and never aborts the batch, and each job is attempted exactly
once.
"""

import math
import time
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Deque, Dict, List, Optional, Sequence, Tuple

from .errors import ProcessingError
from .geometry import centered_crop
from .offload import OffloadPool, OffloadTask
from .pipeline import CropSpec, ImageAsset, OperationSpec, PipelineRequest, PipelineResult
from .presets import Preset
from .smart_crop import SmartCropper
from ..utils.config import Config
from ..utils.logging import get_logger, MetricsLogger
from ..utils.telemetry import TelemetryObserver, emit

logger = get_logger(__name__)

ProgressCallback = Callable[[int, int, str], None]


class JobStatus(Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED)


@dataclass
class BatchJob:
    """One (image, preset) pairing."""

    job_id: int
    asset: ImageAsset
    preset: Preset
    status: JobStatus = JobStatus.QUEUED
    result: Optional[PipelineResult] = None
    duration_ms: float = 0.0

    @property
    def label(self) -> str:
        return f"{self.asset.filename} [{self.preset.preset_id}]"

    @property
    def error_message(self) -> str:
        if self.result is not None and self.result.error is not None:
            return str(self.result.error)
        if self.status == JobStatus.CANCELLED:
            return "Cancelled before dispatch"
        return ""


@dataclass
class BatchProgress:
    """Completed-vs-total counter; ``completed`` only ever grows."""

    total: int
    completed: int = 0
    statuses: Dict[int, JobStatus] = field(default_factory=dict)
    message: str = ""

    @property
    def percentage(self) -> float:
        return 100.0 * self.completed / self.total if self.total else 100.0

    def mark(self, job_id: int, status: JobStatus) -> None:
        previous = self.statuses.get(job_id)
        if previous is not None and previous.terminal:
            raise ValueError(f"Job {job_id} already finished as {previous.value}")
        self.statuses[job_id] = status
        if status.terminal:
            self.completed += 1


@dataclass
class BatchReport:
    """Final outcome of a batch run."""

    jobs: List[BatchJob]
    progress: BatchProgress
    peak_concurrency: int = 0
    elapsed_s: float = 0.0
    was_cancelled: bool = False

    @property
    def succeeded(self) -> List[BatchJob]:
        return [job for job in self.jobs if job.status == JobStatus.SUCCEEDED]

    @property
    def failed(self) -> List[BatchJob]:
        return [job for job in self.jobs if job.status == JobStatus.FAILED]

    @property
    def cancelled(self) -> List[BatchJob]:
        return [job for job in self.jobs if job.status == JobStatus.CANCELLED]

    def error_lines(self) -> List[str]:
        return [f"{job.label}: {job.error_message}" for job in self.failed]

    def summary(self) -> str:
        text = f"Processed {len(self.jobs)} jobs: {len(self.succeeded)} succeeded, {len(self.failed)} failed"
        if self.cancelled:
            text += f", {len(self.cancelled)} cancelled"
        return text + f" in {self.elapsed_s:.2f}s"


class BatchOrchestrator:
    """
    Schedules image x preset jobs on an offload pool.

    Only the thread calling ``run`` touches the job queue and the pool; the
    cancellation flag may be set from anywhere.
    """

    def __init__(self,
                 config: Optional[Config] = None,
                 pool: Optional[OffloadPool] = None,
                 cropper: Optional[SmartCropper] = None,
                 telemetry: Optional[TelemetryObserver] = None,
                 progress_callback: Optional[ProgressCallback] = None):
        """
        Args:
            config: Configuration object
            pool: Offload pool to use; one is created per run if None
            cropper: Smart crop heuristic for presets with crop_mode='smart'
            telemetry: Fire-and-forget observer
            progress_callback: ``callback(completed, total, message)``
        """
        self.config = config or Config()
        self.pool = pool
        self.cropper = cropper or SmartCropper(config=self.config)
        self.telemetry = telemetry
        self.progress_callback = progress_callback
        self.metrics_logger = MetricsLogger(logger)
        self._cancelled = False
        self._in_flight: Dict[str, BatchJob] = {}
        self._crop_cache: Dict[Tuple[str, str, Tuple[int, int]], CropSpec] = {}

    def cancel(self) -> None:
        """Stop dispatching queued jobs; running jobs finish normally."""
        self._cancelled = True
        logger.info("Batch cancellation requested")

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @staticmethod
    def create_jobs(assets: Sequence[ImageAsset], presets: Sequence[Preset]) -> List[BatchJob]:
        jobs = []
        for asset in assets:
            for preset in presets:
                jobs.append(BatchJob(len(jobs), asset, preset))
        return jobs

    def run(self, assets: Sequence[ImageAsset], presets: Sequence[Preset]) -> BatchReport:
        """
        Process every asset with every preset.

        Args:
            assets: Source images
            presets: Output presets

        Returns:
            BatchReport separating succeeded, failed and cancelled jobs
        """
        start_time = time.time()
        self._cancelled = False
        self._in_flight.clear()
        self._crop_cache.clear()

        jobs = self.create_jobs(assets, presets)
        progress = BatchProgress(total=len(jobs))
        for job in jobs:
            progress.mark(job.job_id, JobStatus.QUEUED)
        queue: Deque[BatchJob] = deque(jobs)
        remaining = Counter(id(job.asset) for job in jobs)

        logger.info(f"Starting batch of {len(jobs)} jobs "
                    f"({len(assets)} images x {len(presets)} presets)")
        self._notify(progress, f"Queued {len(jobs)} jobs")

        pool = self.pool
        owns_pool = pool is None
        if owns_pool:
            pool = OffloadPool(self.config, on_progress=self._relay_progress)
        elif pool.on_progress is None:
            pool.on_progress = self._relay_progress

        try:
            if jobs:
                pool.start()

            while queue or self._in_flight:
                while queue and not self._cancelled and pool.idle_slots() > 0:
                    self._dispatch(queue.popleft(), pool, progress, remaining)

                if not self._in_flight:
                    if queue and not self._cancelled:
                        continue
                    break

                for task in pool.wait_any():
                    job = self._in_flight.pop(task.correlation_id, None)
                    if job is not None:
                        self._complete(job, task, progress, remaining)

            while queue:
                job = queue.popleft()
                job.status = JobStatus.CANCELLED
                self._finish_job(job, progress, remaining, "Cancelled")
        finally:
            if owns_pool:
                pool.shutdown()

        report = BatchReport(
            jobs=jobs,
            progress=progress,
            peak_concurrency=pool.peak_in_flight,
            elapsed_s=time.time() - start_time,
            was_cancelled=self._cancelled,
        )

        if report.elapsed_s > 0 and report.succeeded:
            self.metrics_logger.log_performance("images_per_second", len(report.succeeded) / report.elapsed_s)
        logger.info(report.summary())
        for line in report.error_lines():
            logger.warning(f"Failed: {line}")
        return report

    def _dispatch(self, job: BatchJob, pool: OffloadPool, progress: BatchProgress, remaining: Counter) -> None:
        try:
            operations = self._prepare_operations(job)
            request = PipelineRequest(job.asset, operations, job.preset.output_format, job.preset.quality)
            task = pool.submit(request)
        except ProcessingError as e:
            job.result = PipelineResult.failure(e, 'prepare', job.asset.size_bytes)
            job.status = JobStatus.FAILED
            self._finish_job(job, progress, remaining, f"Failed {job.label}")
            return
        except Exception as e:
            logger.error(f"Could not dispatch {job.label}: {e}")
            job.result = PipelineResult.failure(ProcessingError(str(e)), 'prepare', job.asset.size_bytes)
            job.status = JobStatus.FAILED
            self._finish_job(job, progress, remaining, f"Failed {job.label}")
            return

        if task.done():
            self._complete(job, task, progress, remaining)
            return

        job.status = JobStatus.PROCESSING
        progress.mark(job.job_id, JobStatus.PROCESSING)
        self._in_flight[task.correlation_id] = job
        logger.debug(f"Dispatched {job.label} to slot {task.slot}")

    def _prepare_operations(self, job: BatchJob) -> List[OperationSpec]:
        """Preset operations, preceded by a computed crop when the preset asks for one."""
        preset = job.preset
        operations = list(preset.operations)
        target = preset.target_size
        if preset.crop_mode == 'none' or target is None:
            return operations

        divisor = math.gcd(*target)
        key = (job.asset.asset_id, preset.crop_mode, (target[0] // divisor, target[1] // divisor))
        if key not in self._crop_cache:
            raster = job.asset.decode(max_bytes=self.config.max_input_bytes)
            if preset.crop_mode == 'smart':
                area = self.cropper.smart_crop(raster, target).crop_area
            else:
                area = centered_crop(raster.width, raster.height, target)
            self._crop_cache[key] = CropSpec(area, maintain_aspect_ratio=True)

        return [self._crop_cache[key]] + operations

    def _complete(self, job: BatchJob, task: OffloadTask, progress: BatchProgress, remaining: Counter) -> None:
        job.result = task.result
        job.status = JobStatus.SUCCEEDED if task.result.success else JobStatus.FAILED
        if task.dispatched_at and task.finished_at:
            job.duration_ms = (task.finished_at - task.dispatched_at) * 1000

        verb = "Finished" if job.status == JobStatus.SUCCEEDED else "Failed"
        self._finish_job(job, progress, remaining, f"{verb} {job.label}")

    def _finish_job(self, job: BatchJob, progress: BatchProgress, remaining: Counter, message: str) -> None:
        progress.mark(job.job_id, job.status)
        self.metrics_logger.log_operation(
            "batch_job",
            job.duration_ms,
            success=job.status == JobStatus.SUCCEEDED,
            details={'job_id': job.job_id, 'preset': job.preset.preset_id, 'error': job.error_message or None},
        )

        remaining[id(job.asset)] -= 1
        if remaining[id(job.asset)] == 0:
            job.asset.release()

        self._notify(progress, f"{message} ({progress.completed}/{progress.total})")

    def _notify(self, progress: BatchProgress, message: str) -> None:
        progress.message = message
        emit(self.telemetry, 'batch', progress.percentage, message)

        if self.progress_callback is not None:
            try:
                self.progress_callback(progress.completed, progress.total, message)
            except Exception as e:
                logger.warning(f"Progress callback failed: {e}")

    def _relay_progress(self, task: OffloadTask, percentage: float, message: str) -> None:
        job = self._in_flight.get(task.correlation_id)
        label = job.label if job is not None else task.correlation_id[:8]
        emit(self.telemetry, 'job', percentage, f"{label}: {message}")
