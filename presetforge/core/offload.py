"""
Offload layer: runs pipeline work on isolated worker processes.

Each worker unit is a separate process that shares no memory with the
coordinator; the two talk over one duplex pipe using plain-dict messages
tagged with a correlation id. The coordinator is single threaded and sleeps in
``multiprocessing.connection.wait`` until a reply arrives or the nearest task
deadline passes. A unit that misses its deadline (or dies) is terminated and a
fresh unit takes its slot; the other slots are never touched.

Task lifecycle: IDLE -> DISPATCHED -> PROCESSING -> COMPLETED | FAILED.
"""

import multiprocessing
import time
import uuid
from collections import deque
from enum import Enum
from multiprocessing.connection import wait as wait_for_ready
from typing import Any, Callable, Deque, Dict, List, Optional

from .errors import (
    ProcessingError,
    OffloadTimeoutError,
    UnknownOperationError,
    WorkerCrashedError,
    error_from_dict,
)
from .pipeline import ImagePipeline, PipelineRequest, PipelineResult
from . import codec
from ..utils.config import Config
from ..utils.logging import get_logger

logger = get_logger(__name__)

Handler = Callable[[ImagePipeline, Dict[str, Any], Callable[[float, str], None]], Dict[str, Any]]
ProgressListener = Callable[['OffloadTask', float, str], None]


class TaskState(Enum):
    IDLE = "idle"
    DISPATCHED = "dispatched"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


def handle_message(pipeline: ImagePipeline,
                   message: Dict[str, Any],
                   progress: Callable[[float, str], None]) -> Dict[str, Any]:
    """
    Default worker handler.

    Operations:
        pipeline: decode ``payload`` and run the stages in ``options``
        probe: decode only and report dimensions

    Returns:
        ``PipelineResult.to_dict()``
    """
    operation = message.get('operation')
    options = message.get('options') or {}
    payload = message.get('payload')

    if operation == 'pipeline':
        request = PipelineRequest.from_options(payload, options)
        result = pipeline.execute(request, progress)
        request.asset.release()
        return result.to_dict()

    if operation == 'probe':
        img = codec.decode(payload, max_bytes=pipeline.config.max_input_bytes)
        result = PipelineResult(success=True, width=img.width, height=img.height,
                                format=(img.format or '').lower() or None,
                                original_size=len(payload))
        img.close()
        return result.to_dict()

    raise UnknownOperationError(f"Unsupported worker operation: {operation}")


def worker_loop(conn, config_dict: Dict[str, Any], handler: Handler = handle_message) -> None:
    """
    Entry point of a worker unit.

    Replies to every request with an ``ack``, zero or more ``progress``
    events and exactly one ``result`` or ``error``. A ``None`` message stops
    the loop.
    """
    pipeline = ImagePipeline(Config(**config_dict))

    while True:
        try:
            message = conn.recv()
        except (EOFError, OSError):
            break
        if message is None:
            break

        correlation_id = message.get('correlation_id')
        conn.send({'correlation_id': correlation_id, 'type': 'ack'})

        def progress(percentage: float, text: str = "") -> None:
            conn.send({'correlation_id': correlation_id, 'type': 'progress',
                       'progress': percentage, 'message': text})

        try:
            result = handler(pipeline, message, progress)
            reply = {'correlation_id': correlation_id, 'type': 'result', 'result': result}
        except ProcessingError as e:
            reply = {'correlation_id': correlation_id, 'type': 'error', 'error': e.to_dict()}
        except Exception as e:
            reply = {'correlation_id': correlation_id, 'type': 'error',
                     'error': ProcessingError(f"{type(e).__name__}: {e}").to_dict()}
        conn.send(reply)

    conn.close()


class OffloadTask:
    """Future-like handle for one unit of offloaded work."""

    def __init__(self, pool: 'OffloadPool', operation: str, payload: Any, options: Dict[str, Any]):
        self.pool = pool
        self.correlation_id = uuid.uuid4().hex
        self.operation = operation
        self.payload = payload
        self.options = options
        self.state = TaskState.IDLE
        self.progress = 0.0
        self.result: Optional[PipelineResult] = None
        self.slot: Optional[int] = None
        self.deadline: Optional[float] = None
        self.dispatched_at: Optional[float] = None
        self.finished_at: Optional[float] = None

    def done(self) -> bool:
        return self.state in (TaskState.COMPLETED, TaskState.FAILED)

    def wait(self, timeout: Optional[float] = None) -> PipelineResult:
        """
        Drive the pool until this task reaches a terminal state.

        Raises:
            TimeoutError: If ``timeout`` seconds pass first; the task keeps running
        """
        end = None if timeout is None else time.monotonic() + timeout
        while not self.done():
            if end is None:
                self.pool.poll()
                continue
            remaining = end - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(f"Task {self.correlation_id[:8]} still running after {timeout:.1f}s")
            self.pool.poll(remaining)
        return self.result

    def message(self) -> Dict[str, Any]:
        return {'correlation_id': self.correlation_id, 'operation': self.operation,
                'payload': self.payload, 'options': self.options}

    def __repr__(self) -> str:
        return f"OffloadTask({self.correlation_id[:8]}, {self.operation}, {self.state.value})"


class WorkerUnit:
    """One worker process and the coordinator's end of its pipe."""

    def __init__(self, slot: int, context, config: Config, handler: Handler):
        self.slot = slot
        self.conn, child_conn = context.Pipe(duplex=True)
        self.process = context.Process(
            target=worker_loop,
            args=(child_conn, config.to_dict(), handler),
            name=f"presetforge-worker-{slot}",
            daemon=True,
        )
        self.process.start()
        child_conn.close()
        self.task: Optional[OffloadTask] = None

    @property
    def busy(self) -> bool:
        return self.task is not None

    def send(self, message: Dict[str, Any]) -> None:
        self.conn.send(message)

    def stop(self, timeout: float = 2.0) -> None:
        """Ask the process to exit, terminating it if it does not."""
        try:
            self.conn.send(None)
        except (OSError, ValueError):
            pass
        self.process.join(timeout)
        if self.process.is_alive():
            self.retire()
        else:
            self.conn.close()

    def retire(self) -> None:
        """Kill the process immediately."""
        self.process.terminate()
        self.process.join(1.0)
        if self.process.is_alive():
            self.process.kill()
            self.process.join(1.0)
        self.conn.close()


class OffloadPool:
    """
    Fixed-size pool of worker units driven by a single coordinator.

    All bookkeeping (slot table, pending queue, task table) is touched only by
    the thread that calls ``submit`` / ``poll``; no locks are needed.
    """

    def __init__(self,
                 config: Optional[Config] = None,
                 size: Optional[int] = None,
                 handler: Handler = handle_message,
                 on_progress: Optional[ProgressListener] = None):
        """
        Args:
            config: Configuration (pool size, timeout, start method)
            size: Override for ``config.pool_size``
            handler: Top-level, picklable worker handler
            on_progress: Optional ``listener(task, percentage, message)``
        """
        self.config = config or Config()
        self.size = size or self.config.pool_size
        self.timeout = self.config.job_timeout_s
        self.handler = handler
        self.on_progress = on_progress
        self._context = multiprocessing.get_context(self.config.start_method)
        self._units: List[Optional[WorkerUnit]] = []
        self._pending: Deque[OffloadTask] = deque()
        self._tasks: Dict[str, OffloadTask] = {}
        self.replacements = 0
        self.peak_in_flight = 0

    def __enter__(self) -> 'OffloadPool':
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    @property
    def started(self) -> bool:
        return bool(self._units)

    def start(self) -> None:
        if self.started:
            return
        self._units = [self._spawn(slot) for slot in range(self.size)]
        logger.info(f"Offload pool started with {self.size} worker units "
                    f"(timeout {self.timeout:.1f}s, {self.config.start_method})")

    def submit(self, request: PipelineRequest) -> OffloadTask:
        """Queue a pipeline request; it is dispatched as soon as a slot is idle."""
        return self.submit_operation('pipeline', request.asset.data, request.to_options())

    def submit_operation(self, operation: str, payload: Any, options: Optional[Dict[str, Any]] = None) -> OffloadTask:
        self.start()
        task = OffloadTask(self, operation, payload, options or {})
        self._tasks[task.correlation_id] = task
        self._pending.append(task)
        self._dispatch_pending()
        return task

    def idle_slots(self) -> int:
        return sum(1 for unit in self._units if not unit.busy) - len(self._pending)

    def in_flight(self) -> List[OffloadTask]:
        return [unit.task for unit in self._units if unit.busy]

    def processing_count(self) -> int:
        return sum(1 for task in self.in_flight() if task.state == TaskState.PROCESSING)

    def has_work(self) -> bool:
        return bool(self._pending) or any(unit.busy for unit in self._units)

    def poll(self, timeout: Optional[float] = None) -> List[OffloadTask]:
        """
        Wait for worker messages and process them.

        Sleeps until a message arrives, a unit dies, the nearest task
        deadline passes or ``timeout`` elapses, whichever comes first.

        Returns:
            Tasks that reached a terminal state during this call
        """
        finished: List[OffloadTask] = []
        busy = [unit for unit in self._units if unit.busy]
        if not busy:
            return finished

        now = time.monotonic()
        wait_s = max(0.0, min(unit.task.deadline for unit in busy) - now)
        if timeout is not None:
            wait_s = min(wait_s, timeout)

        by_handle = {}
        for unit in busy:
            by_handle[unit.conn] = unit
            by_handle[unit.process.sentinel] = unit
        ready = wait_for_ready(list(by_handle), timeout=wait_s)

        for unit in {by_handle[handle] for handle in ready}:
            self._drain(unit, finished)

        now = time.monotonic()
        for unit in self._units:
            if unit.busy and now >= unit.task.deadline:
                task = unit.task
                logger.warning(f"Task {task.correlation_id[:8]} timed out on slot {unit.slot}")
                self._finish(unit, PipelineResult.failure(
                    OffloadTimeoutError(f"No reply within {self.timeout:.1f}s"), 'offload'), finished)
                self._replace(unit.slot)

        self._dispatch_pending(finished)
        return finished

    def wait_any(self) -> List[OffloadTask]:
        """Block until at least one in-flight task finishes."""
        while self.has_work():
            finished = self.poll()
            if finished:
                return finished
        return []

    def run(self, request: PipelineRequest) -> PipelineResult:
        return self.submit(request).wait()

    def shutdown(self) -> None:
        """Stop every unit and fail anything still queued or running."""
        for task in list(self._pending):
            task.state = TaskState.FAILED
            task.result = PipelineResult.failure(ProcessingError("Offload pool shut down"), 'offload')
        self._pending.clear()

        for unit in self._units:
            if unit.busy:
                unit.task.state = TaskState.FAILED
                unit.task.result = PipelineResult.failure(ProcessingError("Offload pool shut down"), 'offload')
                unit.task = None
                unit.retire()
            else:
                unit.stop()
        self._units = []
        self._tasks.clear()
        logger.debug("Offload pool shut down")

    def _spawn(self, slot: int) -> WorkerUnit:
        return WorkerUnit(slot, self._context, self.config, self.handler)

    def _replace(self, slot: int) -> None:
        self._units[slot].retire()
        self._units[slot] = self._spawn(slot)
        self.replacements += 1
        logger.info(f"Replaced worker unit in slot {slot}")

    def _dispatch_pending(self, finished: Optional[List[OffloadTask]] = None) -> None:
        for unit in self._units:
            if not self._pending:
                break
            if unit.busy:
                continue
            task = self._pending.popleft()
            task.slot = unit.slot
            task.dispatched_at = time.monotonic()
            task.deadline = task.dispatched_at + self.timeout
            unit.task = task
            try:
                unit.send(task.message())
            except (OSError, ValueError) as e:
                unit.task = None
                task.state = TaskState.FAILED
                task.result = PipelineResult.failure(WorkerCrashedError(f"Dispatch failed: {e}"), 'offload')
                task.finished_at = time.monotonic()
                self._tasks.pop(task.correlation_id, None)
                if finished is not None:
                    finished.append(task)
                self._replace(unit.slot)
                continue
            task.state = TaskState.DISPATCHED

        self.peak_in_flight = max(self.peak_in_flight, sum(1 for unit in self._units if unit.busy))

    def _drain(self, unit: WorkerUnit, finished: List[OffloadTask]) -> None:
        try:
            while unit.busy and unit.conn.poll():
                self._route(unit, unit.conn.recv(), finished)
        except (EOFError, OSError):
            pass

        if unit.busy and not unit.process.is_alive():
            task = unit.task
            logger.error(f"Worker unit in slot {unit.slot} exited (code {unit.process.exitcode}) "
                         f"while running task {task.correlation_id[:8]}")
            self._finish(unit, PipelineResult.failure(
                WorkerCrashedError(f"Worker exited with code {unit.process.exitcode}"), 'offload'), finished)
            self._replace(unit.slot)

    def _route(self, unit: WorkerUnit, message: Dict[str, Any], finished: List[OffloadTask]) -> None:
        task = self._tasks.get(message.get('correlation_id'))
        if task is None or task is not unit.task:
            logger.debug(f"Dropping message for unknown task {message.get('correlation_id')}")
            return

        kind = message.get('type')
        if kind == 'ack':
            task.state = TaskState.PROCESSING
        elif kind == 'progress':
            task.state = TaskState.PROCESSING
            task.progress = float(message.get('progress', 0.0))
            if self.on_progress is not None:
                self.on_progress(task, task.progress, message.get('message', ''))
        elif kind == 'result':
            self._finish(unit, PipelineResult.from_dict(message['result']), finished)
        elif kind == 'error':
            self._finish(unit, PipelineResult.failure(error_from_dict(message['error']), 'offload'), finished)
        else:
            logger.warning(f"Unknown message type from slot {unit.slot}: {kind}")

    def _finish(self, unit: WorkerUnit, result: PipelineResult, finished: List[OffloadTask]) -> None:
        task = unit.task
        unit.task = None
        task.result = result
        task.state = TaskState.COMPLETED if result.success else TaskState.FAILED
        task.progress = 100.0 if result.success else task.progress
        task.finished_at = time.monotonic()
        task.payload = None
        self._tasks.pop(task.correlation_id, None)
        finished.append(task)


def run_pipeline_offloaded(request: PipelineRequest, config: Optional[Config] = None) -> PipelineResult:
    """Run a single request on a one-unit pool."""
    with OffloadPool(config, size=1) as pool:
        return pool.run(request)
