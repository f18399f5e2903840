"""
Fire-and-forget telemetry side channel.

Observers receive ``{phase, percentage, message}`` events from the pipeline
and the batch orchestrator. An observer that raises is logged and otherwise
ignored; it can never change a pipeline or batch outcome.
"""

from dataclasses import dataclass
from typing import Callable, Optional

from .logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class TelemetryEvent:
    """One progress notification."""

    phase: str
    percentage: float
    message: str = ""


class TelemetryObserver:
    """Base observer. Subclasses override ``on_event``."""

    def on_event(self, event: TelemetryEvent) -> None:
        raise NotImplementedError


class NullTelemetry(TelemetryObserver):
    """Discards every event."""

    def on_event(self, event: TelemetryEvent) -> None:
        pass


class LoggingTelemetry(TelemetryObserver):
    """Writes events to the debug log."""

    def on_event(self, event: TelemetryEvent) -> None:
        logger.debug(f"[{event.phase}] {event.percentage:.0f}% {event.message}")


class CallbackTelemetry(TelemetryObserver):
    """Adapts a plain ``callback(event)`` callable."""

    def __init__(self, callback: Callable[[TelemetryEvent], None]):
        self.callback = callback

    def on_event(self, event: TelemetryEvent) -> None:
        self.callback(event)


def emit(observer: Optional[TelemetryObserver],
         phase: str,
         percentage: float,
         message: str = "") -> None:
    """
    Deliver an event without letting observer failures propagate.

    Args:
        observer: Target observer, or None for no-op
        phase: Phase name (e.g. 'batch', 'job', 'archive')
        percentage: Progress in [0, 100]
        message: Human-readable message
    """
    if observer is None:
        return

    event = TelemetryEvent(phase, max(0.0, min(100.0, float(percentage))), message)
    try:
        observer.on_event(event)
    except Exception as e:
        logger.warning(f"Telemetry observer failed on {phase} event: {e}")
