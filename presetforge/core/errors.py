"""
Error taxonomy for the transformation engine.

Every error carries a stable ``code`` so it can cross a process boundary as a
plain dict and be rebuilt on the coordinator side.
"""

from typing import Any, Dict


class ProcessingError(Exception):
    """Base class for all engine errors."""

    code = "ProcessingError"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {'code': self.code, 'message': self.message}

    def __str__(self) -> str:
        return f"{self.code}: {self.message}" if self.message else self.code


class DecodeError(ProcessingError):
    """Input bytes cannot be interpreted as an image."""

    code = "DecodeError"


class InvalidDimensionError(ProcessingError):
    """A resize would produce a non-positive dimension."""

    code = "InvalidDimensionError"


class CropOutOfBoundsError(ProcessingError):
    """A crop rectangle does not lie within the raster."""

    code = "CropOutOfBoundsError"


class OffloadTimeoutError(ProcessingError, TimeoutError):
    """A worker unit produced no terminal event before the deadline."""

    code = "TimeoutError"


class SizeLimitExceeded(ProcessingError):
    """Archive contents exceed the configured ceiling."""

    code = "SizeLimitExceeded"


class DetectionUnavailable(ProcessingError):
    """Subject detection failed; absorbed by the smart crop heuristic."""

    code = "DetectionUnavailable"


class UnknownOperationError(ProcessingError):
    """Unsupported pipeline stage or worker operation."""

    code = "UnknownOperationError"


class InvalidParameterError(ProcessingError):
    """Out-of-range or malformed operation parameter."""

    code = "InvalidParameterError"


class WorkerCrashedError(ProcessingError):
    """A worker unit exited without sending a terminal event."""

    code = "WorkerCrashedError"


class DeliveryError(ProcessingError):
    """One or more outputs could not be handed to the delivery target."""

    code = "DeliveryError"


_ERRORS_BY_CODE = {
    cls.code: cls for cls in (
        ProcessingError,
        DecodeError,
        InvalidDimensionError,
        CropOutOfBoundsError,
        OffloadTimeoutError,
        SizeLimitExceeded,
        DetectionUnavailable,
        UnknownOperationError,
        InvalidParameterError,
        WorkerCrashedError,
        DeliveryError,
    )
}


def error_from_dict(data: Dict[str, Any]) -> ProcessingError:
    """Rebuild an error serialized with ``ProcessingError.to_dict``."""
    cls = _ERRORS_BY_CODE.get(data.get('code'), ProcessingError)
    return cls(data.get('message', ''))
