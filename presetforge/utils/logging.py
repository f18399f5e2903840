"""
Logging utilities for the image transformation engine.

This module provides logging functionality that keeps raw image buffers out of
log output, content-hash identifiers for assets, and lightweight per-operation
metrics tracking for batch runs.
"""

import logging
import hashlib
import re
import sys
from pathlib import Path
from typing import Optional, Union, Dict, Any
from datetime import datetime
import json


# bytes reprs such as b'\x89PNG\r\n...' longer than this are collapsed
_MAX_BYTES_LITERAL = 32
_BYTES_LITERAL = re.compile(r"""(?<!\w)b(['"])(?:\\.|(?!\1).)*\1""")


class SafeFormatter(logging.Formatter):
    """Formatter that keeps image buffers out of log records."""

    def __init__(self, include_timestamp: bool = True):
        """
        Initialize the formatter.

        Args:
            include_timestamp: Whether to include timestamps in log messages
        """
        if include_timestamp:
            format_str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            date_fmt = "%Y-%m-%d %H:%M:%S"
        else:
            format_str = "%(name)s - %(levelname)s - %(message)s"
            date_fmt = None

        super().__init__(format_str, datefmt=date_fmt)

    def format(self, record: logging.LogRecord) -> str:
        """
        Format log record, collapsing any embedded byte buffers.

        Args:
            record: The log record to format

        Returns:
            Formatted log message
        """
        if hasattr(record, 'msg'):
            record.msg = self._sanitize_message(record.getMessage())
            record.args = None

        return super().format(record)

    def _sanitize_message(self, message: str) -> str:
        """
        Replace long bytes literals with a short length marker.

        Args:
            message: Original message

        Returns:
            Sanitized message
        """
        def replace_literal(match):
            literal = match.group(0)
            if len(literal) <= _MAX_BYTES_LITERAL:
                return literal
            return f"<bytes len={len(literal)}>"

        return _BYTES_LITERAL.sub(replace_literal, message)


def content_identifier(data: Union[bytes, str, Path]) -> str:
    """
    Generate a stable identifier for an image buffer or name.

    Uses SHA-256 so identical inputs always map to the same id.

    Args:
        data: Raw bytes, a string or a path

    Returns:
        Hexadecimal hash string (first 16 characters for brevity)

    Example:
        >>> len(content_identifier(b"abc"))
        16
    """
    if isinstance(data, Path):
        data = str(data)
    if isinstance(data, str):
        data = data.encode('utf-8')

    hash_obj = hashlib.sha256(data)
    return hash_obj.hexdigest()[:16]


class MetricsLogger:
    """Logger for performance metrics and operational data."""

    def __init__(self, logger: logging.Logger):
        """
        Initialize metrics logger.

        Args:
            logger: Base logger instance
        """
        self.logger = logger
        self.metrics: Dict[str, Any] = {
            'start_time': datetime.now().isoformat(),
            'operations': [],
            'performance': {}
        }

    def log_operation(self,
                      operation: str,
                      duration_ms: float,
                      success: bool = True,
                      details: Optional[Dict[str, Any]] = None) -> None:
        """
        Log an operation with timing and success status.

        Args:
            operation: Name of the operation
            duration_ms: Duration in milliseconds
            success: Whether operation succeeded
            details: Additional details
        """
        op_data = {
            'operation': operation,
            'duration_ms': duration_ms,
            'success': success,
            'timestamp': datetime.now().isoformat()
        }

        if details:
            op_data['details'] = self._sanitize_details(details)

        self.metrics['operations'].append(op_data)

        status = "completed" if success else "failed"
        self.logger.debug(f"Operation '{operation}' {status} in {duration_ms:.2f}ms")

    def log_performance(self, metric_name: str, value: float) -> None:
        """
        Log a performance metric.

        Args:
            metric_name: Name of the metric (e.g., 'images_per_second')
            value: Metric value
        """
        self.metrics['performance'][metric_name] = value
        self.logger.info(f"Performance metric - {metric_name}: {value:.3f}")

    def _sanitize_details(self, details: Dict[str, Any]) -> Dict[str, Any]:
        """
        Drop raw buffers from a details dictionary.

        Args:
            details: Original details

        Returns:
            Sanitized details
        """
        sanitized = {}
        for key, value in details.items():
            if isinstance(value, (bytes, bytearray, memoryview)):
                sanitized[key] = f"<bytes len={len(value)}>"
            elif isinstance(value, Path):
                sanitized[key] = value.as_posix()
            else:
                sanitized[key] = value
        return sanitized

    def save_metrics(self, output_path: Path) -> None:
        """
        Save metrics to JSON file.

        Args:
            output_path: Path to save metrics JSON
        """
        self.metrics['end_time'] = datetime.now().isoformat()

        with open(output_path, 'w') as f:
            json.dump(self.metrics, f, indent=2, default=str)

        self.logger.info(f"Metrics saved to {output_path}")


def get_logger(name: str,
               level: Union[str, int] = logging.INFO,
               log_file: Optional[Path] = None,
               include_timestamp: bool = True) -> logging.Logger:
    """
    Get a configured logger with buffer-safe formatting.

    Args:
        name: Logger name (typically __name__)
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file path for logging
        include_timestamp: Whether to include timestamps

    Returns:
        Configured logger instance

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("Batch started")
        2024-01-01 12:00:00 - __main__ - INFO - Batch started
    """
    logger = logging.getLogger(name)

    # Only configure if not already configured
    if not logger.handlers:
        logger.setLevel(level)

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(SafeFormatter(include_timestamp))
        logger.addHandler(console_handler)

        if log_file:
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(SafeFormatter(include_timestamp))
            logger.addHandler(file_handler)

    return logger


def log_pipeline_event(logger: logging.Logger,
                       asset_name: str,
                       stage: str,
                       metadata: Optional[Dict[str, Any]] = None) -> None:
    """
    Log a pipeline stage for one asset.

    Args:
        logger: Logger instance
        asset_name: Asset filename or identifier
        stage: Stage or operation performed
        metadata: Optional metadata (only whitelisted keys are logged)

    Example:
        >>> log_pipeline_event(logger, "photo.jpg", "resize", {"width": 1080})
        INFO - resize for photo.jpg - metadata: {'width': 1080}
    """
    safe_metadata = {}
    if metadata:
        for key, value in metadata.items():
            if key in ['width', 'height', 'format', 'size_kb', 'quality']:
                safe_metadata[key] = value

    log_msg = f"{stage} for {asset_name}"
    if safe_metadata:
        log_msg += f" - metadata: {safe_metadata}"

    logger.info(log_msg)
