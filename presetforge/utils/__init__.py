"""
Utility modules for PresetForge.

Contains buffer-safe logging, configuration management and telemetry.
"""

from .logging import get_logger, content_identifier

__all__ = ['get_logger', 'content_identifier']
