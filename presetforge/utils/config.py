"""
Configuration management for the image transformation engine.

This module holds every tunable of the pipeline, offload pool, batch
orchestrator, archive builder and download manager in one validated
dataclass that can be persisted to JSON.
"""

import json
import multiprocessing
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Dict, Any, Union

import psutil
from PIL import ImageColor

from .logging import get_logger

logger = get_logger(__name__)

SUPPORTED_OUTPUT_FORMATS = ('jpeg', 'png', 'webp', 'gif', 'bmp', 'tiff')


@dataclass
class Config:
    """
    Configuration settings for PresetForge.

    Defaults match the documented behaviour of the batch engine.
    """

    # Offload pool settings
    pool_size: int = 4
    job_timeout_s: float = 30.0
    start_method: str = "spawn"

    # Pipeline settings
    default_output_format: str = "jpeg"
    default_quality: int = 90
    background_color: str = "#FFFFFF"
    max_input_bytes: int = 50 * 1024 * 1024

    # Smart crop settings
    smart_crop_padding: float = 0.2

    # Archive settings
    max_archive_bytes: int = 100 * 1024 * 1024
    archive_compression_level: int = 6
    include_archive_manifest: bool = False

    # Download settings
    download_stagger_ms: int = 100

    def __post_init__(self):
        """Validate configuration after initialization."""
        if self.pool_size < 1:
            raise ValueError(f"pool_size must be >= 1, got {self.pool_size}")

        if self.job_timeout_s <= 0:
            raise ValueError(f"job_timeout_s must be > 0, got {self.job_timeout_s}")

        if self.start_method not in multiprocessing.get_all_start_methods():
            raise ValueError(f"start_method must be one of "
                             f"{multiprocessing.get_all_start_methods()}, got {self.start_method}")

        self.default_output_format = self.default_output_format.lower()
        if self.default_output_format == 'jpg':
            self.default_output_format = 'jpeg'
        if self.default_output_format not in SUPPORTED_OUTPUT_FORMATS:
            raise ValueError(f"default_output_format must be one of {SUPPORTED_OUTPUT_FORMATS}, "
                             f"got {self.default_output_format}")

        if not 0 <= self.default_quality <= 100:
            raise ValueError(f"default_quality must be in [0, 100], got {self.default_quality}")

        try:
            ImageColor.getrgb(self.background_color)
        except ValueError:
            raise ValueError(f"background_color is not a valid colour: {self.background_color}")

        if self.max_input_bytes < 1:
            raise ValueError(f"max_input_bytes must be >= 1, got {self.max_input_bytes}")

        if not 0 <= self.smart_crop_padding <= 1:
            raise ValueError(f"smart_crop_padding must be in [0, 1], got {self.smart_crop_padding}")

        if self.max_archive_bytes < 1:
            raise ValueError(f"max_archive_bytes must be >= 1, got {self.max_archive_bytes}")

        if not 0 <= self.archive_compression_level <= 9:
            raise ValueError(f"archive_compression_level must be in [0, 9], "
                             f"got {self.archive_compression_level}")

        if self.download_stagger_ms < 0:
            raise ValueError(f"download_stagger_ms must be >= 0, got {self.download_stagger_ms}")

        logger.debug(f"Configuration initialized with pool_size={self.pool_size}")

    def save(self, path: Union[str, Path]) -> None:
        """
        Save configuration to JSON file.

        Args:
            path: Path to save configuration

        Example:
            >>> config = Config(pool_size=2)
            >>> config.save("config.json")
        """
        path = Path(path)

        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

        logger.info(f"Configuration saved to {path}")

    @classmethod
    def load(cls, path: Union[str, Path]) -> 'Config':
        """
        Load configuration from JSON file.

        Args:
            path: Path to configuration file

        Returns:
            Config instance

        Example:
            >>> config = Config.load("config.json")
        """
        path = Path(path)

        with open(path, 'r') as f:
            config_dict = json.load(f)

        config = cls(**config_dict)
        logger.info(f"Configuration loaded from {path}")

        return config

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert configuration to dictionary.

        Returns:
            Configuration as dictionary
        """
        return asdict(self)

    def update(self, **kwargs) -> None:
        """
        Update configuration parameters.

        Args:
            **kwargs: Parameters to update

        Example:
            >>> config = Config()
            >>> config.update(pool_size=8, job_timeout_s=60)
        """
        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)
                logger.debug(f"Updated {key} = {value}")
            else:
                logger.warning(f"Unknown configuration parameter: {key}")

        # Re-validate
        self.__post_init__()

    @property
    def download_stagger_s(self) -> float:
        return self.download_stagger_ms / 1000.0


def get_default_config() -> Config:
    """
    Get default configuration.

    Returns:
        Default Config instance

    Example:
        >>> config = get_default_config()
        >>> config.pool_size
        4
    """
    return Config()


def recommend_pool_size(config: Config) -> int:
    """
    Cap the configured pool size at the number of physical cores.

    Worker units are CPU bound, so more units than cores only adds
    contention.

    Args:
        config: Configuration instance

    Returns:
        Recommended number of worker units (always >= 1)
    """
    cores = psutil.cpu_count(logical=False) or psutil.cpu_count() or 1
    recommended = max(1, min(config.pool_size, cores))

    if recommended < config.pool_size:
        logger.info(f"Capping pool size {config.pool_size} to {recommended} physical cores")

    return recommended


def create_environment_manifest(config: Config) -> Dict[str, Any]:
    """
    Describe the execution environment of a batch run.

    Args:
        config: Configuration instance

    Returns:
        Manifest dictionary
    """
    import platform
    import sys
    from datetime import datetime

    manifest = {
        "timestamp": datetime.now().isoformat(),
        "config": config.to_dict(),
        "environment": {
            "python_version": sys.version,
            "platform": platform.platform(),
            "machine": platform.machine(),
            "cpu_count": psutil.cpu_count(),
        },
        "packages": {}
    }

    for package, module_name in [('Pillow', 'PIL'), ('numpy', 'numpy')]:
        try:
            module = __import__(module_name)
            manifest['packages'][package] = getattr(module, '__version__', 'unknown')
        except ImportError:
            manifest['packages'][package] = "not installed"

    return manifest
