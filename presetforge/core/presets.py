"""Output presets: named operation sequences fanned out by the batch orchestrator"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from .pipeline import OperationSpec, ResizeSpec, operation_from_dict
from ..utils.logging import get_logger

logger = get_logger(__name__)

CROP_MODES = ('none', 'center', 'smart')


@dataclass
class Preset:
    """
    One output variant.

    ``crop_mode`` 'center' or 'smart' prepends a crop to the preset's first
    resize target ratio before the operations run.
    """
    preset_id: str
    name: str
    category: str = "custom"
    operations: List[OperationSpec] = field(default_factory=list)
    output_format: Optional[str] = None
    quality: Optional[int] = None
    suffix: Optional[str] = None
    crop_mode: str = "none"

    def __post_init__(self):
        """Validate preset parameters."""
        if self.crop_mode not in CROP_MODES:
            raise ValueError(f"crop_mode must be one of {CROP_MODES}, got {self.crop_mode}")

        if self.quality is not None and not 0 <= self.quality <= 100:
            raise ValueError(f"Quality must be 0-100, got {self.quality}")

        if self.suffix is None:
            self.suffix = self.preset_id

    @property
    def target_size(self) -> Optional[Tuple[int, int]]:
        """(width, height) of the first fully specified resize, if any."""
        for op in self.operations:
            if isinstance(op, ResizeSpec) and op.width and op.height:
                return op.width, op.height
        return None

    def to_dict(self) -> Dict:
        return {
            'preset_id': self.preset_id,
            'name': self.name,
            'category': self.category,
            'operations': [op.to_dict() for op in self.operations],
            'output_format': self.output_format,
            'quality': self.quality,
            'suffix': self.suffix,
            'crop_mode': self.crop_mode,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'Preset':
        data = dict(data)
        data['operations'] = [operation_from_dict(op) for op in data.get('operations', [])]
        return cls(**data)


def size_preset(width: int,
                height: int,
                preset_id: Optional[str] = None,
                name: Optional[str] = None,
                category: str = "custom",
                fit: str = "stretch",
                crop_mode: str = "none",
                output_format: Optional[str] = None,
                quality: Optional[int] = None) -> Preset:
    """
    Build a "W×H" resize preset.

    Example:
        >>> size_preset(1080, 1080).target_size
        (1080, 1080)
    """
    label = f"{width}x{height}"
    return Preset(
        preset_id=preset_id or label,
        name=name or label,
        category=category,
        operations=[ResizeSpec(width=width, height=height, fit=fit)],
        output_format=output_format,
        quality=quality,
        crop_mode=crop_mode,
    )


# (id, name, width, height) grouped by platform
_CATALOGUE: Dict[str, List[Tuple[str, str, int, int]]] = {
    'facebook': [
        ('facebook-shared-image', 'Shared image', 1200, 630),
        ('facebook-profile-image', 'Profile image', 180, 180),
        ('facebook-story', 'Story', 1080, 1920),
        ('facebook-page-cover', 'Page cover', 820, 312),
    ],
    'instagram': [
        ('instagram-square-post', 'Square post', 1080, 1080),
        ('instagram-vertical-post', 'Vertical post', 1080, 1350),
        ('instagram-story', 'Story', 1080, 1920),
        ('instagram-profile-image', 'Profile image', 110, 110),
    ],
    'twitter': [
        ('twitter-post', 'Post image', 1600, 900),
        ('twitter-header', 'Header', 1500, 500),
        ('twitter-profile-image', 'Profile image', 400, 400),
    ],
    'linkedin': [
        ('linkedin-post', 'Post image', 1200, 627),
        ('linkedin-cover', 'Cover', 1584, 396),
    ],
    'youtube': [
        ('youtube-thumbnail', 'Thumbnail', 1280, 720),
        ('youtube-banner', 'Channel banner', 2560, 1440),
    ],
}


def builtin_presets() -> List[Preset]:
    """All catalogue presets; each centre-crops to its ratio before resizing."""
    presets = []
    for category, entries in _CATALOGUE.items():
        for preset_id, name, width, height in entries:
            preset = size_preset(width, height, preset_id=preset_id, name=name,
                                 category=category, crop_mode="center")
            preset.suffix = preset_id.split('-', 1)[1]
            presets.append(preset)
    return presets


def get_preset(preset_id: str) -> Optional[Preset]:
    for preset in builtin_presets():
        if preset.preset_id == preset_id:
            return preset
    return None


def presets_for_category(category: str) -> List[Preset]:
    return [preset for preset in builtin_presets() if preset.category == category]


def load_presets(path: Union[str, Path]) -> List[Preset]:
    """
    Load presets from a JSON file holding a list of preset dicts.

    Returns:
        List of presets (empty if the file does not exist)
    """
    path = Path(path)
    if not path.exists():
        return []

    with open(path, 'r', encoding='utf-8') as f:
        raw = json.load(f)

    presets = [Preset.from_dict(item) for item in raw]
    logger.info(f"Loaded {len(presets)} presets from {path}")
    return presets


def save_presets(presets: List[Preset], path: Union[str, Path]) -> None:
    """Save presets to a JSON file."""
    path = Path(path)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump([preset.to_dict() for preset in presets], f, indent=2)
    logger.info(f"Saved {len(presets)} presets to {path}")
