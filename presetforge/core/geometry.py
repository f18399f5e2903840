"""
Rectangle and rounding helpers shared by the pipeline and the smart crop
heuristic.
"""

import math
from dataclasses import dataclass, asdict
from typing import Dict, Optional, Tuple


def round_half_up(value: float) -> int:
    """Round to nearest, halves away from zero for positives (2.5 -> 3)."""
    return int(math.floor(value + 0.5))


@dataclass(frozen=True)
class CropArea:
    """Integer rectangle in raster coordinates."""

    x: int
    y: int
    width: int
    height: int

    def within(self, raster_width: int, raster_height: int) -> bool:
        """True when the area is non-empty and lies entirely inside the raster."""
        return (self.width > 0 and self.height > 0 and
                self.x >= 0 and self.y >= 0 and
                self.x + self.width <= raster_width and
                self.y + self.height <= raster_height)

    def box(self) -> Tuple[int, int, int, int]:
        """Pillow (left, upper, right, lower) box."""
        return (self.x, self.y, self.x + self.width, self.y + self.height)

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, int]) -> 'CropArea':
        return cls(int(data['x']), int(data['y']), int(data['width']), int(data['height']))


def aspect_value(aspect: Optional[Tuple[float, float]]) -> Optional[float]:
    """Turn a (width, height) ratio into width / height, or None."""
    if aspect is None:
        return None
    w, h = aspect
    if w <= 0 or h <= 0:
        raise ValueError(f"Aspect ratio terms must be positive, got {w}:{h}")
    return w / h


def centered_crop(raster_width: int,
                  raster_height: int,
                  aspect: Optional[Tuple[float, float]] = None) -> CropArea:
    """
    Largest centred rectangle with the requested aspect ratio.

    Whichever raster dimension is comparatively larger than the target ratio
    is shrunk; the other is kept whole.

    Args:
        raster_width: Raster width in pixels
        raster_height: Raster height in pixels
        aspect: Optional (width, height) ratio; None keeps the whole raster

    Returns:
        CropArea inside the raster
    """
    target = aspect_value(aspect)
    crop_w = float(raster_width)
    crop_h = float(raster_height)

    if target is not None:
        current = raster_width / raster_height
        if current > target:
            crop_w = raster_height * target
        else:
            crop_h = raster_width / target

    width = max(1, min(raster_width, round_half_up(crop_w)))
    height = max(1, min(raster_height, round_half_up(crop_h)))
    x = (raster_width - width) // 2
    y = (raster_height - height) // 2
    return CropArea(x, y, width, height)


def rotated_bounds(width: int, height: int, angle: float) -> Tuple[int, int]:
    """
    Size of the box enclosing a ``width`` x ``height`` raster rotated by
    ``angle`` degrees, so no corner is clipped.
    """
    radians = math.radians(angle)
    cos = abs(math.cos(radians))
    sin = abs(math.sin(radians))
    return (round_half_up(width * cos + height * sin),
            round_half_up(width * sin + height * cos))
