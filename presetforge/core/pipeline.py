"""
Per-image operation pipeline.

Applies an ordered list of geometric and colour operations (resize, crop,
rotate, compress, convert) to a decoded raster and produces encoded output
bytes. Stages run strictly in the order given and the pipeline stops at the
first failing stage.
"""

import time
from dataclasses import dataclass, field, asdict
from typing import Optional, Tuple, Dict, Any, List, Union, Callable, ClassVar

from PIL import Image, ImageOps

from . import codec
from .errors import (
    ProcessingError,
    InvalidDimensionError,
    CropOutOfBoundsError,
    UnknownOperationError,
    InvalidParameterError,
    error_from_dict,
)
from .geometry import CropArea, round_half_up, centered_crop, rotated_bounds
from ..utils.config import Config
from ..utils.logging import get_logger, content_identifier, log_pipeline_event

logger = get_logger(__name__)

ProgressFn = Callable[[float, str], None]


@dataclass
class ResizeSpec:
    """
    Resize parameters.

    Exactly one sizing mode applies, checked in this order: ``percentage``,
    both ``width`` and ``height``, ``width`` only, ``height`` only. With
    ``fit='cover'`` and both dimensions given, the raster is centre-cropped to
    the target ratio before scaling so nothing is distorted.
    """

    kind: ClassVar[str] = "resize"

    width: Optional[int] = None
    height: Optional[int] = None
    percentage: Optional[float] = None
    maintain_aspect_ratio: bool = True
    fit: str = "stretch"

    def to_dict(self) -> Dict[str, Any]:
        return {'kind': self.kind, **asdict(self)}


@dataclass
class CropSpec:
    """Crop to ``area``. ``maintain_aspect_ratio`` is informational only."""

    kind: ClassVar[str] = "crop"

    area: CropArea
    maintain_aspect_ratio: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {'kind': self.kind, 'area': self.area.to_dict(),
                'maintain_aspect_ratio': self.maintain_aspect_ratio}


@dataclass
class RotateSpec:
    """Clockwise rotation in degrees with optional flips."""

    kind: ClassVar[str] = "rotate"

    angle: float = 0.0
    flip_horizontal: bool = False
    flip_vertical: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {'kind': self.kind, **asdict(self)}


@dataclass
class CompressSpec:
    """Re-encode at ``quality`` (0-100). ``format`` None keeps the output format."""

    kind: ClassVar[str] = "compress"

    quality: int = 80
    format: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'kind': self.kind, **asdict(self)}


@dataclass
class ConvertSpec:
    """Change output format, optionally flattening transparency."""

    kind: ClassVar[str] = "convert"

    format: str = "png"
    quality: Optional[int] = None
    preserve_transparency: bool = True
    background: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'kind': self.kind, **asdict(self)}


OperationSpec = Union[ResizeSpec, CropSpec, RotateSpec, CompressSpec, ConvertSpec]

_OPERATION_TYPES = {cls.kind: cls for cls in (ResizeSpec, CropSpec, RotateSpec, CompressSpec, ConvertSpec)}


def operation_from_dict(data: Dict[str, Any]) -> OperationSpec:
    """
    Build an operation spec from its dict form.

    Raises:
        UnknownOperationError: If ``kind`` names no supported stage
        InvalidParameterError: If the parameters do not fit the stage
    """
    data = dict(data)
    kind = data.pop('kind', None)
    cls = _OPERATION_TYPES.get(kind)
    if cls is None:
        raise UnknownOperationError(f"Unsupported pipeline stage: {kind}")

    try:
        if cls is CropSpec:
            data['area'] = CropArea.from_dict(data['area'])
        return cls(**data)
    except (TypeError, KeyError, ValueError) as e:
        raise InvalidParameterError(f"Bad {kind} parameters: {e}")


@dataclass
class ImageAsset:
    """
    Source image supplied by the caller.

    The decoded raster is created lazily and dropped by ``release`` once every
    pipeline consuming it has finished.
    """

    filename: str
    data: bytes
    mime_type: Optional[str] = None
    asset_id: str = None
    raster: Optional[Image.Image] = field(default=None, repr=False)
    width: int = 0
    height: int = 0

    def __post_init__(self):
        if self.asset_id is None:
            self.asset_id = content_identifier(self.data or self.filename)

    @property
    def size_bytes(self) -> int:
        return len(self.data) if self.data else 0

    @property
    def is_decoded(self) -> bool:
        return self.raster is not None

    def decode(self, max_bytes: Optional[int] = None) -> Image.Image:
        """Decode once and cache the raster."""
        if self.raster is None:
            self.raster = codec.decode(self.data, max_bytes=max_bytes)
            self.width, self.height = self.raster.size
        return self.raster

    def release(self) -> None:
        """Drop the decoded raster; dimensions are kept."""
        if self.raster is not None:
            self.raster.close()
            self.raster = None


@dataclass
class PipelineRequest:
    """One asset plus the ordered stages to apply to it."""

    asset: ImageAsset
    operations: List[OperationSpec] = field(default_factory=list)
    output_format: Optional[str] = None
    quality: Optional[int] = None

    def to_options(self) -> Dict[str, Any]:
        """Plain-dict form of everything except the source bytes."""
        return {
            'filename': self.asset.filename,
            'mime_type': self.asset.mime_type,
            'asset_id': self.asset.asset_id,
            'operations': [op.to_dict() for op in self.operations],
            'output_format': self.output_format,
            'quality': self.quality,
        }

    @classmethod
    def from_options(cls, payload: bytes, options: Dict[str, Any]) -> 'PipelineRequest':
        asset = ImageAsset(
            filename=options.get('filename', 'image'),
            data=payload,
            mime_type=options.get('mime_type'),
            asset_id=options.get('asset_id'),
        )
        operations = [operation_from_dict(op) for op in options.get('operations', [])]
        return cls(asset, operations, options.get('output_format'), options.get('quality'))


@dataclass
class PipelineResult:
    """Outcome of a stage or of a whole pipeline."""

    success: bool
    data: Optional[bytes] = field(default=None, repr=False)
    width: int = 0
    height: int = 0
    format: Optional[str] = None
    error: Optional[ProcessingError] = None
    stage: Optional[str] = None
    original_size: int = 0
    processed_size: int = 0
    processing_time_ms: float = 0.0

    @classmethod
    def failure(cls, error: ProcessingError, stage: str, original_size: int = 0) -> 'PipelineResult':
        return cls(success=False, error=error, stage=stage, original_size=original_size)

    @property
    def error_message(self) -> str:
        return str(self.error) if self.error else ""

    def take_data(self) -> Optional[bytes]:
        """Hand over the output buffer; the result keeps no reference to it."""
        data, self.data = self.data, None
        return data

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'data': self.data,
            'width': self.width,
            'height': self.height,
            'format': self.format,
            'error': self.error.to_dict() if self.error else None,
            'stage': self.stage,
            'original_size': self.original_size,
            'processed_size': self.processed_size,
            'processing_time_ms': self.processing_time_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PipelineResult':
        data = dict(data)
        if data.get('error'):
            data['error'] = error_from_dict(data['error'])
        return cls(**data)

    def to_safe_dict(self) -> Dict[str, Any]:
        """Summary without the output buffer."""
        return {
            'success': self.success,
            'width': self.width,
            'height': self.height,
            'format': self.format,
            'size_kb': round(self.processed_size / 1024, 2),
            'error': self.error_message or None,
            'stage': self.stage,
        }


class ImagePipeline:
    """
    Applies operation specs to rasters.

    Each public stage method returns ``(raster or None, PipelineResult)``;
    stage errors never escape as exceptions.
    """

    def __init__(self, config: Optional[Config] = None):
        """
        Initialize the pipeline.

        Args:
            config: Configuration object. If None, uses defaults.
        """
        self.config = config or Config()
        self._stages = {
            ResizeSpec.kind: self._resize,
            CropSpec.kind: self._crop,
            RotateSpec.kind: self._rotate,
            CompressSpec.kind: self._compress,
            ConvertSpec.kind: self._convert,
        }

    def resize(self, img: Image.Image, spec: ResizeSpec) -> Tuple[Optional[Image.Image], PipelineResult]:
        return self._run_stage(ResizeSpec.kind, img, spec)

    def crop(self, img: Image.Image, spec: CropSpec) -> Tuple[Optional[Image.Image], PipelineResult]:
        return self._run_stage(CropSpec.kind, img, spec)

    def rotate(self, img: Image.Image, spec: RotateSpec) -> Tuple[Optional[Image.Image], PipelineResult]:
        return self._run_stage(RotateSpec.kind, img, spec)

    def compress(self, img: Image.Image, spec: CompressSpec) -> Tuple[Optional[Image.Image], PipelineResult]:
        return self._run_stage(CompressSpec.kind, img, spec)

    def convert(self, img: Image.Image, spec: ConvertSpec) -> Tuple[Optional[Image.Image], PipelineResult]:
        return self._run_stage(ConvertSpec.kind, img, spec)

    def apply(self, img: Image.Image, spec: Any) -> Tuple[Optional[Image.Image], PipelineResult]:
        """Run any operation spec."""
        kind = getattr(spec, 'kind', None)
        if kind not in self._stages:
            error = UnknownOperationError(f"Unsupported pipeline stage: {kind or type(spec).__name__}")
            return None, PipelineResult.failure(error, str(kind))
        return self._run_stage(kind, img, spec)

    def execute(self,
                request: PipelineRequest,
                progress: Optional[ProgressFn] = None) -> PipelineResult:
        """
        Decode the asset and run every stage in order.

        Args:
            request: Asset, stages and target encoding
            progress: Optional ``progress(percentage, message)`` callback

        Returns:
            PipelineResult with the encoded output, or the first stage failure
        """
        start_time = time.time()
        asset = request.asset
        original_size = asset.size_bytes
        total_steps = len(request.operations) + 2

        def report(step: int, message: str) -> None:
            if progress is not None:
                progress(100.0 * step / total_steps, message)

        try:
            img = asset.decode(max_bytes=self.config.max_input_bytes)
        except ProcessingError as e:
            logger.error(f"Failed to decode {asset.filename}: {e}")
            return PipelineResult.failure(e, 'decode', original_size)
        report(1, f"Decoded {img.width}x{img.height}")

        output_format = request.output_format or codec.format_from_mime(asset.mime_type) \
            or self.config.default_output_format
        quality = request.quality if request.quality is not None else self.config.default_quality
        encoded: Optional[PipelineResult] = None

        for step, spec in enumerate(request.operations, start=2):
            if isinstance(spec, CompressSpec) and spec.format is None:
                spec = CompressSpec(quality=spec.quality, format=output_format)
            img, result = self.apply(img, spec)
            if not result.success:
                result.original_size = original_size
                result.processing_time_ms = (time.time() - start_time) * 1000
                logger.warning(f"Pipeline for {asset.filename} halted at {result.stage}: {result.error_message}")
                return result

            encoded = result if result.data is not None else None
            if encoded is not None:
                output_format = encoded.format
            report(step, f"Applied {spec.kind}")

        if encoded is None:
            try:
                data = codec.encode(img, output_format, quality, self.config.background_color)
            except ProcessingError as e:
                return PipelineResult.failure(e, 'encode', original_size)
            except Exception as e:
                logger.error(f"Encoding {asset.filename} failed: {e}")
                return PipelineResult.failure(ProcessingError(str(e)), 'encode', original_size)
            output_format = codec.normalize_format(output_format)
        else:
            data = encoded.data

        report(total_steps, "Encoded output")

        result = PipelineResult(
            success=True,
            data=data,
            width=img.width,
            height=img.height,
            format=output_format,
            original_size=original_size,
            processed_size=len(data),
            processing_time_ms=(time.time() - start_time) * 1000,
        )
        log_pipeline_event(logger, asset.filename, "pipeline", result.to_safe_dict())
        return result

    def _run_stage(self, kind: str, img: Image.Image, spec: Any) -> Tuple[Optional[Image.Image], PipelineResult]:
        try:
            out, data, fmt = self._stages[kind](img, spec)
        except ProcessingError as e:
            return None, PipelineResult.failure(e, kind)
        except Exception as e:
            logger.error(f"Stage {kind} failed unexpectedly: {e}")
            return None, PipelineResult.failure(ProcessingError(str(e)), kind)

        return out, PipelineResult(
            success=True,
            data=data,
            width=out.width,
            height=out.height,
            format=fmt,
            stage=kind,
            processed_size=len(data) if data is not None else 0,
        )

    def _resize(self, img: Image.Image, spec: ResizeSpec):
        width, height = img.size

        if spec.percentage is not None:
            new_width = round_half_up(width * spec.percentage / 100)
            new_height = round_half_up(height * spec.percentage / 100)
        elif spec.width is not None and spec.height is not None:
            new_width, new_height = spec.width, spec.height
        elif spec.width is not None:
            new_width = spec.width
            new_height = round_half_up(height * spec.width / width) if spec.maintain_aspect_ratio else height
        elif spec.height is not None:
            new_height = spec.height
            new_width = round_half_up(width * spec.height / height) if spec.maintain_aspect_ratio else width
        else:
            raise InvalidParameterError("No resize dimensions specified")

        if new_width <= 0 or new_height <= 0:
            raise InvalidDimensionError(f"Resize target {new_width}x{new_height} is not positive")

        if spec.fit == "cover" and spec.width is not None and spec.height is not None \
                and spec.percentage is None:
            area = centered_crop(width, height, (new_width, new_height))
            if (area.width, area.height) != (width, height):
                img = img.crop(area.box())
        elif spec.fit not in ("stretch", "cover"):
            raise InvalidParameterError(f"Unknown resize fit: {spec.fit}")

        if img.size != (new_width, new_height):
            img = img.resize((new_width, new_height), Image.Resampling.LANCZOS)
            logger.debug(f"Resized image to {new_width}x{new_height}")

        return img, None, None

    def _crop(self, img: Image.Image, spec: CropSpec):
        area = spec.area
        if not area.within(img.width, img.height):
            raise CropOutOfBoundsError(
                f"Crop area ({area.x}, {area.y}, {area.width}x{area.height}) "
                f"exceeds image boundaries {img.width}x{img.height}")

        return img.crop(area.box()), None, None

    def _rotate(self, img: Image.Image, spec: RotateSpec):
        angle = float(spec.angle) % 360.0

        if angle == 0 and not spec.flip_horizontal and not spec.flip_vertical:
            return img.copy(), None, None

        new_width, new_height = rotated_bounds(img.width, img.height, angle)

        # flips act on the source before rotation
        if spec.flip_horizontal:
            img = ImageOps.mirror(img)
        if spec.flip_vertical:
            img = ImageOps.flip(img)

        if angle % 90 == 0:
            transpose = {
                90: Image.Transpose.ROTATE_270,
                180: Image.Transpose.ROTATE_180,
                270: Image.Transpose.ROTATE_90,
            }.get(int(angle))
            rotated = img.transpose(transpose) if transpose is not None else img
            return rotated, None, None

        if img.mode != 'RGBA':
            img = img.convert('RGBA')

        # Pillow rotates counter-clockwise
        rotated = img.rotate(-angle, resample=Image.Resampling.BICUBIC, expand=True)
        if rotated.size != (new_width, new_height):
            canvas = Image.new('RGBA', (new_width, new_height), (0, 0, 0, 0))
            canvas.paste(rotated, ((new_width - rotated.width) // 2, (new_height - rotated.height) // 2))
            rotated = canvas

        return rotated, None, None

    def _compress(self, img: Image.Image, spec: CompressSpec):
        if not 0 <= spec.quality <= 100:
            raise InvalidParameterError(f"Quality must be between 0 and 100, got {spec.quality}")

        fmt = codec.normalize_format(spec.format or self.config.default_output_format)
        data = codec.encode(img, fmt, spec.quality, self.config.background_color)

        if codec.is_lossy(fmt):
            img = codec.decode(data)
        log_pipeline_event(logger, "raster", "compress", {'format': fmt, 'quality': spec.quality,
                                                          'size_kb': round(len(data) / 1024, 2)})
        return img, data, fmt

    def _convert(self, img: Image.Image, spec: ConvertSpec):
        fmt = codec.normalize_format(spec.format)
        background = spec.background or self.config.background_color
        quality = spec.quality if spec.quality is not None else self.config.default_quality

        if codec.has_transparency(img) and (not spec.preserve_transparency or not codec.supports_alpha(fmt)):
            img = codec.flatten(img, background)

        data = codec.encode(img, fmt, quality, background, spec.preserve_transparency)

        if codec.is_lossy(fmt):
            img = codec.decode(data)
        return img, data, fmt
