"""
Image decoding and encoding.

Turns raw byte buffers into fully loaded Pillow rasters and back, and holds the
format tables (MIME types, extensions, alpha and lossy support) the rest of the
engine consults.
"""

import io
from typing import Optional, Tuple, Union

import numpy as np
from PIL import Image, ImageColor, UnidentifiedImageError

from .errors import DecodeError, InvalidParameterError
from ..utils.logging import get_logger

logger = get_logger(__name__)

# format -> (Pillow format name, MIME type, extension)
_FORMATS = {
    'jpeg': ('JPEG', 'image/jpeg', 'jpg'),
    'png': ('PNG', 'image/png', 'png'),
    'webp': ('WEBP', 'image/webp', 'webp'),
    'gif': ('GIF', 'image/gif', 'gif'),
    'bmp': ('BMP', 'image/bmp', 'bmp'),
    'tiff': ('TIFF', 'image/tiff', 'tiff'),
}

_ALIASES = {
    'jpg': 'jpeg',
    'tif': 'tiff',
}

_MIME_ALIASES = {
    'image/jpg': 'jpeg',
    'image/tif': 'tiff',
    'image/x-ms-bmp': 'bmp',
}

LOSSY_FORMATS = frozenset({'jpeg', 'webp'})
ALPHA_FORMATS = frozenset({'png', 'webp', 'gif', 'tiff'})

Color = Union[str, Tuple[int, int, int]]


def normalize_format(fmt: str) -> str:
    """
    Canonicalise a format name ('JPG' -> 'jpeg').

    Raises:
        InvalidParameterError: If the format is not supported
    """
    if not fmt:
        raise InvalidParameterError("Output format is required")

    key = fmt.lower().lstrip('.')
    key = _ALIASES.get(key, key)
    if key not in _FORMATS:
        raise InvalidParameterError(f"Unsupported output format: {fmt}")
    return key


def mime_type_for(fmt: str) -> str:
    return _FORMATS[normalize_format(fmt)][1]


def extension_for(fmt: str) -> str:
    return _FORMATS[normalize_format(fmt)][2]


def format_from_mime(mime_type: str) -> Optional[str]:
    """Map a declared MIME type to a format name, or None if unknown."""
    if not mime_type:
        return None

    mime_type = mime_type.lower()
    if mime_type in _MIME_ALIASES:
        return _MIME_ALIASES[mime_type]

    for name, (_, mime, _) in _FORMATS.items():
        if mime == mime_type:
            return name
    return None


def supports_alpha(fmt: str) -> bool:
    return normalize_format(fmt) in ALPHA_FORMATS


def is_lossy(fmt: str) -> bool:
    return normalize_format(fmt) in LOSSY_FORMATS


def decode(data: bytes, max_bytes: Optional[int] = None) -> Image.Image:
    """
    Decode a byte buffer into a fully loaded raster.

    Palette, grayscale, CMYK and 16-bit modes are normalised to RGB or RGBA so
    every stage downstream deals with at most two modes.

    Args:
        data: Encoded image bytes
        max_bytes: Optional input size ceiling

    Returns:
        Decoded PIL Image in RGB or RGBA mode

    Raises:
        DecodeError: If the bytes cannot be interpreted as an image
    """
    if not data:
        raise DecodeError("Input buffer is empty")

    if max_bytes is not None and len(data) > max_bytes:
        raise DecodeError(f"Input buffer too large: {len(data)} bytes (limit {max_bytes})")

    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
        raise DecodeError(f"Cannot decode image: {e}")
    except Image.DecompressionBombError as e:
        raise DecodeError(str(e))

    source_format = img.format

    # Handle different image modes
    if img.mode in ('RGB', 'RGBA'):
        pass
    elif img.mode in ('LA', 'PA') or (img.mode == 'P' and 'transparency' in img.info):
        img = img.convert('RGBA')
    elif img.mode in ('L', 'P', 'CMYK', 'YCbCr', 'LAB', 'HSV', '1'):
        img = img.convert('RGB')
    elif img.mode.startswith('I'):
        # 16/32-bit grayscale: scale down to 8 bits
        arr = np.asarray(img, dtype=np.float64)
        peak = arr.max() if arr.size else 0
        if peak > 255:
            arr = arr * (255.0 / peak)
        img = Image.fromarray(np.rint(arr).clip(0, 255).astype(np.uint8)).convert('RGB')
    elif img.mode == 'F':
        arr = np.asarray(img, dtype=np.float64)
        img = Image.fromarray(np.rint(arr.clip(0, 1) * 255).astype(np.uint8)).convert('RGB')
    else:
        raise DecodeError(f"Unsupported image mode: {img.mode}")

    img.format = source_format
    logger.debug(f"Decoded {source_format} image {img.width}x{img.height} ({img.mode})")
    return img


def has_transparency(img: Image.Image) -> bool:
    """True when the raster has an alpha channel with any non-opaque pixel."""
    if img.mode not in ('RGBA', 'LA', 'PA'):
        return False

    alpha = np.asarray(img.getchannel('A'))
    return bool(alpha.size) and int(alpha.min()) < 255


def flatten(img: Image.Image, background: Color = "#FFFFFF") -> Image.Image:
    """
    Composite transparent regions onto an opaque background.

    Args:
        img: Source raster
        background: Background colour

    Returns:
        RGB raster
    """
    if img.mode != 'RGBA':
        return img.convert('RGB')

    if isinstance(background, str):
        background = ImageColor.getrgb(background)[:3]

    canvas = Image.new('RGB', img.size, background)
    canvas.paste(img, mask=img.getchannel('A'))
    return canvas


def encode(img: Image.Image,
           fmt: str,
           quality: Optional[int] = None,
           background: Color = "#FFFFFF",
           preserve_transparency: bool = True) -> bytes:
    """
    Encode a raster.

    Quality (0-100) applies to lossy formats only. Formats without alpha
    support are always flattened onto ``background``; alpha-capable formats
    are flattened only when ``preserve_transparency`` is False.

    Args:
        img: Raster to encode
        fmt: Output format
        quality: Lossy quality, 0-100
        background: Colour used when flattening
        preserve_transparency: Keep alpha where the format allows it

    Returns:
        Encoded bytes
    """
    fmt = normalize_format(fmt)
    pil_format = _FORMATS[fmt][0]

    if quality is not None and not 0 <= quality <= 100:
        raise InvalidParameterError(f"Quality must be between 0 and 100, got {quality}")

    if img.mode == 'RGBA' and (fmt not in ALPHA_FORMATS or not preserve_transparency):
        img = flatten(img, background)

    params = {}
    if fmt in LOSSY_FORMATS and quality is not None:
        # Pillow's encoders reject quality 0
        params['quality'] = max(1, int(quality))
    if fmt == 'jpeg':
        params['optimize'] = True
    elif fmt == 'png':
        params['optimize'] = True
    elif fmt == 'webp' and quality is None:
        params['lossless'] = True

    buffer = io.BytesIO()
    img.save(buffer, format=pil_format, **params)
    return buffer.getvalue()
