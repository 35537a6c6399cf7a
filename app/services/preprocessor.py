"""Normalize a photo into the canonical analysis image.

Runs on the client before upload to cut bandwidth, and optionally again on
the server (``settings.normalize_on_server``).
"""
import io
import logging

from PIL import Image, ImageOps, UnidentifiedImageError

from app.config import settings
from app.utils.exceptions import DecodeError, RenderError, ValidationError

logger = logging.getLogger(__name__)

# clockwise rotation -> PIL transpose
_ROTATIONS = {
    90: Image.Transpose.ROTATE_270,
    180: Image.Transpose.ROTATE_180,
    270: Image.Transpose.ROTATE_90,
}


def normalize_rotation(rotation: int) -> int:
    rotation = int(rotation) % 360
    if rotation % 90:
        raise ValidationError(f"Rotation must be a multiple of 90 degrees, got {rotation}")
    return rotation


def target_size(width: int, height: int, short_edge: int) -> tuple[int, int]:
    """Scale (width, height) so the shorter edge equals ``short_edge``."""
    if width <= height:
        return short_edge, max(1, round(height * short_edge / width))
    return max(1, round(width * short_edge / height)), short_edge


def _decode(raw: bytes) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(raw))
        img.load()
    except Image.DecompressionBombError as e:
        raise RenderError(f"Image too large to process: {e}")
    except (UnidentifiedImageError, OSError, ValueError) as e:
        raise DecodeError(f"Could not decode image: {e}")
    return img


def preprocess(
    raw: bytes,
    rotation: int = 0,
    short_edge: int | None = None,
    quality: int | None = None,
) -> bytes:
    """Decode, rotate clockwise by ``rotation``, resize and re-encode as JPEG."""
    short_edge = short_edge or settings.target_short_edge
    quality = quality or settings.jpeg_quality
    rotation = normalize_rotation(rotation)

    img = _decode(raw)
    img = ImageOps.exif_transpose(img)
    if rotation:
        img = img.transpose(_ROTATIONS[rotation])

    width, height = target_size(img.width, img.height, short_edge)
    if width * height > settings.max_canvas_pixels:
        raise RenderError(f"Cannot allocate a {width}x{height} canvas")

    try:
        if img.mode != "RGB":
            img = img.convert("RGB")
        img = img.resize((width, height), Image.Resampling.LANCZOS)
        buf = io.BytesIO()
        img.save(buf, format="JPEG", quality=quality)
    except MemoryError:
        raise RenderError(f"Cannot allocate a {width}x{height} canvas")

    logger.debug("Preprocessed image to %dx%d (rotation=%d)", width, height, rotation)
    return buf.getvalue()
