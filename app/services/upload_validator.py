"""Checks applied to an uploaded photo before it reaches the analyzer."""
import logging

from app.config import settings
from app.utils.exceptions import ValidationError

logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = {"image/jpeg", "image/jpg", "image/png"}

_SIGNATURES = (
    b"\xff\xd8\xff",  # JPEG
    b"\x89PNG\r\n\x1a\n",  # PNG
)


def validate_image_upload(content: bytes, content_type: str | None) -> None:
    if not content:
        raise ValidationError("No image file provided")

    if len(content) > settings.max_upload_size_bytes:
        limit_mb = settings.max_upload_size_bytes / (1024 * 1024)
        raise ValidationError(f"File too large, the limit is {limit_mb:g}MB")

    if content_type and content_type not in ALLOWED_CONTENT_TYPES:
        raise ValidationError("File type not supported. Please upload a JPEG or PNG image.")

    if not content.startswith(_SIGNATURES):
        logger.info("Rejected upload with unknown signature %r", content[:8])
        raise ValidationError("File type not supported. Please upload a JPEG or PNG image.")


def parse_client_rotation(value: str | None) -> int:
    """``clientRotation`` is informational; unparsable values count as 0."""
    if not value:
        return 0
    try:
        return int(value) % 360
    except ValueError:
        logger.info("Ignoring invalid clientRotation %r", value)
        return 0
