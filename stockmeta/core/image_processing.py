"""
Image Intake Helpers
====================

This module handles the local side of image handling:

- validate_image(): Pre-intake safety checks (format, size, decodability)
- make_preview(): Embedded JPEG thumbnail as a self-contained data URL
- load_image(): Raw bytes and MIME type of a row's source file for upload

No image analysis happens here; Gemini does all of that remotely.

Dependencies:
- PIL (Pillow): Image loading, verification, and thumbnailing
"""

# ============================================================================
# IMPORTS
# ============================================================================

import base64
import io
import logging
import mimetypes
from pathlib import Path
from typing import Optional, Tuple

from PIL import Image, UnidentifiedImageError

from . import config
from .exceptions import ValidationError

logger = logging.getLogger(__name__)

# ============================================================================
# IMAGE VALIDATION
# ============================================================================

def detect_mime_type(image_path: Path) -> str:
    """MIME type from the decoded format, falling back to the extension."""
    try:
        with Image.open(image_path) as img:
            mime = config.PIL_FORMAT_MIME_MAP.get(img.format or "")
            if mime:
                return mime
    except (UnidentifiedImageError, OSError):
        pass
    return mimetypes.guess_type(str(image_path))[0] or "image/jpeg"


def validate_image(image_path: Path) -> Tuple[bool, Optional[str]]:
    """
    Validate that an image file can be accepted for generation.

    Args:
        image_path: Path to the image file

    Returns:
        Tuple of (is_valid, error_message)

    Example:
        >>> valid, error = validate_image(Path("sunset.jpg"))
        >>> if valid:
        ...     print("Image is valid")
    """
    try:
        if not image_path.exists():
            return False, "File does not exist"

        if not image_path.is_file():
            return False, "Path is not a file"

        if image_path.suffix.lower() not in config.SUPPORTED_EXTENSIONS:
            return False, f"Unsupported format. Supported formats: {', '.join(config.SUPPORTED_EXTENSIONS)}"

        size = image_path.stat().st_size
        if size == 0:
            return False, "File is empty"

        if size > config.MAX_FILE_SIZE_BYTES:
            return False, f"File too large. Maximum size: {config.MAX_FILE_SIZE_MB}MB"

        with Image.open(image_path) as img:
            img.verify()
            image_format = img.format

        if config.PIL_FORMAT_MIME_MAP.get(image_format or "") not in config.SUPPORTED_MIME_TYPES:
            return False, f"Unsupported image content: {image_format}"

        return True, None

    except UnidentifiedImageError:
        return False, "Cannot identify image file"
    except PermissionError:
        return False, "Permission denied"
    except Exception as e:
        return False, f"Validation failed: {str(e)}"

# ============================================================================
# PREVIEW AND UPLOAD DATA
# ============================================================================

def make_preview(image_path: Path, max_edge: int = config.PREVIEW_MAX_EDGE) -> str:
    """Build a JPEG thumbnail of the image and return it as a data URL."""
    with Image.open(image_path) as img:
        img.thumbnail((max_edge, max_edge))
        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        buffer = io.BytesIO()
        img.save(buffer, format="JPEG", quality=config.PREVIEW_JPEG_QUALITY)

    encoded = base64.b64encode(buffer.getvalue()).decode()
    return f"data:image/jpeg;base64,{encoded}"


def load_image(row) -> Tuple[bytes, str]:
    """
    Read the source file of a row for upload.

    Raises:
        ValidationError: If the file is gone or unreadable.
    """
    if not row.source_path:
        raise ValidationError("File missing")

    path = Path(row.source_path)
    try:
        data = path.read_bytes()
    except FileNotFoundError as e:
        raise ValidationError(f"File missing: {path}") from e
    except OSError as e:
        raise ValidationError(f"Cannot read {path}: {e}") from e

    return data, detect_mime_type(path)
