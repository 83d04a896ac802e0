"""
Intake Normalizer

Turns an arbitrary user-selected file into a NormalizedImage:
1. HEIC/HEIF containers are decoded and re-encoded as baseline JPEG
2. The declared media type must be an image type
3. The (post-conversion) size must be under the ceiling
4. Pixel dimensions are probed for display
"""

import io
import re
import asyncio
import mimetypes
from typing import Optional, Tuple

from PIL import Image
from pillow_heif import register_heif_opener

from src.core.config import settings
from src.core.logging import get_logger
from src.core.exceptions import UnsupportedFormatError, OversizeFileError
from src.modules.session.models import SourceFile, NormalizedImage

logger = get_logger(__name__)

register_heif_opener()

CONVERTIBLE_EXTENSIONS = (".heic", ".heif")
CONVERTIBLE_SUFFIX_RE = re.compile(r"\.(heic|heif)$", re.IGNORECASE)
GENERIC_CONTENT_TYPES = {"", "application/octet-stream"}


def is_convertible(filename: str) -> bool:
    """True for container formats that must be converted before use."""
    return filename.lower().endswith(CONVERTIBLE_EXTENSIONS)


def decode_container(data: bytes) -> Image.Image:
    """Decode HEIC/HEIF bytes into a Pillow image."""
    with Image.open(io.BytesIO(data)) as img:
        img.load()
        return img.convert("RGB")


def convert_container(source: SourceFile, quality: Optional[int] = None) -> SourceFile:
    """
    Re-encode a HEIC/HEIF source as JPEG.

    Raises:
        UnsupportedFormatError: If the container cannot be decoded
    """
    quality = quality or settings.HEIC_JPEG_QUALITY

    try:
        image = decode_container(source.data)
        buffer = io.BytesIO()
        image.save(buffer, format="JPEG", quality=quality)
    except Exception as e:
        logger.warning("container_conversion_failed", filename=source.filename, error=str(e))
        raise UnsupportedFormatError(f"Could not convert {source.filename}: {e}")

    return SourceFile(
        id=source.id,
        filename=CONVERTIBLE_SUFFIX_RE.sub(".jpg", source.filename),
        content_type="image/jpeg",
        data=buffer.getvalue(),
    )


def declared_type(source: SourceFile) -> str:
    """Media type as a browser would report it, falling back to the extension."""
    if source.content_type not in GENERIC_CONTENT_TYPES:
        return source.content_type
    guessed, _ = mimetypes.guess_type(source.filename)
    return guessed or source.content_type


def probe_dimensions(data: bytes) -> Tuple[int, int]:
    """Read (width, height) without touching the stored bytes."""
    with Image.open(io.BytesIO(data)) as img:
        return img.size


async def normalize(
    source: Optional[SourceFile],
    max_size: Optional[int] = None,
    quality: Optional[int] = None
) -> Optional[NormalizedImage]:
    """
    Validate and canonicalize a selected file.

    Args:
        source: The selected file, or None for an empty selection
        max_size: Size ceiling in bytes (defaults to MAX_IMAGE_SIZE_BYTES)
        quality: JPEG quality for container conversion

    Returns:
        NormalizedImage, or None for an empty selection

    Raises:
        UnsupportedFormatError: Not an image, or conversion/probe failed
        OversizeFileError: Larger than the ceiling after conversion
    """
    if source is None or (not source.filename and not source.data):
        return None

    max_size = max_size or settings.MAX_IMAGE_SIZE_BYTES
    original_size = source.size

    if is_convertible(source.filename):
        source = await asyncio.to_thread(convert_container, source, quality)
        logger.info(
            "container_converted",
            filename=source.filename,
            original_size=original_size,
            converted_size=source.size
        )

    content_type = declared_type(source)
    if not content_type.startswith("image/"):
        raise UnsupportedFormatError(details={"content_type": content_type})

    if source.size > max_size:
        raise OversizeFileError(size=source.size, limit=max_size)

    try:
        width, height = await asyncio.to_thread(probe_dimensions, source.data)
    except Exception as e:
        raise UnsupportedFormatError(f"Could not decode {source.filename}: {e}")

    return NormalizedImage(
        id=source.id,
        filename=source.filename,
        content_type=content_type,
        data=source.data,
        width=width,
        height=height,
    )
