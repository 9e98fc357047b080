"""
Image processing utilities for identity verification.

This module provides functions for:
- Validating uploaded document images
- Normalizing photos before face comparison
- Compressing images to a bounded size for transport
- Converting between raw bytes and base64 data URLs
"""

import base64
import binascii
import io
import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
from PIL import Image, UnidentifiedImageError

from src.config import settings

logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = {"image/png", "image/jpeg", "image/jpg"}
ALLOWED_EXTENSIONS = (".png", ".jpg", ".jpeg")

# ITU-R BT.601 luma weights
LUMA_WEIGHTS = np.array([0.299, 0.587, 0.114])


class ImageProcessingError(Exception):
    """Raised when image decoding or encoding fails."""
    pass


class ImageValidationError(Exception):
    """Raised when an uploaded image is rejected."""
    pass


@dataclass(frozen=True)
class CompressedImage:
    """JPEG produced by compress_for_transport."""

    data: bytes
    quality: int
    width: int
    height: int

    @property
    def size(self) -> int:
        return len(self.data)


def validate_upload(
    filename: str,
    content_type: Optional[str],
    size: int,
    max_bytes: Optional[int] = None,
    min_bytes: Optional[int] = None
) -> None:
    """
    Validate an uploaded document image.

    Args:
        filename: Client-supplied file name
        content_type: Client-supplied MIME type
        size: File size in bytes
        max_bytes: Maximum accepted size (default: settings.max_upload_bytes)
        min_bytes: Minimum accepted size (default: settings.min_upload_bytes)

    Raises:
        ImageValidationError: If the file type or size is not acceptable
    """
    max_bytes = max_bytes if max_bytes is not None else settings.max_upload_bytes
    min_bytes = min_bytes if min_bytes is not None else settings.min_upload_bytes

    if size > max_bytes:
        size_mb = size / (1024 * 1024)
        limit_mb = max_bytes / (1024 * 1024)
        raise ImageValidationError(
            f"File size ({size_mb:.2f}MB) exceeds the {limit_mb:g}MB limit. Please choose a smaller file."
        )

    if (content_type or "").lower() not in ALLOWED_CONTENT_TYPES:
        raise ImageValidationError("Please upload only PNG, JPG, or JPEG files.")

    if not (filename or "").lower().endswith(ALLOWED_EXTENSIONS):
        raise ImageValidationError("Please upload only PNG, JPG, or JPEG files.")

    if size < min_bytes:
        raise ImageValidationError("File appears to be corrupted or too small.")


def detect_mime_type(data: bytes) -> str:
    """Guess a MIME type from leading magic bytes."""
    if data.startswith(b"\x89PNG\r\n\x1a\n"):
        return "image/png"
    if data.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if data.startswith(b"\x1a\x45\xdf\xa3"):
        return "video/webm"
    if len(data) > 12 and data[4:8] == b"ftyp":
        return "video/mp4"
    if data.startswith(b"RIFF") and data[8:12] == b"AVI ":
        return "video/x-msvideo"
    return "application/octet-stream"


def to_data_url(data: bytes, mime_type: Optional[str] = None) -> str:
    """Encode bytes as a base64 data URL."""
    mime_type = mime_type or detect_mime_type(data)
    return f"data:{mime_type};base64,{base64.b64encode(data).decode()}"


def decode_data_url(data_url: str) -> bytes:
    """
    Decode a base64 data URL (or bare base64 string) to bytes.

    Raises:
        ImageProcessingError: If the payload is not valid base64
    """
    if not data_url or not data_url.strip():
        raise ImageProcessingError("Image data is empty")

    payload = data_url.split(",", 1)[1] if "," in data_url else data_url
    try:
        decoded = base64.b64decode(payload.strip(), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ImageProcessingError(f"Invalid base64 image data: {e}")

    if not decoded:
        raise ImageProcessingError("Image data is empty")
    return decoded


def data_url_extension(data_url: str, default: str = "jpg") -> str:
    """File extension implied by a data URL header."""
    if "data:image/png" in data_url:
        return "png"
    if "data:image/jpeg" in data_url or "data:image/jpg" in data_url:
        return "jpg"
    return default


def load_image(data: bytes) -> Image.Image:
    """
    Decode image bytes with Pillow.

    Raises:
        ImageProcessingError: If the bytes are not a readable image
    """
    if not data:
        raise ImageProcessingError("Image data is empty")
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
        return image
    except (UnidentifiedImageError, OSError) as e:
        raise ImageProcessingError(f"Could not decode image: {e}")


def enhance_for_comparison(
    data: bytes,
    target_size: Optional[int] = None,
    contrast: Optional[float] = None
) -> bytes:
    """
    Normalize a photo before face comparison.

    Resizes to a fixed square, converts to luminance-weighted grayscale and
    stretches contrast around the mid-point. The output is a lossless PNG and
    is byte-identical for identical input.

    Args:
        data: Encoded source image
        target_size: Output edge length in pixels (default: settings.enhance_target_size)
        contrast: Contrast factor applied around 128 (default: settings.enhance_contrast)

    Returns:
        Grayscale PNG bytes

    Raises:
        ImageProcessingError: If the image cannot be decoded or encoded
    """
    target_size = target_size or settings.enhance_target_size
    contrast = contrast if contrast is not None else settings.enhance_contrast

    image = load_image(data).convert("RGB")
    image = image.resize((target_size, target_size), Image.Resampling.BILINEAR)

    pixels = np.asarray(image, dtype=np.float64)
    gray = pixels @ LUMA_WEIGHTS
    enhanced = np.clip((gray - 128.0) * contrast + 128.0, 0.0, 255.0)

    try:
        output = Image.fromarray(np.rint(enhanced).astype(np.uint8))
        buffer = io.BytesIO()
        output.save(buffer, format="PNG")
    except (OSError, ValueError) as e:
        raise ImageProcessingError(f"Failed to encode enhanced image: {e}")

    enhanced_bytes = buffer.getvalue()
    logger.debug(f"Enhanced image for comparison: {len(data)} -> {len(enhanced_bytes)} bytes")
    return enhanced_bytes


def compress_for_transport(
    data: bytes,
    target_size_bytes: Optional[int] = None,
    max_dimension: Optional[int] = None,
    start_quality: Optional[int] = None,
    quality_step: Optional[int] = None,
    min_quality: Optional[int] = None
) -> CompressedImage:
    """
    Shrink an image until it fits a byte budget.

    Downsamples so neither side exceeds max_dimension (keeping the aspect
    ratio), then re-encodes as JPEG at decreasing quality until the output is
    at most target_size_bytes. When the quality floor is reached the last
    encoding is returned even if it is still too large.

    Args:
        data: Encoded source image
        target_size_bytes: Byte budget (default: settings.transport_target_bytes)
        max_dimension: Longest allowed side (default: settings.transport_max_dimension)
        start_quality: First JPEG quality tried
        quality_step: Quality decrement per attempt
        min_quality: Quality floor

    Returns:
        CompressedImage with the encoded bytes and the quality used

    Raises:
        ImageProcessingError: If the image cannot be decoded
    """
    target_size_bytes = target_size_bytes or settings.transport_target_bytes
    max_dimension = max_dimension or settings.transport_max_dimension
    min_quality = min_quality or settings.transport_min_quality
    quality_step = quality_step or settings.transport_quality_step
    quality = max(start_quality or settings.transport_start_quality, min_quality)

    image = load_image(data)
    if image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    image.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)

    while True:
        buffer = io.BytesIO()
        image.save(buffer, format="JPEG", quality=quality, optimize=True)
        encoded = buffer.getvalue()

        if len(encoded) <= target_size_bytes or quality <= min_quality:
            break
        quality = max(min_quality, quality - quality_step)

    if len(encoded) > target_size_bytes:
        logger.warning(
            f"Image still {len(encoded)} bytes at quality floor {quality} (target {target_size_bytes})"
        )
    else:
        logger.debug(f"Compressed image to {len(encoded)} bytes at quality {quality}")

    return CompressedImage(data=encoded, quality=quality, width=image.width, height=image.height)
