"""Image normalization and quality checks for captured photos."""
import base64
import binascii
import io
import logging
from typing import Optional

import cv2
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from .config import (
    JPEG_QUALITY,
    MAX_ASPECT_RATIO,
    MAX_BRIGHTNESS,
    MAX_IMAGE_DIMENSION,
    MAX_UPLOAD_BYTES,
    MIN_ASPECT_RATIO,
    MIN_BRIGHTNESS,
    MIN_HEIGHT,
    MIN_LAPLACIAN_VARIANCE,
    MIN_WIDTH,
)
from .errors import ImageDecodeError
from .schemas import QualityReport

logger = logging.getLogger(__name__)

# Leading bytes of the accepted upload formats
JPEG_SIGNATURE = b'\xff\xd8\xff'
PNG_SIGNATURE = b'\x89PNG\r\n\x1a\n'


def _to_bytes(data: str) -> bytes:
    """Decode a base64 string or a data URI into raw bytes."""
    if data.startswith("data:"):
        _, _, data = data.partition(",")
    return base64.b64decode(data)


def check_upload(raw: str) -> Optional[str]:
    """Reject uploads that are too large or not JPEG/PNG/WebP.

    Returns:
        Error message, or None if the upload is acceptable
    """
    try:
        content = _to_bytes(raw)
    except (binascii.Error, ValueError):
        return "Image must be valid base64-encoded data"

    if len(content) > MAX_UPLOAD_BYTES:
        return f"Image size exceeds {MAX_UPLOAD_BYTES / 1024 / 1024:.0f}MB limit"

    # WebP is a RIFF container tagged WEBP at offset 8
    is_webp = content[:4] == b'RIFF' and content[8:12] == b'WEBP'
    if not (content.startswith((JPEG_SIGNATURE, PNG_SIGNATURE)) or is_webp):
        return "Invalid image format. Only JPEG, PNG, and WebP are supported."

    return None


def optimize_image(raw: str) -> str:
    """Bound image size and re-encode as JPEG.

    Keeps aspect ratio, fixes EXIF orientation and re-encodes at
    JPEG_QUALITY. Any decoding problem returns the input unchanged.

    Returns:
        Data URI string (data:image/jpeg;base64,...)
    """
    try:
        image = Image.open(io.BytesIO(_to_bytes(raw)))
        image = ImageOps.exif_transpose(image)
        if image.mode != 'RGB':
            image = image.convert('RGB')

        width, height = image.size
        if width > MAX_IMAGE_DIMENSION or height > MAX_IMAGE_DIMENSION:
            scale = min(MAX_IMAGE_DIMENSION / width, MAX_IMAGE_DIMENSION / height)
            size = (max(1, round(width * scale)), max(1, round(height * scale)))
            image = image.resize(size, Image.Resampling.LANCZOS)
            logger.info(f"Resized image {width}x{height} -> {size[0]}x{size[1]}")

        buffer = io.BytesIO()
        image.save(buffer, format='JPEG', quality=JPEG_QUALITY)
        encoded = base64.b64encode(buffer.getvalue()).decode('utf-8')
        return f"data:image/jpeg;base64,{encoded}"

    except Exception as e:
        logger.warning(f"Image optimization failed, keeping original: {e}")
        return raw


def decode_image(data: str) -> np.ndarray:
    """Decode an image into an RGB array for analysis.

    Raises:
        ImageDecodeError: If the data is not a decodable image.
    """
    try:
        image = Image.open(io.BytesIO(_to_bytes(data)))
        image = ImageOps.exif_transpose(image)
        if image.mode != 'RGB':
            image = image.convert('RGB')
        return np.array(image)
    except (binascii.Error, UnidentifiedImageError, OSError, ValueError) as e:
        raise ImageDecodeError(f"Image could not be decoded: {e}") from e


def validate_image_quality(image: np.ndarray) -> QualityReport:
    """Advisory check: resolution, aspect ratio, blur and exposure.

    Only resolution makes an image unacceptable, and even that never
    stops the pipeline; the issues are shown to the user as warnings.
    """
    height, width = image.shape[:2]
    report = QualityReport(acceptable=width >= MIN_WIDTH and height >= MIN_HEIGHT)

    if not report.acceptable:
        report.issues.append(
            "La imagen tiene una resolución muy baja. Los resultados pueden ser limitados."
        )

    if not height or not MIN_ASPECT_RATIO <= width / height <= MAX_ASPECT_RATIO:
        report.issues.append(
            "La proporción de la imagen no es óptima. Intente con una foto más cuadrada."
        )

    gray = cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)
    sharpness = float(cv2.Laplacian(gray, cv2.CV_64F).var())
    brightness = float(gray.mean())

    if sharpness < MIN_LAPLACIAN_VARIANCE:
        report.issues.append(f"La imagen puede estar desenfocada (nitidez: {sharpness:.1f})")
    if brightness < MIN_BRIGHTNESS:
        report.issues.append(f"La imagen está muy oscura (brillo: {brightness:.1f})")
    elif brightness > MAX_BRIGHTNESS:
        report.issues.append(f"La imagen está muy clara (brillo: {brightness:.1f})")

    return report
