"""
Image processing utility functions.
"""
import io
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Tuple, Union

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError

from facematch.domain.entities.face import BoundingBox
from facematch.domain.value_objects.image import Orientation

# EXIF tag ids
_EXIF_ORIENTATION = 0x0112
_EXIF_DATETIME = 0x0132
_EXIF_IFD_POINTER = 0x8769
_EXIF_DATETIME_ORIGINAL = 0x9003
_EXIF_DATETIME_DIGITIZED = 0x9004
_EXIF_DATE_FORMAT = "%Y:%m:%d %H:%M:%S"


def bytes_to_numpy_array(image_bytes: bytes, flags: int = cv2.IMREAD_COLOR) -> np.ndarray:
    """Convert image bytes to a numpy array.

    OpenCV applies the EXIF orientation while decoding, so the returned
    pixels are upright.

    Args:
        image_bytes: Raw image bytes
        flags: OpenCV imread flags (default: COLOR)

    Returns:
        numpy.ndarray: Image as a numpy array

    Raises:
        ValueError: If the image cannot be decoded
    """
    np_array = np.frombuffer(image_bytes, np.uint8)
    img = cv2.imdecode(np_array, flags)

    if img is None:
        raise ValueError("Failed to decode image bytes")

    return img


def apply_orientation(image: np.ndarray, orientation: Orientation) -> np.ndarray:
    """Rotate/flip pixels stored with an EXIF orientation so they are upright."""
    if orientation == Orientation.UP:
        return image
    if orientation == Orientation.UP_MIRRORED:
        return cv2.flip(image, 1)
    if orientation == Orientation.DOWN:
        return cv2.rotate(image, cv2.ROTATE_180)
    if orientation == Orientation.DOWN_MIRRORED:
        return cv2.flip(image, 0)
    if orientation == Orientation.LEFT_MIRRORED:
        return cv2.flip(cv2.rotate(image, cv2.ROTATE_90_CLOCKWISE), 1)
    if orientation == Orientation.RIGHT:
        return cv2.rotate(image, cv2.ROTATE_90_CLOCKWISE)
    if orientation == Orientation.RIGHT_MIRRORED:
        return cv2.flip(cv2.rotate(image, cv2.ROTATE_90_COUNTERCLOCKWISE), 1)
    return cv2.rotate(image, cv2.ROTATE_90_COUNTERCLOCKWISE)


def fit_within(size: Tuple[int, int], max_side: int) -> Tuple[int, int]:
    """Scale ``(width, height)`` down so neither side exceeds ``max_side``; never upscales."""
    width, height = size
    if width <= max_side and height <= max_side:
        return width, height
    scale = max_side / float(max(width, height))
    return max(1, int(round(width * scale))), max(1, int(round(height * scale)))


def crop_face(
    image: np.ndarray,
    bounding_box: BoundingBox,
    target_size: Tuple[int, int],
    padding: float = 0.2,
) -> np.ndarray:
    """Crop a padded face region and resize it.

    Args:
        image: Upright BGR image
        bounding_box: Normalized box with a bottom-left origin
        target_size: ``(width, height)`` of the returned crop
        padding: Fraction of the face size added on each side

    Returns:
        The resized crop; the whole image resized when the crop is empty
    """
    height, width = image.shape[:2]
    left, top, box_width, box_height = bounding_box.to_pixel_rect((width, height))

    padded_left = max(0.0, left - box_width * padding)
    padded_top = max(0.0, top - box_height * padding)
    padded_width = min(width - padded_left, box_width * (1 + 2 * padding))
    padded_height = min(height - padded_top, box_height * (1 + 2 * padding))

    x1, y1 = int(padded_left), int(padded_top)
    x2, y2 = int(padded_left + padded_width), int(padded_top + padded_height)
    crop = image[y1:y2, x1:x2]
    if crop.size == 0:
        crop = image

    return cv2.resize(crop, target_size, interpolation=cv2.INTER_AREA)


def encode_jpeg(image: np.ndarray, max_side: int, quality: int = 80) -> bytes:
    """Encode a (downscaled) JPEG thumbnail; empty bytes if encoding fails."""
    height, width = image.shape[:2]
    new_size = fit_within((width, height), max_side)
    if new_size != (width, height):
        image = cv2.resize(image, new_size, interpolation=cv2.INTER_AREA)
    ok, buffer = cv2.imencode(".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    return buffer.tobytes() if ok else b""


def _parse_exif_date(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.strptime(value.strip().rstrip("\x00"), _EXIF_DATE_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None


def read_exif(image: Union[bytes, str, Path]) -> Tuple[Orientation, Optional[datetime]]:
    """Read orientation and capture date from encoded image bytes or an image file.

    The capture date prefers DateTimeOriginal, then DateTimeDigitized, then
    the TIFF DateTime tag. EXIF dates carry no zone and are read as UTC.
    """
    if not image:
        return Orientation.UP, None
    try:
        with Image.open(io.BytesIO(image) if isinstance(image, bytes) else image) as img:
            exif = img.getexif()
    except (UnidentifiedImageError, OSError):
        return Orientation.UP, None

    orientation = Orientation.from_exif(exif.get(_EXIF_ORIENTATION))
    sub_ifd = exif.get_ifd(_EXIF_IFD_POINTER)
    captured = (
        _parse_exif_date(sub_ifd.get(_EXIF_DATETIME_ORIGINAL))
        or _parse_exif_date(sub_ifd.get(_EXIF_DATETIME_DIGITIZED))
        or _parse_exif_date(exif.get(_EXIF_DATETIME))
    )
    return orientation, captured


def photo_capture_date(image_bytes: bytes) -> Optional[datetime]:
    """Capture date recorded in an encoded photo's EXIF metadata, if any."""
    return read_exif(image_bytes)[1]
