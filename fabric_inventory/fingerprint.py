"""
Perceptual fingerprints for product images.

Computes a 64-bit average hash (aHash): the image is shrunk to 8x8 with
bilinear interpolation, converted to grayscale, and each pixel emits one
bit depending on whether it is brighter than the mean luminance.

The hash captures the coarse light/dark layout of a photo. It is not
rotation or scale invariant, so stock photos and query photos need
near-identical framing to match.
"""

import logging
from typing import Optional

import cv2
import numpy as np

from .errors import ImageDecodeError

logger = logging.getLogger(__name__)

HASH_SIZE = 8
FINGERPRINT_LENGTH = HASH_SIZE * HASH_SIZE

SUPPORTED_FORMATS = ("png", "jpeg", "webp")


def detect_image_format(image_bytes: bytes) -> Optional[str]:
    """Identify PNG, JPEG or WEBP data from its magic bytes."""
    if image_bytes.startswith(b"\x89PNG\r\n\x1a\n"):
        return "png"
    if image_bytes.startswith(b"\xff\xd8\xff"):
        return "jpeg"
    if len(image_bytes) >= 12 and image_bytes[:4] == b"RIFF" and image_bytes[8:12] == b"WEBP":
        return "webp"
    return None


def decode_image(image_bytes: bytes) -> np.ndarray:
    """
    Decode raw image bytes into a BGR uint8 array.

    Args:
        image_bytes: Encoded PNG, JPEG or WEBP data.

    Returns:
        BGR uint8 image of shape (H, W, 3).

    Raises:
        ImageDecodeError: If the data is empty, in an unsupported format,
            or cannot be decoded.
    """
    if not image_bytes:
        raise ImageDecodeError("Image data is empty")

    fmt = detect_image_format(image_bytes)
    if fmt is None:
        raise ImageDecodeError(
            f"Unsupported image format. Allowed: {', '.join(SUPPORTED_FORMATS)}"
        )

    buffer = np.frombuffer(image_bytes, dtype=np.uint8)
    try:
        image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    except cv2.error as e:
        raise ImageDecodeError(f"Failed to decode {fmt} image: {e}") from e

    if image is None:
        raise ImageDecodeError(f"Failed to decode {fmt} image: corrupted data")

    return image


def fingerprint_from_array(image: np.ndarray) -> str:
    """
    Compute the average hash of an already-decoded image.

    Args:
        image: BGR uint8 image (or single-channel grayscale).

    Returns:
        64-character string of '0'/'1', row-major.
    """
    small = cv2.resize(image, (HASH_SIZE, HASH_SIZE), interpolation=cv2.INTER_LINEAR)

    if small.ndim == 3:
        gray = cv2.cvtColor(small, cv2.COLOR_BGR2GRAY)
    else:
        gray = small

    pixels = gray.astype(np.float64).flatten()
    mean = pixels.mean()
    bits = pixels > mean

    return "".join("1" if bit else "0" for bit in bits)


def compute_fingerprint(image_bytes: bytes) -> str:
    """
    Compute the perceptual fingerprint of an encoded image.

    Deterministic: identical bytes always yield the identical string.

    Args:
        image_bytes: Encoded PNG, JPEG or WEBP data.

    Returns:
        64-character string of '0'/'1'.

    Raises:
        ImageDecodeError: If the bytes cannot be decoded.
    """
    image = decode_image(image_bytes)
    fingerprint = fingerprint_from_array(image)
    logger.debug(f"Computed fingerprint {fingerprint} for {image.shape[1]}x{image.shape[0]} image")
    return fingerprint


def is_valid_fingerprint(value: Optional[str]) -> bool:
    """True for a non-empty string made only of '0' and '1'."""
    return bool(value) and set(value) <= {"0", "1"}
