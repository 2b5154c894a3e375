"""
Image Codec
===========

Dedicated module for converting frames between base64 JPEG and OpenCV matrices.

Design Rules:
    - This is the ONLY place in the codebase that encodes or decodes images
    - Validates shape and dtype
    - Fails fast on corrupt frames (callers decide whether to skip)
"""

import base64
import binascii
import logging
from typing import Optional

import cv2
import numpy as np

from vitals_stream.errors import DecodeError
from vitals_stream.stream.frame import Frame


logger = logging.getLogger(__name__)


def decode_frame_bgr(image_b64: str) -> np.ndarray:
    """
    Decode a base64 JPEG payload to a BGR numpy array.

    Args:
        image_b64: Base64-encoded JPEG image

    Returns:
        BGR image as np.ndarray (H, W, 3), dtype=uint8

    Raises:
        DecodeError: If decoding fails or image is invalid
    """
    try:
        image_bytes = base64.b64decode(image_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"Base64 decode failed: {e}")

    nparr = np.frombuffer(image_bytes, np.uint8)
    if nparr.size == 0:
        raise DecodeError("Empty image payload")

    bgr = cv2.imdecode(nparr, cv2.IMREAD_COLOR)

    if bgr is None:
        raise DecodeError("cv2.imdecode returned None")

    if len(bgr.shape) != 3 or bgr.shape[2] != 3:
        raise DecodeError(f"Invalid image shape: {bgr.shape}")

    if bgr.dtype != np.uint8:
        raise DecodeError(f"Invalid dtype: {bgr.dtype}")

    return bgr


def validate_bgr(image: Optional[np.ndarray]) -> np.ndarray:
    """
    Check a frame read from a capture device.

    Raises:
        DecodeError: If the image is missing or not an (H, W, 3) uint8 array
    """
    if image is None:
        raise DecodeError("Capture returned no image")
    if image.ndim != 3 or image.shape[2] != 3:
        raise DecodeError(f"Invalid image shape: {image.shape}")
    if image.dtype != np.uint8:
        raise DecodeError(f"Invalid dtype: {image.dtype}")
    return image


def encode_frame_jpeg(
    frame: Frame,
    input_size: Optional[int] = None,
    quality: int = 90,
) -> str:
    """
    Encode a frame as base64 JPEG for the wire.

    Args:
        frame: Frame to encode
        input_size: Resize to (input_size, input_size) first, if given
        quality: JPEG quality 1-100

    Returns:
        Base64-encoded JPEG string
    """
    image = frame.image
    if input_size:
        image = cv2.resize(
            image, (input_size, input_size), interpolation=cv2.INTER_AREA
        )

    ok, encoded = cv2.imencode(
        ".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)]
    )
    if not ok:
        raise DecodeError(f"JPEG encode failed for frame {frame.index}")

    return base64.b64encode(encoded.tobytes()).decode("ascii")
