"""
Image decoding for embedding extraction.

Turns a file path, an encoded byte buffer, or an already-decoded array
into a uint8 RGB pixel array. Anything that cannot be decoded raises
ImageDecodeFailed so batch callers can skip just that image.
"""

import os
import logging
from typing import Union

import cv2
import numpy as np

from .errors import ImageDecodeFailed

logger = logging.getLogger(__name__)

ImageSource = Union[str, os.PathLike, bytes, bytearray, memoryview, np.ndarray]


def normalize_image(image_np: np.ndarray) -> np.ndarray:
    """
    Ensure image is uint8 RGB format.

    Float images in [0, 1] are rescaled to [0, 255]. Grayscale images are
    expanded to three channels and an alpha channel is dropped.
    """
    if image_np.dtype != np.uint8:
        if image_np.size and image_np.max() <= 1.0:
            image_np = (image_np * 255).astype(np.uint8)
        else:
            image_np = np.clip(image_np, 0, 255).astype(np.uint8)

    if image_np.ndim == 2:
        image_np = cv2.cvtColor(image_np, cv2.COLOR_GRAY2RGB)
    elif image_np.ndim == 3 and image_np.shape[2] == 1:
        image_np = cv2.cvtColor(image_np[:, :, 0], cv2.COLOR_GRAY2RGB)
    elif image_np.ndim == 3 and image_np.shape[2] == 4:
        image_np = cv2.cvtColor(image_np, cv2.COLOR_RGBA2RGB)

    return image_np


def _decode_buffer(buffer, source) -> np.ndarray:
    data = np.frombuffer(buffer, dtype=np.uint8)
    if data.size == 0:
        raise ImageDecodeFailed(source, "empty buffer")

    image = cv2.imdecode(data, cv2.IMREAD_COLOR)
    if image is None:
        raise ImageDecodeFailed(source, "unsupported or corrupt image data")
    return cv2.cvtColor(image, cv2.COLOR_BGR2RGB)


def decode_image(source: ImageSource) -> np.ndarray:
    """
    Decode an image into an RGB uint8 array.

    Args:
        source: Path to an image file, encoded image bytes, or a decoded
            pixel array (returned normalized).

    Returns:
        Array of shape (H, W, 3), dtype uint8, RGB channel order.

    Raises:
        ImageDecodeFailed: If the file is missing or the data is not a
            decodable image.
    """
    if isinstance(source, np.ndarray):
        if source.ndim not in (2, 3) or source.size == 0:
            raise ImageDecodeFailed("<array>", f"unexpected shape {source.shape}")
        return normalize_image(source)

    if isinstance(source, (bytes, bytearray, memoryview)):
        return _decode_buffer(source, "<bytes>")

    path = os.fspath(source)
    if not os.path.isfile(path):
        raise ImageDecodeFailed(path, "file not found")

    # cv2.imread cannot open non-ASCII paths on every platform; decode
    # from the raw bytes instead.
    try:
        with open(path, 'rb') as f:
            raw = f.read()
    except OSError as e:
        raise ImageDecodeFailed(path, str(e)) from e

    image = _decode_buffer(raw, path)
    logger.debug(f"Decoded {path}: {image.shape[1]}x{image.shape[0]}")
    return image
