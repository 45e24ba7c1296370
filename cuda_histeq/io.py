"""OpenCV image loading and saving. Kept apart so the core never touches files."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Union

import cv2
import numpy as np

from .errors import ConfigurationError
from .image import Image

logger = logging.getLogger(__name__)


def load_image(path: Union[str, Path], color: bool = False, high_precision: bool = False) -> Image:
    """
    Read an image as grayscale (default) or as BGR channels with ``color``.
    ``high_precision`` keeps 16-bit samples instead of reducing to 8-bit.
    """
    path = Path(path)
    flags = cv2.IMREAD_COLOR if color else cv2.IMREAD_GRAYSCALE
    if high_precision:
        flags |= cv2.IMREAD_ANYDEPTH
    pixels = cv2.imread(str(path), flags)
    if pixels is None:
        raise ConfigurationError(f"Failed to load {path}")

    if high_precision and pixels.dtype == np.uint8:
        logger.warning(f"{path} holds 8-bit samples; widening to 16-bit")
        pixels = pixels.astype(np.uint16) * 257
    elif pixels.dtype not in (np.uint8, np.uint16):
        raise ConfigurationError(f"{path} has unsupported sample type {pixels.dtype}")

    return Image(np.ascontiguousarray(pixels), path)


def save_image(path: Union[str, Path], image: Image) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if not cv2.imwrite(str(path), image.pixels):
        raise ConfigurationError(f"Failed to write {path}")
    logger.info(f"Output saved to {path}")
    return path
