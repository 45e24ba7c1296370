from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

import numpy as np

from .config import PIXEL_FORMATS, PipelineConfig
from .errors import ConfigurationError, DataIntegrityError

# Histogram and cumulative buffers are int32
MAX_PIXELS = np.iinfo(np.int32).max


@dataclass
class Image:
    """
    Host-resident source or result image.
    ``pixels`` has shape (H, W) for one channel or (H, W, C) for several.
    """
    pixels: np.ndarray
    path: Path | None = None

    @classmethod
    def from_channels(cls, channels: Sequence[np.ndarray], path: Path | None = None) -> "Image":
        if not channels:
            raise DataIntegrityError("an image needs at least one channel")
        shape = channels[0].shape
        for index, channel in enumerate(channels):
            if channel.ndim != 2 or channel.shape != shape:
                raise DataIntegrityError(
                    f"channel {index} has shape {channel.shape}, expected {shape}"
                )
        if len(channels) == 1:
            return cls(np.ascontiguousarray(channels[0]), path)
        return cls(np.ascontiguousarray(np.stack(channels, axis=-1)), path)

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def channel_count(self) -> int:
        return 1 if self.pixels.ndim == 2 else self.pixels.shape[2]

    @property
    def total_pixels(self) -> int:
        return self.width * self.height

    @property
    def bit_depth(self) -> int:
        for depth, fmt in PIXEL_FORMATS.items():
            if self.pixels.dtype == fmt.dtype:
                return depth
        raise DataIntegrityError(f"unsupported pixel type {self.pixels.dtype}")

    def channel(self, index: int) -> np.ndarray:
        if self.pixels.ndim == 2:
            if index != 0:
                raise IndexError(f"channel {index} out of range for a single-channel image")
            return self.pixels
        return np.ascontiguousarray(self.pixels[:, :, index])

    def channels(self):
        return [self.channel(i) for i in range(self.channel_count)]

    def validate(self, config: PipelineConfig) -> None:
        """Reject images the pipeline cannot process under ``config``."""
        if self.pixels.ndim not in (2, 3):
            raise DataIntegrityError(f"expected a 2D or 3D pixel array, got {self.pixels.ndim}D")
        if self.total_pixels == 0:
            raise DataIntegrityError("image has no pixels")
        if self.total_pixels > MAX_PIXELS:
            raise DataIntegrityError(f"image has {self.total_pixels} pixels; at most {MAX_PIXELS} supported")
        if self.bit_depth != config.bit_depth:
            raise ConfigurationError(
                f"image is {self.bit_depth}-bit but the pipeline is configured for {config.bit_depth}-bit"
            )
        if self.channel_count != config.channel_count:
            raise ConfigurationError(
                f"image has {self.channel_count} channel(s), pipeline expects {config.channel_count}"
            )
        if int(self.pixels.max()) > config.max_value:
            raise DataIntegrityError(f"pixel values exceed {config.max_value}")
