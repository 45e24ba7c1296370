from __future__ import annotations

import os
from dataclasses import dataclass, field

import numpy as np
from dotenv import load_dotenv

from .errors import ConfigurationError

DEVICE_TYPES = ("any", "gpu", "cpu")

# Work-group size used for the per-pixel kernels unless overridden.
DEFAULT_GROUP_SIZE = 64
MAX_GROUP_SIZE = 256


@dataclass(frozen=True)
class PixelFormat:
    """Numeric-width trait: everything that differs between 8- and 16-bit runs."""
    bit_depth: int
    dtype: np.dtype
    numba_type: str
    default_bins: int

    @property
    def max_value(self) -> int:
        return (1 << self.bit_depth) - 1

    @property
    def levels(self) -> int:
        return 1 << self.bit_depth


PIXEL_FORMATS = {
    8: PixelFormat(8, np.dtype(np.uint8), "uint8", 256),
    16: PixelFormat(16, np.dtype(np.uint16), "uint16", 4096),
}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got '{raw}'") from None


def pixel_format(bit_depth: int) -> PixelFormat:
    try:
        return PIXEL_FORMATS[bit_depth]
    except KeyError:
        raise ConfigurationError(f"unsupported bit depth {bit_depth}; expected 8 or 16") from None


@dataclass(frozen=True)
class PipelineConfig:
    """
    Immutable run parameters, assembled by the caller (CLI or library user).

    ``num_bins`` of ``None`` selects the bit depth's default bin count.
    """
    bit_depth: int = 8
    num_bins: int | None = None
    channel_count: int = 1
    platform_index: int = 0
    device_index: int = 0
    device_type: str = "any"
    group_size: int = DEFAULT_GROUP_SIZE
    cross_check_scan: bool = True
    kernel_module: str = "cuda_histeq.kernels"
    fmt: PixelFormat = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        fmt = pixel_format(self.bit_depth)
        object.__setattr__(self, "fmt", fmt)
        if self.num_bins is None:
            object.__setattr__(self, "num_bins", fmt.default_bins)

        if self.num_bins < 1:
            raise ConfigurationError(f"bin count must be positive, got {self.num_bins}")
        if self.num_bins > fmt.levels:
            raise ConfigurationError(
                f"{self.num_bins} bins exceed the {fmt.levels} levels of a "
                f"{self.bit_depth}-bit image"
            )
        if self.channel_count < 1:
            raise ConfigurationError(f"channel count must be positive, got {self.channel_count}")
        if self.device_type not in DEVICE_TYPES:
            raise ConfigurationError(
                f"unknown device type '{self.device_type}'; expected one of {', '.join(DEVICE_TYPES)}"
            )
        if self.platform_index < 0 or self.device_index < 0:
            raise ConfigurationError("platform and device indices must be non-negative")
        if not 1 <= self.group_size <= MAX_GROUP_SIZE:
            raise ConfigurationError(
                f"group size must be between 1 and {MAX_GROUP_SIZE}, got {self.group_size}"
            )

    @property
    def max_value(self) -> int:
        return self.fmt.max_value

    @property
    def dtype(self) -> np.dtype:
        return self.fmt.dtype

    @classmethod
    def from_env(cls, **overrides) -> "PipelineConfig":
        """
        Build a config from ``HISTEQ_*`` environment variables (a ``.env`` file
        is honoured), with explicit keyword overrides taking precedence.
        """
        load_dotenv()
        values = {
            "platform_index": _env_int("HISTEQ_PLATFORM", 0),
            "device_index": _env_int("HISTEQ_DEVICE", 0),
            "device_type": os.getenv("HISTEQ_DEVICE_TYPE", "any"),
            "group_size": _env_int("HISTEQ_GROUP_SIZE", DEFAULT_GROUP_SIZE),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)
