"""
The four device stages of histogram equalization.

Each stage only enqueues its kernel; the channel pipeline owns the
``synchronize()`` barriers between them. The ``verify`` helpers run on the
host copies read back after each barrier.
"""
from __future__ import annotations

import enum
import logging

import numpy as np

from . import reference
from .config import PipelineConfig
from .device import DeviceBuffer, DeviceSession, launch_extent
from .errors import DataIntegrityError, ScanOverflowError

logger = logging.getLogger(__name__)


class HistogramStage:
    """Counts one channel's pixels into ``num_bins`` bins."""
    name = "histogram"
    kernel = "calculate_histogram"

    def __init__(self, session: DeviceSession, config: PipelineConfig):
        self.session = session
        self.config = config
        self.group_size = session.group_size(config.group_size)

    def enqueue(self, pixels: DeviceBuffer, hist: DeviceBuffer, total_pixels: int) -> None:
        # hist must already be zero-filled; the kernel only accumulates
        self.session.dispatch(
            self.kernel,
            (pixels, hist, total_pixels, self.config.num_bins, self.config.max_value),
            launch_extent(total_pixels, self.group_size),
            self.group_size,
        )

    @staticmethod
    def verify(histogram: np.ndarray, total_pixels: int) -> None:
        if np.any(histogram < 0):
            raise DataIntegrityError("histogram has negative bins")
        counted = int(histogram.sum(dtype=np.int64))
        if counted != total_pixels:
            raise DataIntegrityError(f"histogram counts {counted} pixels, expected {total_pixels}")


class ScanVariant(enum.Enum):
    WORK_EFFICIENT = "scan_work_efficient"
    STEP_DOUBLING = "scan_step_doubling"


def next_power_of_two(n: int) -> int:
    padded = 1
    while padded < n:
        padded *= 2
    return padded


class ScanStage:
    """
    Inclusive prefix sum of a histogram in a single work-group.

    The work-efficient variant feeds the LUT. The step-doubling variant is a
    cross-check: both must equal the serial running sum exactly.
    """
    name = "scan"

    def __init__(self, session: DeviceSession, config: PipelineConfig):
        self.session = session
        self.config = config

    def check_span(self) -> None:
        span = self.session.scan_span
        if self.config.num_bins > span:
            raise ScanOverflowError(self.config.num_bins, span)

    def group_size(self, variant: ScanVariant) -> int:
        num_bins = self.config.num_bins
        if variant is ScanVariant.WORK_EFFICIENT:
            lanes = max(1, next_power_of_two(num_bins) // 2)
        else:
            lanes = num_bins
        return min(lanes, self.session.max_group_size())

    def enqueue(self, variant: ScanVariant, hist: DeviceBuffer, out: DeviceBuffer) -> None:
        self.check_span()
        group = self.group_size(variant)
        self.session.dispatch(variant.value, (hist, out, self.config.num_bins), group, group)

    @staticmethod
    def verify(histogram: np.ndarray, cumulative: np.ndarray, total_pixels: int, step_doubling=None) -> None:
        if np.any(np.diff(cumulative.astype(np.int64)) < 0):
            raise DataIntegrityError("cumulative histogram is not monotonic")
        if int(cumulative[-1]) != total_pixels:
            raise DataIntegrityError(
                f"cumulative histogram ends at {int(cumulative[-1])}, expected {total_pixels}"
            )

        expected = reference.cumulative(histogram)
        if not np.array_equal(cumulative, expected):
            first = int(np.flatnonzero(cumulative != expected)[0])
            raise DataIntegrityError(f"work-efficient scan differs from the serial sum at bin {first}")
        if step_doubling is not None and not np.array_equal(step_doubling, expected):
            first = int(np.flatnonzero(step_doubling != expected)[0])
            raise DataIntegrityError(f"step-doubling scan differs from the serial sum at bin {first}")


class NormalizationStage:
    """Turns the cumulative histogram into a LUT bounded by ``max_value``."""
    name = "normalize"
    kernel = "normalize_lut"

    def __init__(self, session: DeviceSession, config: PipelineConfig):
        self.session = session
        self.config = config
        self.group_size = session.group_size(config.group_size)

    def enqueue(self, cum_hist: DeviceBuffer, lut: DeviceBuffer, total_pixels: int) -> None:
        num_bins = self.config.num_bins
        self.session.dispatch(
            self.kernel,
            (cum_hist, lut, total_pixels, num_bins, self.config.max_value),
            launch_extent(num_bins, self.group_size),
            self.group_size,
        )

    @staticmethod
    def verify(lut: np.ndarray, max_value: int) -> None:
        if lut.min() < 0 or lut.max() > max_value:
            raise DataIntegrityError(f"LUT leaves the range [0, {max_value}]")
        if np.any(np.diff(lut.astype(np.int64)) < 0):
            raise DataIntegrityError("LUT is not monotonic")


class ApplicationStage:
    """Remaps every pixel through the LUT, one lane per pixel."""
    name = "apply"
    kernel = "apply_lut"

    def __init__(self, session: DeviceSession, config: PipelineConfig):
        self.session = session
        self.config = config
        self.group_size = session.group_size(config.group_size)

    def enqueue(self, pixels: DeviceBuffer, lut: DeviceBuffer, output: DeviceBuffer, total_pixels: int) -> None:
        self.session.dispatch(
            self.kernel,
            (pixels, lut, output, total_pixels, self.config.num_bins, self.config.max_value),
            launch_extent(total_pixels, self.group_size),
            self.group_size,
        )
