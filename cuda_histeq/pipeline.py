"""
Channel pipeline and controller.

One channel runs strictly in order:

    zero-fill histogram -> histogram -> scan -> normalize -> apply -> read back

with a ``synchronize()`` barrier after every kernel, because each stage
consumes the buffer the previous one produced and the device does not track
that dependency on its own.
"""
from __future__ import annotations

import enum
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import numpy as np
import nvtx

from .config import PipelineConfig
from .device import AccessMode, DeviceSession
from .errors import DataIntegrityError, EqualizationError, StageError
from .image import Image
from .stages import ApplicationStage, HistogramStage, NormalizationStage, ScanStage, ScanVariant

logger = logging.getLogger(__name__)


class ChannelState(enum.Enum):
    IDLE = "idle"
    HISTOGRAM_READY = "histogram_ready"
    SCAN_READY = "scan_ready"
    LUT_READY = "lut_ready"
    DONE = "done"
    FAILED = "failed"


_NEXT_STATE = {
    ChannelState.IDLE: ChannelState.HISTOGRAM_READY,
    ChannelState.HISTOGRAM_READY: ChannelState.SCAN_READY,
    ChannelState.SCAN_READY: ChannelState.LUT_READY,
    ChannelState.LUT_READY: ChannelState.DONE,
}


@dataclass
class ChannelResult:
    channel: int
    state: ChannelState = ChannelState.IDLE
    histogram: Optional[np.ndarray] = None
    cumulative: Optional[np.ndarray] = None
    step_doubling: Optional[np.ndarray] = None
    lut: Optional[np.ndarray] = None
    equalized: Optional[np.ndarray] = None
    equalized_histogram: Optional[np.ndarray] = None
    timings: Dict[str, float] = field(default_factory=dict)
    error: Optional[StageError] = None

    @property
    def ok(self) -> bool:
        return self.state is ChannelState.DONE

    def advance(self, target: ChannelState) -> None:
        if _NEXT_STATE.get(self.state) is not target:
            raise DataIntegrityError(f"illegal transition {self.state.value} -> {target.value}")
        self.state = target


@dataclass
class EqualizationResult:
    image: Image
    channels: List[ChannelResult]

    @property
    def ok(self) -> bool:
        return all(c.ok for c in self.channels)

    @property
    def failures(self) -> List[ChannelResult]:
        return [c for c in self.channels if not c.ok]


class ChannelPipeline:
    """Runs the four stages for one channel on a private set of buffers."""

    def __init__(self, session: DeviceSession, config: PipelineConfig, equalized_histogram: bool = False):
        self.session = session
        self.config = config
        self.equalized_histogram = equalized_histogram
        self.histogram_stage = HistogramStage(session, config)
        self.scan_stage = ScanStage(session, config)
        self.normalization_stage = NormalizationStage(session, config)
        self.application_stage = ApplicationStage(session, config)

    @contextmanager
    def _stage(self, result: ChannelResult, name: str):
        start = time.perf_counter()
        with nvtx.annotate(name):
            yield
        result.timings[name] = time.perf_counter() - start

    def _allocate(self, buffers: Dict[str, object], total_pixels: int) -> None:
        cfg = self.config
        layout = [
            ("pixels", total_pixels, AccessMode.READ_ONLY, cfg.dtype),
            ("output", total_pixels, AccessMode.WRITE_ONLY, cfg.dtype),
            ("hist", cfg.num_bins, AccessMode.READ_WRITE, np.int32),
            ("cum_hist", cfg.num_bins, AccessMode.WRITE_ONLY, np.int32),
            ("lut", cfg.num_bins, AccessMode.WRITE_ONLY, np.int32),
        ]
        if cfg.cross_check_scan:
            layout.append(("hs_hist", cfg.num_bins, AccessMode.WRITE_ONLY, np.int32))
        if self.equalized_histogram:
            layout.append(("eq_hist", cfg.num_bins, AccessMode.READ_WRITE, np.int32))

        # Filled in place so a failed allocation still releases the earlier ones
        for label, size, mode, dtype in layout:
            buffers[label] = self.session.allocate(size, mode, dtype, label)

    def run(self, channel: int, pixels: np.ndarray) -> ChannelResult:
        """
        Equalize one channel. Any failure aborts this channel only and is raised
        as ``StageError`` naming the stage; the channel's buffers are always
        released.
        """
        cfg = self.config
        session = self.session
        total = int(pixels.size)
        result = ChannelResult(channel)
        buffers = {}
        stage = self.scan_stage.name
        try:
            self.scan_stage.check_span()

            stage = "upload"
            with self._stage(result, stage):
                self._allocate(buffers, total)
                session.write(buffers["pixels"], pixels)
                session.fill(buffers["hist"], 0)

            stage = self.histogram_stage.name
            with self._stage(result, stage):
                self.histogram_stage.enqueue(buffers["pixels"], buffers["hist"], total)
                session.synchronize()
                result.histogram = session.read(buffers["hist"])
                HistogramStage.verify(result.histogram, total)
                result.advance(ChannelState.HISTOGRAM_READY)

            stage = self.scan_stage.name
            with self._stage(result, stage):
                self.scan_stage.enqueue(ScanVariant.WORK_EFFICIENT, buffers["hist"], buffers["cum_hist"])
                if cfg.cross_check_scan:
                    # Both scans only read hist, so they may share one barrier
                    self.scan_stage.enqueue(ScanVariant.STEP_DOUBLING, buffers["hist"], buffers["hs_hist"])
                session.synchronize()
                result.cumulative = session.read(buffers["cum_hist"])
                if cfg.cross_check_scan:
                    result.step_doubling = session.read(buffers["hs_hist"])
                ScanStage.verify(result.histogram, result.cumulative, total, result.step_doubling)
                result.advance(ChannelState.SCAN_READY)

            stage = self.normalization_stage.name
            with self._stage(result, stage):
                self.normalization_stage.enqueue(buffers["cum_hist"], buffers["lut"], total)
                session.synchronize()
                result.lut = session.read(buffers["lut"])
                NormalizationStage.verify(result.lut, cfg.max_value)
                result.advance(ChannelState.LUT_READY)

            stage = self.application_stage.name
            with self._stage(result, stage):
                self.application_stage.enqueue(buffers["pixels"], buffers["lut"], buffers["output"], total)
                session.synchronize()

            if self.equalized_histogram:
                stage = "equalized_histogram"
                with self._stage(result, stage):
                    session.fill(buffers["eq_hist"], 0)
                    self.histogram_stage.enqueue(buffers["output"], buffers["eq_hist"], total)
                    session.synchronize()
                    result.equalized_histogram = session.read(buffers["eq_hist"])
                    HistogramStage.verify(result.equalized_histogram, total)

            stage = "readback"
            with self._stage(result, stage):
                result.equalized = session.read(buffers["output"]).reshape(pixels.shape)
                result.advance(ChannelState.DONE)
        except EqualizationError as exc:
            result.state = ChannelState.FAILED
            raise StageError(stage, channel, exc) from exc
        finally:
            for buffer in buffers.values():
                session.release(buffer)

        logger.debug(
            f"Channel {channel} done: "
            + ", ".join(f"{name}={seconds * 1000:.2f}ms" for name, seconds in result.timings.items())
        )
        return result


class Controller:
    """
    Runs the channel pipeline over every channel of an image and merges the
    results. Channels are processed one after another on the session's single
    stream.
    """

    def __init__(self, session: DeviceSession, config: Optional[PipelineConfig] = None,
                 equalized_histogram: bool = False):
        self.session = session
        self.config = config or session.config
        self.pipeline = ChannelPipeline(session, self.config, equalized_histogram)

    def equalize(self, image: Image, fail_fast: bool = True) -> EqualizationResult:
        image.validate(self.config)
        logger.info(
            f"Equalizing {image.width}x{image.height}, {image.channel_count} channel(s), "
            f"{self.config.bit_depth}-bit, {self.config.num_bins} bins"
        )

        results = []
        outputs = []
        for channel, source in enumerate(image.channels()):
            with nvtx.annotate(f"channel_{channel}"):
                try:
                    result = self.pipeline.run(channel, source)
                except StageError as exc:
                    if fail_fast:
                        raise
                    logger.error(f"{exc}; keeping channel {channel} unchanged")
                    result = ChannelResult(channel, state=ChannelState.FAILED, error=exc)
            results.append(result)
            outputs.append(result.equalized if result.ok else source)

        return EqualizationResult(Image.from_channels(outputs, image.path), results)


def equalize_image(image: Image, config: Optional[PipelineConfig] = None,
                   equalized_histogram: bool = False, fail_fast: bool = True) -> EqualizationResult:
    """Open a session sized for ``image``, equalize it and close the session."""
    if config is None:
        config = PipelineConfig(bit_depth=image.bit_depth, channel_count=image.channel_count)
    with DeviceSession(config) as session:
        controller = Controller(session, config, equalized_histogram)
        return controller.equalize(image, fail_fast=fail_fast)
