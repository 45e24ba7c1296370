"""Histogram equalization with the four data-parallel stages on a CUDA device."""

from .config import PIXEL_FORMATS, PipelineConfig, PixelFormat
from .device import AccessMode, DeviceBuffer, DeviceInfo, DeviceSession, list_devices, select_device
from .errors import (
    BuildError,
    ConfigurationError,
    DataIntegrityError,
    DeviceUnavailableError,
    DispatchError,
    EqualizationError,
    ScanOverflowError,
    StageError,
)
from .image import Image
from .pipeline import ChannelPipeline, ChannelResult, ChannelState, Controller, EqualizationResult, equalize_image
from .stages import ApplicationStage, HistogramStage, NormalizationStage, ScanStage, ScanVariant

__version__ = "0.1.0"
