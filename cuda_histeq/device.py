"""
Device session: owns the CUDA context, the compiled kernel module and every
device buffer used by a run.

Stages never create device memory themselves. They borrow ``DeviceBuffer``
handles from the session for the duration of a call, which keeps buffer
lifetime in one place and lets the session refuse handles that belong to
another session or were already released.
"""
from __future__ import annotations

import enum
import importlib
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence

import numpy as np
from numba import config as numba_config
from numba import cuda

from . import kernels as default_kernels
from .config import MAX_GROUP_SIZE, PipelineConfig
from .errors import (
    BuildError,
    ConfigurationError,
    DataIntegrityError,
    DeviceUnavailableError,
    DispatchError,
)

logger = logging.getLogger(__name__)

# Used when the driver (or the simulator) does not report the attribute.
FALLBACK_MAX_THREADS = 1024


class AccessMode(enum.Enum):
    READ_ONLY = "read_only"     # uploaded by the host, only read by kernels
    WRITE_ONLY = "write_only"   # produced by kernels, only read back by the host
    READ_WRITE = "read_write"


@dataclass(frozen=True)
class DeviceInfo:
    index: int
    name: str
    device_class: str
    compute_capability: tuple
    max_threads_per_block: int

    def __str__(self):
        major, minor = self.compute_capability
        return f"[{self.index}] {self.name} ({self.device_class}, cc {major}.{minor})"


@dataclass(eq=False)
class DeviceBuffer:
    label: str
    size: int
    dtype: np.dtype
    mode: AccessMode
    array: Any = field(repr=False)
    owner: Any = field(repr=False)
    released: bool = False

    @property
    def nbytes(self) -> int:
        return self.size * self.dtype.itemsize


def launch_extent(work_items: int, group_size: int) -> int:
    """Round a work-item count up to a whole number of groups."""
    return int(math.ceil(work_items / group_size)) * group_size


def _device_class() -> str:
    # The CUDA simulator executes kernels on host threads
    return "cpu" if numba_config.ENABLE_CUDASIM else "gpu"


def _describe(index, gpu) -> DeviceInfo:
    name = getattr(gpu, "name", "SIMULATOR")
    if isinstance(name, bytes):
        name = name.decode()
    return DeviceInfo(
        index=index,
        name=name,
        device_class=_device_class(),
        compute_capability=tuple(gpu.compute_capability),
        max_threads_per_block=int(getattr(gpu, "MAX_THREADS_PER_BLOCK", FALLBACK_MAX_THREADS)),
    )


def list_devices() -> List[DeviceInfo]:
    """Enumerate the devices of the (single) CUDA platform."""
    if not cuda.is_available():
        return []
    return [_describe(index, cuda.gpus[index]) for index in range(len(cuda.gpus))]


def select_device(platform_index: int, device_index: int, device_type: str = "any") -> DeviceInfo:
    """
    Pick a device by platform index, device index and device class.

    Invalid indices are fatal (``ConfigurationError``). A device class with no
    members raises ``DeviceUnavailableError`` so the caller can decide whether
    to fall back.
    """
    if platform_index != 0:
        raise ConfigurationError(
            f"platform index {platform_index} is out of range; only the CUDA platform (0) exists"
        )

    devices = list_devices()
    if not devices:
        raise DeviceUnavailableError("no CUDA device is available")

    candidates = [d for d in devices if device_type == "any" or d.device_class == device_type]
    if not candidates:
        raise DeviceUnavailableError(f"no device of class '{device_type}' on platform {platform_index}")

    if device_index >= len(candidates):
        raise ConfigurationError(
            f"device index {device_index} is out of range; "
            f"{len(candidates)} '{device_type}' device(s) available"
        )
    return candidates[device_index]


class DeviceSession:
    """
    One accelerator, one compiled kernel module, one ordered command stream.

    ``dispatch`` only enqueues work; ``synchronize`` is the only barrier. There
    is no dependency tracking between kernels, so callers must synchronize
    between a kernel that produces a buffer and one that consumes it.
    """

    def __init__(self, config: PipelineConfig):
        self.config = config
        self.info = self._open_device(config)
        self._buffers: Dict[int, DeviceBuffer] = {}
        self._kernels, self.scan_span = self._build(config.kernel_module)
        self.closed = False

    # ─── Setup ─────────────────────────────────────────────────────
    @staticmethod
    def _open_device(config: PipelineConfig) -> DeviceInfo:
        try:
            info = select_device(config.platform_index, config.device_index, config.device_type)
        except DeviceUnavailableError as exc:
            if config.device_type == "any":
                raise
            logger.warning(f"{exc}; falling back to any available device")
            info = select_device(config.platform_index, config.device_index, "any")
            logger.warning(f"Substituted device {info} for requested class '{config.device_type}'")

        cuda.select_device(info.index)
        logger.info(f"Using device {info}")
        return info

    def _build(self, module_name: str):
        fmt = self.config.fmt
        try:
            module = importlib.import_module(module_name)
        except ImportError as exc:
            raise BuildError(f"cannot load kernel module '{module_name}'", str(exc)) from exc

        missing = [name for name in default_kernels.ENTRY_POINTS if not callable(getattr(module, name, None))]
        if missing:
            raise BuildError(f"kernel module '{module_name}' lacks entry points: {', '.join(missing)}")
        if not hasattr(module, "SCAN_SPAN"):
            raise BuildError(f"kernel module '{module_name}' does not declare SCAN_SPAN")

        make_signatures = getattr(module, "signatures", default_kernels.signatures)
        compiled = {}
        for name, signature in make_signatures(fmt.numba_type).items():
            try:
                compiled[name] = cuda.jit(signature)(getattr(module, name))
            except Exception as exc:
                raise BuildError(f"failed to compile '{name}' for {fmt.numba_type} pixels", str(exc)) from exc

        logger.info(f"Built {len(compiled)} kernels from '{module_name}' for {fmt.bit_depth}-bit pixels")
        return compiled, int(module.SCAN_SPAN)

    # ─── Sizing ────────────────────────────────────────────────────
    def group_size(self, requested: int) -> int:
        """Cap a requested work-group size to the device (and to 256)."""
        return max(1, min(requested, self.info.max_threads_per_block, MAX_GROUP_SIZE))

    def max_group_size(self) -> int:
        return self.info.max_threads_per_block

    # ─── Memory ────────────────────────────────────────────────────
    def allocate(self, size: int, mode: AccessMode, dtype=np.int32, label: str = "buffer") -> DeviceBuffer:
        self._check_open()
        dtype = np.dtype(dtype)
        try:
            array = cuda.device_array(size, dtype=dtype)
        except Exception as exc:
            raise DispatchError(f"cannot allocate {size} x {dtype} for '{label}': {exc}") from exc

        buffer = DeviceBuffer(label=label, size=size, dtype=dtype, mode=mode, array=array, owner=self)
        self._buffers[id(buffer)] = buffer
        logger.debug(f"Allocated '{label}' ({buffer.nbytes} bytes, {mode.value})")
        return buffer

    def write(self, buffer: DeviceBuffer, host_data) -> None:
        """Blocking host-to-device copy."""
        self._check_buffer(buffer)
        if buffer.mode is AccessMode.WRITE_ONLY:
            raise DataIntegrityError(f"buffer '{buffer.label}' is write-only for the host")

        data = np.ascontiguousarray(host_data).ravel()
        if data.dtype != buffer.dtype or data.size != buffer.size:
            raise DataIntegrityError(
                f"cannot write {data.size} x {data.dtype} into '{buffer.label}' "
                f"({buffer.size} x {buffer.dtype})"
            )
        try:
            buffer.array.copy_to_device(data)
        except Exception as exc:
            raise DispatchError(f"upload into '{buffer.label}' failed: {exc}") from exc

    def fill(self, buffer: DeviceBuffer, value=0) -> None:
        self.write(buffer, np.full(buffer.size, value, dtype=buffer.dtype))

    def read(self, buffer: DeviceBuffer) -> np.ndarray:
        """Blocking device-to-host copy; the result is a private host snapshot."""
        self._check_buffer(buffer)
        try:
            return buffer.array.copy_to_host()
        except Exception as exc:
            raise DispatchError(f"readback of '{buffer.label}' failed: {exc}") from exc

    def release(self, buffer: DeviceBuffer) -> None:
        if buffer.released:
            return
        self._check_buffer(buffer)
        self._buffers.pop(id(buffer), None)
        buffer.array = None
        buffer.released = True

    def live_buffers(self) -> List[DeviceBuffer]:
        return list(self._buffers.values())

    # ─── Execution ─────────────────────────────────────────────────
    def dispatch(self, kernel_name: str, args: Sequence, global_extent: int, group_extent: int) -> None:
        """Enqueue one kernel launch. Returns before the kernel completes."""
        self._check_open()
        kernel = self._kernels.get(kernel_name)
        if kernel is None:
            raise DispatchError(f"unknown kernel '{kernel_name}'")
        if group_extent < 1 or global_extent < group_extent or global_extent % group_extent:
            raise DispatchError(
                f"global extent {global_extent} is not a positive multiple of group extent {group_extent}"
            )

        launch_args = []
        for arg in args:
            if isinstance(arg, DeviceBuffer):
                self._check_buffer(arg)
                launch_args.append(arg.array)
            else:
                launch_args.append(arg)

        blocks = global_extent // group_extent
        logger.debug(f"Dispatch {kernel_name}[{blocks}, {group_extent}]")
        try:
            kernel[blocks, group_extent](*launch_args)
        except Exception as exc:
            raise DispatchError(f"kernel '{kernel_name}' failed: {exc}") from exc

    def synchronize(self) -> None:
        """Block until every dispatched kernel has finished."""
        try:
            cuda.synchronize()
        except Exception as exc:
            raise DispatchError(f"device synchronization failed: {exc}") from exc

    # ─── Lifetime ──────────────────────────────────────────────────
    def close(self) -> None:
        if self.closed:
            return
        leaked = self.live_buffers()
        if leaked:
            logger.debug(f"Releasing {len(leaked)} buffer(s) on close")
        for buffer in leaked:
            self.release(buffer)
        self._kernels = {}
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def _check_open(self):
        if self.closed:
            raise DispatchError("device session is closed")

    def _check_buffer(self, buffer: DeviceBuffer):
        self._check_open()
        if buffer.owner is not self:
            raise DispatchError(f"buffer '{buffer.label}' belongs to another session")
        if buffer.released:
            raise DispatchError(f"buffer '{buffer.label}' was already released")
