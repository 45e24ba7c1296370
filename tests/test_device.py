import logging
import sys
import types

import numpy as np
import pytest

from cuda_histeq import (
    AccessMode,
    BuildError,
    ConfigurationError,
    DataIntegrityError,
    DeviceSession,
    DispatchError,
    PipelineConfig,
    list_devices,
    select_device,
)
from cuda_histeq import device
from cuda_histeq.device import launch_extent
from cuda_histeq.kernels import ENTRY_POINTS, SCAN_SPAN


def test_simulator_is_listed_as_cpu_device():
    devices = list_devices()
    assert len(devices) >= 1
    assert devices[0].index == 0
    assert devices[0].device_class == "cpu"
    assert devices[0].max_threads_per_block >= 64


def test_invalid_platform_is_fatal():
    with pytest.raises(ConfigurationError):
        select_device(1, 0)


def test_invalid_device_index_is_fatal():
    with pytest.raises(ConfigurationError):
        select_device(0, 99)


def test_missing_device_class_falls_back_with_warning(caplog):
    with caplog.at_level(logging.WARNING, logger="cuda_histeq.device"):
        with DeviceSession(PipelineConfig(device_type="gpu")) as session:
            assert session.info.device_class == "cpu"
    assert "falling back" in caplog.text


def test_launch_extent_rounds_up_to_whole_groups():
    assert launch_extent(64, 64) == 64
    assert launch_extent(65, 64) == 128
    assert launch_extent(1, 64) == 64
    assert launch_extent(851, 64) == 896


def test_group_size_is_capped(session8):
    assert session8.group_size(64) == 64
    assert session8.group_size(10_000) <= 256


def test_scan_span_comes_from_kernel_module(session8):
    assert session8.scan_span == SCAN_SPAN


def test_write_then_read_returns_host_data(session8):
    buffer = session8.allocate(10, AccessMode.READ_WRITE, np.int32, "data")
    data = np.arange(10, dtype=np.int32)
    session8.write(buffer, data)
    assert np.array_equal(session8.read(buffer), data)


def test_fill_zeroes_buffer(session8):
    buffer = session8.allocate(7, AccessMode.READ_WRITE, np.int32, "hist")
    session8.write(buffer, np.full(7, 3, dtype=np.int32))
    session8.fill(buffer, 0)
    assert not session8.read(buffer).any()


def test_write_size_mismatch_rejected(session8):
    buffer = session8.allocate(4, AccessMode.READ_WRITE, np.int32)
    with pytest.raises(DataIntegrityError):
        session8.write(buffer, np.zeros(5, dtype=np.int32))
    with pytest.raises(DataIntegrityError):
        session8.write(buffer, np.zeros(4, dtype=np.uint8))


def test_host_cannot_write_write_only_buffer(session8):
    buffer = session8.allocate(4, AccessMode.WRITE_ONLY, np.int32)
    with pytest.raises(DataIntegrityError):
        session8.write(buffer, np.zeros(4, dtype=np.int32))


def test_released_buffer_is_unusable(session8):
    buffer = session8.allocate(4, AccessMode.READ_WRITE, np.int32)
    session8.release(buffer)
    assert buffer not in session8.live_buffers()
    with pytest.raises(DispatchError):
        session8.read(buffer)


def test_buffer_from_another_session_is_refused(session8, session_factory):
    other = session_factory(bit_depth=8)
    buffer = other.allocate(4, AccessMode.READ_WRITE, np.int32)
    with pytest.raises(DispatchError):
        session8.read(buffer)


def test_close_releases_everything():
    session = DeviceSession(PipelineConfig())
    buffer = session.allocate(4, AccessMode.READ_WRITE, np.int32)
    session.close()
    assert buffer.released
    assert session.live_buffers() == []
    with pytest.raises(DispatchError):
        session.allocate(4, AccessMode.READ_WRITE)


def test_dispatch_unknown_kernel(session8):
    with pytest.raises(DispatchError):
        session8.dispatch("equalize_everything", (), 64, 64)


def test_dispatch_rejects_ragged_extent(session8):
    hist = session8.allocate(4, AccessMode.READ_WRITE, np.int32)
    with pytest.raises(DispatchError):
        session8.dispatch("normalize_lut", (hist, hist, 1, 4, 255), 100, 64)


def test_dispatch_and_synchronize_run_kernel(session8):
    hist = session8.allocate(8, AccessMode.READ_WRITE, np.int32, "hist")
    cum = session8.allocate(8, AccessMode.WRITE_ONLY, np.int32, "cum")
    session8.write(hist, np.ones(8, dtype=np.int32))
    session8.dispatch("scan_work_efficient", (hist, cum, 8), 4, 4)
    session8.synchronize()
    assert session8.read(cum).tolist() == [1, 2, 3, 4, 5, 6, 7, 8]


def test_missing_kernel_module_is_build_error():
    with pytest.raises(BuildError):
        DeviceSession(PipelineConfig(kernel_module="cuda_histeq.no_such_kernels"))


def test_incomplete_kernel_module_is_build_error(monkeypatch):
    module = types.ModuleType("partial_kernels")
    module.SCAN_SPAN = 256
    module.calculate_histogram = lambda *args: None
    monkeypatch.setitem(sys.modules, "partial_kernels", module)

    with pytest.raises(BuildError) as excinfo:
        DeviceSession(PipelineConfig(kernel_module="partial_kernels"))
    for name in ENTRY_POINTS[1:]:
        assert name in str(excinfo.value)


def test_kernel_module_without_span_is_build_error(monkeypatch):
    module = types.ModuleType("spanless_kernels")
    for name in ENTRY_POINTS:
        setattr(module, name, lambda *args: None)
    monkeypatch.setitem(sys.modules, "spanless_kernels", module)

    with pytest.raises(BuildError, match="SCAN_SPAN"):
        DeviceSession(PipelineConfig(kernel_module="spanless_kernels"))


def test_compile_failure_carries_diagnostic(monkeypatch):
    def broken_jit(signature):
        raise RuntimeError("No implementation of function <atomic.add> found for signature")

    monkeypatch.setattr(device.cuda, "jit", broken_jit)
    with pytest.raises(BuildError) as excinfo:
        DeviceSession(PipelineConfig())

    assert "failed to compile" in str(excinfo.value)
    assert "atomic.add" in excinfo.value.diagnostic


class BrokenArray:
    def copy_to_device(self, data):
        raise RuntimeError("CUDA_ERROR_ILLEGAL_ADDRESS")

    def copy_to_host(self):
        raise RuntimeError("CUDA_ERROR_ILLEGAL_ADDRESS")


def test_copy_faults_become_dispatch_errors(session8):
    buffer = session8.allocate(4, AccessMode.READ_WRITE, np.int32, "hist")
    buffer.array = BrokenArray()

    with pytest.raises(DispatchError, match="upload into 'hist'"):
        session8.write(buffer, np.zeros(4, dtype=np.int32))
    with pytest.raises(DispatchError, match="readback of 'hist'"):
        session8.read(buffer)
    session8.release(buffer)
