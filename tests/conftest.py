"""
Pytest configuration and shared fixtures.

Kernels run on the numba CUDA simulator unless the caller already chose a
target, so the suite needs no GPU.
"""
import os

os.environ.setdefault("NUMBA_ENABLE_CUDASIM", "1")

import numpy as np
import pytest

from cuda_histeq import DeviceSession, PipelineConfig


@pytest.fixture
def config8():
    return PipelineConfig(bit_depth=8)


@pytest.fixture
def session8(config8):
    with DeviceSession(config8) as session:
        yield session


@pytest.fixture
def session_factory():
    """Open sessions for arbitrary configs and close them after the test."""
    sessions = []

    def _open(**kwargs):
        session = DeviceSession(PipelineConfig(**kwargs))
        sessions.append(session)
        return session

    yield _open
    for session in sessions:
        session.close()


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def scenario_a_pixels():
    values = [0, 0, 85, 85, 85, 170, 170, 170, 170, 255, 255, 255, 255, 255, 255, 255]
    return np.array(values, dtype=np.uint8).reshape(4, 4)
