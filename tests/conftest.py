"""Pytest configuration and shared fixtures for the strata-parallel test suite."""

import os
import threading

import pytest

# =============================================================================
# OpenMP Library Conflict Resolution
# =============================================================================
# PyTorch and numpy's BLAS may each bring an OpenMP runtime. Loading both in
# one process aborts with "OMP: Error #15" on macOS unless duplicates are
# allowed. This MUST be set before importing torch.
# =============================================================================
os.environ.setdefault("KMP_DUPLICATE_LIB_OK", "TRUE")

from strata_parallel.core.devices import DeviceBackend, DeviceManager  # noqa: E402
from strata_parallel.core.parameters import Simulation, SimulationParameters, UpdateScheme  # noqa: E402
from strata_parallel.geometry import Geometry  # noqa: E402
from strata_parallel.kernels import NumpyKernel  # noqa: E402
from strata_parallel.materials import MaterialTable  # noqa: E402

MB = 1_000_000


def pytest_configure(config):
    os.environ["KMP_DUPLICATE_LIB_OK"] = "TRUE"


# =============================================================================
# Test doubles
# =============================================================================


class FakeBackend(DeviceBackend):
    """In-memory device backend.

    Args:
        specs: (name, free_mb, total_mb, capability) per device
        fail_on: Device id whose memory query raises, if any
        hang: Event that synchronize() waits on before returning
    """

    kind = "cpu"

    def __init__(self, specs, fail_on=None, hang=None):
        self.specs = list(specs)
        self.fail_on = fail_on
        self.hang = hang
        self.resets = []
        self.syncs = []
        self.active = None

    def count(self):
        return len(self.specs)

    def name(self, device_id):
        return self.specs[device_id][0]

    def memory_info(self, device_id):
        if device_id == self.fail_on:
            raise RuntimeError("driver query failed")
        _, free_mb, total_mb, _ = self.specs[device_id]
        return int(free_mb * MB), int(total_mb * MB)

    def capability(self, device_id):
        return self.specs[device_id][3]

    def reset(self, device_id):
        self.resets.append(device_id)

    def synchronize(self, device_id):
        if self.hang is not None:
            self.hang.wait()
        self.syncs.append(device_id)

    def set_active(self, device_id):
        self.active = device_id


def make_backend(count=2, free_mb=4000.0, total_mb=8000.0, capability=1.0, **kwargs):
    specs = [(f"fake{i}", free_mb, total_mb, capability) for i in range(count)]
    return FakeBackend(specs, **kwargs)


class RecordingProgress:
    """Progress sink that keeps every report."""

    def __init__(self):
        self.calls = []

    def on_progress(self, step, max_step, time_per_step):
        self.calls.append((step, max_step, time_per_step))


class StopAfter:
    """Interrupt source that fires once `steps` polls have happened."""

    def __init__(self, steps):
        self.steps = steps
        self.polls = 0

    def is_interrupted(self):
        self.polls += 1
        return self.polls >= self.steps


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def backend():
    return make_backend()


@pytest.fixture
def device_manager(backend):
    return DeviceManager(backend, sync_timeout=5.0)


@pytest.fixture
def room():
    """1.0 × 0.8 × 1.2 m shoebox."""
    return Geometry.box((1.0, 0.8, 1.2))


@pytest.fixture
def make_simulation(room):
    def _make(num_steps=20, scheme=UpdateScheme.SRL, admittance=0.1, double=False, source_signals=None, **kwargs):
        materials = MaterialTable.uniform(admittance, room.num_triangles)
        params = SimulationParameters(
            dx=0.1,
            num_steps=num_steps,
            scheme=scheme,
            sources=[(0.35, 0.35, 0.45)],
            receivers=[(0.35, 0.35, 0.45), (0.65, 0.45, 0.75)],
            source_signals=source_signals,
        )
        return Simulation(room, materials, params, double=double, **kwargs)

    return _make


@pytest.fixture
def kernel():
    return NumpyKernel()


@pytest.fixture
def hang_event():
    event = threading.Event()
    yield event
    event.set()
