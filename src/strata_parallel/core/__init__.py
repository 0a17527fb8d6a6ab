"""Orchestration core: devices, partitioning, mesh and the run controller."""

from strata_parallel.core.callbacks import InterruptFlag, LoggingProgress, NeverInterrupt
from strata_parallel.core.controller import (
    ExecutionState,
    SimulationController,
    SimulationState,
    smooth_time_per_step,
)
from strata_parallel.core.devices import Device, DeviceManager, HostBackend, has_gpu_support
from strata_parallel.core.errors import (
    DeviceQueryError,
    DeviceStateError,
    DeviceTimeoutError,
    GeometryLoadError,
    InvalidStateError,
    ResourceExhaustionError,
    StrataParallelError,
)
from strata_parallel.core.mesh import Mesh, Orientation, Partition
from strata_parallel.core.parameters import (
    CaptureRequest,
    CaptureSchedule,
    Simulation,
    SimulationParameters,
    UpdateScheme,
)
from strata_parallel.core.partition import MemoryPolicy, MeshPartitioner, estimate_footprint_mb
from strata_parallel.core.responses import ResponseBuffer

__all__ = [
    "CaptureRequest",
    "CaptureSchedule",
    "Device",
    "DeviceManager",
    "DeviceQueryError",
    "DeviceStateError",
    "DeviceTimeoutError",
    "ExecutionState",
    "GeometryLoadError",
    "HostBackend",
    "InterruptFlag",
    "InvalidStateError",
    "LoggingProgress",
    "MemoryPolicy",
    "Mesh",
    "MeshPartitioner",
    "NeverInterrupt",
    "Orientation",
    "Partition",
    "ResourceExhaustionError",
    "ResponseBuffer",
    "Simulation",
    "SimulationController",
    "SimulationParameters",
    "SimulationState",
    "StrataParallelError",
    "UpdateScheme",
    "estimate_footprint_mb",
    "has_gpu_support",
    "smooth_time_per_step",
]
