"""
Strata Parallel - multi-device FDTD room-acoustics orchestration.

Main exports:
- DeviceManager: Device enumeration, memory budget and active device
- MeshPartitioner: Partition count under a memory budget
- SimulationController: Step-execution state machine
- VisualizationBridge: Double-buffered slice hand-off to a renderer
- AcousticMetrics: Volume, absorption area, Sabine and Eyring estimates
- Geometry, MaterialTable: Room description
- NumpyKernel, TorchKernel: Compute kernels
"""

from strata_parallel.analysis import AcousticMetrics
from strata_parallel.core import (
    CaptureSchedule,
    Device,
    DeviceManager,
    GeometryLoadError,
    InterruptFlag,
    InvalidStateError,
    MemoryPolicy,
    MeshPartitioner,
    Orientation,
    ResourceExhaustionError,
    ResponseBuffer,
    Simulation,
    SimulationController,
    SimulationParameters,
    SimulationState,
    StrataParallelError,
    UpdateScheme,
    has_gpu_support,
)
from strata_parallel.geometry import Geometry, load_geometry
from strata_parallel.io import HDF5ResultReader, HDF5ResultWriter, PNGCaptureWriter
from strata_parallel.kernels import NumpyKernel, TorchKernel, get_kernel
from strata_parallel.materials import MaterialTable
from strata_parallel.viz import DisplaySelector, VisualizationBridge, prepare_visualization

__version__ = "0.1.0"

__all__ = [
    "AcousticMetrics",
    "CaptureSchedule",
    "Device",
    "DeviceManager",
    "DisplaySelector",
    "Geometry",
    "GeometryLoadError",
    "HDF5ResultReader",
    "HDF5ResultWriter",
    "InterruptFlag",
    "InvalidStateError",
    "MaterialTable",
    "MemoryPolicy",
    "MeshPartitioner",
    "NumpyKernel",
    "Orientation",
    "PNGCaptureWriter",
    "ResourceExhaustionError",
    "ResponseBuffer",
    "Simulation",
    "SimulationController",
    "SimulationParameters",
    "SimulationState",
    "StrataParallelError",
    "TorchKernel",
    "UpdateScheme",
    "get_kernel",
    "has_gpu_support",
    "load_geometry",
    "prepare_visualization",
]
