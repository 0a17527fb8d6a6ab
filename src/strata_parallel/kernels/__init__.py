"""Compute-kernel layer: voxelization and field updates."""

from strata_parallel.kernels.base import ComputeKernel
from strata_parallel.kernels.numpy_kernel import NumpyKernel
from strata_parallel.kernels.torch_kernel import TorchKernel, has_torch
from strata_parallel.kernels.voxelizer import VoxelGrid, count_neighbours, voxelize


def get_kernel(device_manager=None) -> ComputeKernel:
    """Kernel matching the devices of a DeviceManager.

    GPU devices get a TorchKernel; the host gets a NumpyKernel.
    """
    if device_manager is not None and device_manager.is_initialized:
        active = device_manager.active_device
        if active.kind in ("cuda", "mps") and has_torch():
            return TorchKernel(default_device=active.torch_device)
    return NumpyKernel()


__all__ = [
    "ComputeKernel",
    "NumpyKernel",
    "TorchKernel",
    "VoxelGrid",
    "count_neighbours",
    "get_kernel",
    "has_torch",
    "voxelize",
]
