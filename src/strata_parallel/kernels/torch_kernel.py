"""GPU compute kernel using PyTorch (CUDA or MPS).

Runs the same update as NumpyKernel with every partition's fields placed on
its own device. Halo planes travel between devices with tensor.to().

Receiver samples stay on the device until the next synchronize(), so the
per-step hot path never waits for the device. The controller synchronizes at
the end of every run.

Note:
    MPS has no float64 support; double-precision meshes need CUDA.
"""

from __future__ import annotations

import numpy as np
from numpy.typing import NDArray

from strata_parallel.core.devices import Device
from strata_parallel.core.mesh import Mesh, Partition
from strata_parallel.core.parameters import SimulationParameters
from strata_parallel.core.responses import ResponseBuffer

from .numpy_kernel import NumpyKernel

_HAS_TORCH = False
_torch = None

try:
    import torch

    _torch = torch
    _HAS_TORCH = True
except ImportError:
    pass


def has_torch() -> bool:
    return _HAS_TORCH


class TorchKernel(NumpyKernel):
    """Runs partitions on PyTorch devices.

    Args:
        default_device: Device string used when no device records are given
            to allocate() (e.g. 'cuda:0', 'mps' or 'cpu')
    """

    name = "torch"

    def __init__(self, default_device: str = "cpu"):
        if not _HAS_TORCH:
            raise ImportError("TorchKernel requires PyTorch. Install with: pip install torch")
        self.default_device = default_device
        self._placement: dict[int, str] = {}
        self._pending: list[tuple[ResponseBuffer, int, int, object]] = []

    def _device_of(self, part: Partition) -> str:
        return self._placement.get(part.device_id, self.default_device)

    def _dtype(self, dtype):
        return _torch.float64 if np.dtype(dtype) == np.float64 else _torch.float32

    # -------------------------------------------------------------------------
    # Array hooks
    # -------------------------------------------------------------------------

    def _to_device(self, array: NDArray, part: Partition, dtype):
        return _torch.as_tensor(np.ascontiguousarray(array), dtype=self._dtype(dtype), device=self._device_of(part))

    def _zeros(self, shape, part: Partition, dtype):
        return _torch.zeros(shape, dtype=self._dtype(dtype), device=self._device_of(part))

    def _zeros_like(self, array):
        return _torch.zeros_like(array)

    def _to_host(self, array) -> NDArray:
        return array.detach().cpu().numpy()

    def _transfer(self, array, part: Partition):
        return array.to(self._device_of(part), non_blocking=True)

    # -------------------------------------------------------------------------
    # Kernel interface
    # -------------------------------------------------------------------------

    def allocate(self, mesh: Mesh, devices: tuple[Device, ...] | None = None) -> None:
        """Create field tensors on the device of every partition.

        Args:
            mesh: Partitioned mesh
            devices: Device records indexed by id; partitions are placed on
                devices[partition.device_id]

        Raises:
            ValueError: If a double-precision mesh is placed on MPS
        """
        if not mesh.partitions:
            mesh.make_partition(1)
        if devices is not None:
            self._placement = {part.device_id: devices[part.device_id].torch_device for part in mesh.partitions}
        if mesh.is_double and any(self._device_of(p) == "mps" for p in mesh.partitions):
            raise ValueError("MPS does not support double precision; use single precision")
        super().allocate(mesh, devices)

    def _record_receivers(
        self, mesh: Mesh, parameters: SimulationParameters, responses: ResponseBuffer, step: int
    ) -> None:
        for i, (x, y, z) in enumerate(parameters.receiver_elements):
            part = mesh.partition_for(z)
            sample = part.fields["p"][x, y, part.local_z(z)].detach().clone()
            self._pending.append((responses, step, i, sample))

    def flush_responses(self) -> None:
        """Copy pending receiver samples into their response buffers."""
        pending, self._pending = self._pending, []
        for responses, step, receiver, sample in pending:
            responses.record_sample(step, receiver, float(sample.item()))

    def synchronize(self, mesh: Mesh | None = None) -> None:
        devices = {self._device_of(p) for p in mesh.partitions} if mesh is not None else set()
        for device in devices:
            if device.startswith("cuda"):
                _torch.cuda.synchronize(device)
            elif device == "mps":
                _torch.mps.synchronize()
        self.flush_responses()

    def reset_pressures(self, mesh: Mesh) -> None:
        self._pending.clear()
        super().reset_pressures(mesh)

    def release(self, mesh: Mesh) -> None:
        self._pending.clear()
        super().release(mesh)
        if _torch.cuda.is_available():
            _torch.cuda.empty_cache()
