"""Compute-device discovery, memory budgeting and lifecycle.

The DeviceManager takes an immutable snapshot of the available devices
(id, free and total memory, a throughput heuristic) and owns the
"active device" lifecycle of a run:

    initialize()  ->  enumerate + reset every device + select the best one
    shutdown()    ->  reset every device and clear the active selection

Device access goes through a DeviceBackend so that CUDA, Apple MPS and the
host CPU share one code path, and so that tests can substitute a fake.

Example:
    >>> manager = DeviceManager()
    >>> manager.initialize()
    >>> manager.budget_mb
    15872.0
    >>> manager.active_device.name
    'NVIDIA A100-SXM4-16GB'
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Literal

import psutil

from .errors import DeviceQueryError, DeviceStateError, DeviceTimeoutError

logger = logging.getLogger(__name__)

# Check for PyTorch and its GPU backends
_HAS_TORCH = False
_HAS_CUDA = False
_HAS_MPS = False
_torch = None

try:
    import torch

    _torch = torch
    _HAS_TORCH = True
    _HAS_CUDA = torch.cuda.is_available()
    _HAS_MPS = torch.backends.mps.is_available() and torch.backends.mps.is_built()
except ImportError:
    pass


def has_gpu_support() -> bool:
    """Check if a CUDA or MPS device can be used.

    Returns:
        True if PyTorch is installed and a GPU backend is available.
    """
    return _HAS_CUDA or _HAS_MPS


def get_gpu_info() -> dict:
    """Get information about GPU support.

    Returns:
        Dict with keys: available, backend, pytorch_version
    """
    if not _HAS_TORCH:
        return {"available": False, "backend": None, "pytorch_version": None}
    backend = "cuda" if _HAS_CUDA else ("mps" if _HAS_MPS else None)
    return {
        "available": backend is not None,
        "backend": backend,
        "pytorch_version": _torch.__version__,
    }


_BYTES_PER_MB = 1e6

# CUDA cores per streaming multiprocessor, keyed by compute capability major
_CORES_PER_SM = {2: 32, 3: 192, 5: 128, 6: 64, 7: 64, 8: 128, 9: 128}

DeviceKind = Literal["cuda", "mps", "cpu"]


@dataclass(frozen=True)
class Device:
    """Snapshot of one compute device.

    Args:
        id: Index of the device within its backend
        name: Human-readable device name
        free_mb: Free memory estimate in MB at enumeration time
        total_mb: Total memory estimate in MB
        capability: Relative compute throughput (higher is faster)
        kind: Backend family of the device
    """

    id: int
    name: str
    free_mb: float
    total_mb: float
    capability: float = 1.0
    kind: DeviceKind = "cpu"

    @property
    def torch_device(self) -> str:
        """Device string understood by PyTorch."""
        if self.kind == "cuda":
            return f"cuda:{self.id}"
        return self.kind


class DeviceBackend(ABC):
    """Access layer for one family of compute devices."""

    kind: DeviceKind = "cpu"

    @abstractmethod
    def count(self) -> int:
        """Number of devices visible to this backend."""

    @abstractmethod
    def name(self, device_id: int) -> str:
        """Name of a device."""

    @abstractmethod
    def memory_info(self, device_id: int) -> tuple[int, int]:
        """Return (free_bytes, total_bytes) for a device."""

    @abstractmethod
    def capability(self, device_id: int) -> float:
        """Relative compute throughput of a device."""

    @abstractmethod
    def reset(self, device_id: int) -> None:
        """Bring a device back to a clean state."""

    @abstractmethod
    def synchronize(self, device_id: int) -> None:
        """Block until all queued work on a device has finished."""

    def set_active(self, device_id: int) -> None:
        """Make a device the default target for allocations."""


class TorchCudaBackend(DeviceBackend):
    """NVIDIA GPUs through torch.cuda."""

    kind: DeviceKind = "cuda"

    def __init__(self):
        if not _HAS_CUDA:
            raise ImportError("CUDA backend requires PyTorch with CUDA support")

    def count(self) -> int:
        return _torch.cuda.device_count()

    def name(self, device_id: int) -> str:
        return _torch.cuda.get_device_name(device_id)

    def memory_info(self, device_id: int) -> tuple[int, int]:
        free, total = _torch.cuda.mem_get_info(device_id)
        return int(free), int(total)

    def capability(self, device_id: int) -> float:
        props = _torch.cuda.get_device_properties(device_id)
        cores = _CORES_PER_SM.get(props.major, 128)
        return float(props.multi_processor_count * cores)

    def reset(self, device_id: int) -> None:
        with _torch.cuda.device(device_id):
            _torch.cuda.synchronize()
            _torch.cuda.empty_cache()
            _torch.cuda.reset_peak_memory_stats()

    def synchronize(self, device_id: int) -> None:
        _torch.cuda.synchronize(device_id)

    def set_active(self, device_id: int) -> None:
        _torch.cuda.set_device(device_id)


class TorchMPSBackend(DeviceBackend):
    """Apple Silicon GPU through torch.mps (always a single device)."""

    kind: DeviceKind = "mps"

    def __init__(self):
        if not _HAS_MPS:
            raise ImportError("MPS backend requires PyTorch with MPS support")

    def count(self) -> int:
        return 1

    def name(self, device_id: int) -> str:
        return "Apple MPS"

    def memory_info(self, device_id: int) -> tuple[int, int]:
        # MPS shares system memory; the recommended working set is the cap
        total = int(_torch.mps.recommended_max_memory())
        used = int(_torch.mps.driver_allocated_memory())
        return max(total - used, 0), total

    def capability(self, device_id: int) -> float:
        return 1.0

    def reset(self, device_id: int) -> None:
        _torch.mps.synchronize()
        _torch.mps.empty_cache()

    def synchronize(self, device_id: int) -> None:
        _torch.mps.synchronize()


class HostBackend(DeviceBackend):
    """The host CPU and main memory, used when no GPU is present."""

    kind: DeviceKind = "cpu"

    def count(self) -> int:
        return 1

    def name(self, device_id: int) -> str:
        return "host"

    def memory_info(self, device_id: int) -> tuple[int, int]:
        vm = psutil.virtual_memory()
        return int(vm.available), int(vm.total)

    def capability(self, device_id: int) -> float:
        return float(psutil.cpu_count(logical=False) or 1)

    def reset(self, device_id: int) -> None:
        pass

    def synchronize(self, device_id: int) -> None:
        pass


def default_backend() -> DeviceBackend:
    """Pick the best available backend: CUDA, then MPS, then the host."""
    if _HAS_CUDA:
        return TorchCudaBackend()
    if _HAS_MPS:
        return TorchMPSBackend()
    return HostBackend()


class DeviceManager:
    """Enumerates devices and owns the active-device lifecycle.

    The device snapshot is read-only process-wide state: it only changes on
    an explicit call to enumerate(). The active device is set once by
    initialize() and cleared by shutdown().

    Args:
        backend: Device backend to use (default: default_backend())
        sync_timeout: Default bound in seconds for synchronize(); None waits
            forever
    """

    def __init__(self, backend: DeviceBackend | None = None, sync_timeout: float | None = 60.0):
        self.backend = backend if backend is not None else default_backend()
        self.sync_timeout = sync_timeout
        self._devices: tuple[Device, ...] | None = None
        self._active: int | None = None

    @property
    def devices(self) -> tuple[Device, ...]:
        """Device snapshot from the last enumerate() call."""
        if self._devices is None:
            raise DeviceStateError("Devices have not been enumerated. Call enumerate() first.")
        return self._devices

    @property
    def num_devices(self) -> int:
        return len(self.devices)

    @property
    def budget_mb(self) -> float:
        """Summed free memory across all enumerated devices in MB."""
        return sum(d.free_mb for d in self.devices)

    @property
    def active_device(self) -> Device:
        if self._active is None:
            raise DeviceStateError("No active device. Call initialize() first.")
        return self.devices[self._active]

    @property
    def is_initialized(self) -> bool:
        return self._active is not None

    def enumerate(self) -> tuple[Device, ...]:
        """Query every device and replace the snapshot.

        Raises:
            DeviceQueryError: If any device query fails; the underlying
                error is chained as the cause.
        """
        try:
            count = self.backend.count()
        except Exception as e:
            raise DeviceQueryError(f"Device count query failed: {e}") from e

        logger.info("Number of devices: %d", count)

        devices = []
        for i in range(count):
            try:
                free, total = self.backend.memory_info(i)
                device = Device(
                    id=i,
                    name=self.backend.name(i),
                    free_mb=free / _BYTES_PER_MB,
                    total_mb=total / _BYTES_PER_MB,
                    capability=self.backend.capability(i),
                    kind=self.backend.kind,
                )
            except Exception as e:
                raise DeviceQueryError(f"Memory query for device {i} failed: {e}") from e
            logger.info(
                "Device %d (%s): %.0f MB free of %.0f MB",
                i, device.name, device.free_mb, device.total_mb,
            )
            devices.append(device)

        self._devices = tuple(devices)
        return self._devices

    def select_best(self) -> int:
        """Return the id of the device with the highest capability.

        Ties go to the lowest id.
        """
        if not self.devices:
            raise DeviceQueryError("No compute devices available")
        best = max(self.devices, key=lambda d: (d.capability, -d.id))
        logger.info("Best device: %d (%s)", best.id, best.name)
        return best.id

    def reset_all(self) -> None:
        """Reset every enumerated device. Safe to call repeatedly."""
        for device in self.devices:
            logger.info("Resetting device %d", device.id)
            self.backend.reset(device.id)

    def initialize(self) -> Device:
        """Enumerate, reset and activate the best device.

        Returns:
            The active device

        Raises:
            DeviceStateError: If a device is already active
            DeviceQueryError: If enumeration fails
        """
        if self._active is not None:
            raise DeviceStateError(
                f"Device {self._active} is already active. Call shutdown() first."
            )
        self.enumerate()
        self.reset_all()
        best = self.select_best()
        self.backend.set_active(best)
        self._active = best
        return self.devices[best]

    def shutdown(self) -> None:
        """Reset every device and clear the active selection."""
        if self._devices is not None:
            self.reset_all()
        if self._active is not None:
            logger.info("Releasing active device %d", self._active)
        self._active = None

    def assignment(self, count: int) -> list[int]:
        """Device ids for `count` partitions, active device first.

        Raises:
            ValueError: If more partitions than devices are requested
        """
        if count < 1 or count > self.num_devices:
            raise ValueError(
                f"Partition count must be in [1, {self.num_devices}], got {count}"
            )
        first = self._active if self._active is not None else 0
        order = [first] + [d.id for d in self.devices if d.id != first]
        return order[:count]

    def synchronize(self, timeout: float | None = None, device_ids: list[int] | None = None) -> None:
        """Wait for all queued device work to finish, with a bounded wait.

        Args:
            timeout: Seconds to wait (default: self.sync_timeout)
            device_ids: Devices to synchronize (default: all)

        Raises:
            DeviceTimeoutError: If the barrier does not complete in time
        """
        timeout = self.sync_timeout if timeout is None else timeout
        ids = [d.id for d in self.devices] if device_ids is None else list(device_ids)

        def barrier():
            for i in ids:
                self.backend.synchronize(i)

        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="device-sync")
        try:
            future = pool.submit(barrier)
            future.result(timeout=timeout)
        except FutureTimeoutError as e:
            raise DeviceTimeoutError(
                f"Device synchronization did not finish within {timeout} s"
            ) from e
        finally:
            # A hung barrier thread cannot be killed; do not wait for it
            pool.shutdown(wait=False)
