"""Partitioning policy: how many devices a mesh is split across.

The footprint of a mesh is estimated from its element count and a fixed
per-element byte cost that depends on precision. The constants are policy,
not physics, and live in MemoryPolicy so callers can tune them for their
update scheme.

Decision order for MeshPartitioner.decide():
    1. footprint > summed free memory        -> ResourceExhaustionError
    2. valid forced count (1 <= n <= devices) -> n
    3. elements below the single-partition limit -> 1
    4. otherwise the requested count (clamped to the device count)
The chosen configuration is finally checked against the free memory of the
devices it will actually use.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

from .devices import Device
from .errors import ResourceExhaustionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MemoryPolicy:
    """Per-element memory costs and the single-partition element limit.

    Args:
        bytes_per_element_single: Device bytes per element, single precision
        bytes_per_element_double: Device bytes per element, double precision
        single_partition_element_limit: Meshes below this many elements stay
            on one partition (halved for double precision)
    """

    bytes_per_element_single: float = 8.0
    bytes_per_element_double: float = 18.0
    single_partition_element_limit: int = 90_000_000

    def __post_init__(self):
        if self.bytes_per_element_single <= 0 or self.bytes_per_element_double <= 0:
            raise ValueError("Per-element byte costs must be positive")
        if self.single_partition_element_limit < 1:
            raise ValueError(
                f"single_partition_element_limit must be >= 1, "
                f"got {self.single_partition_element_limit}"
            )

    def bytes_per_element(self, double: bool) -> float:
        return self.bytes_per_element_double if double else self.bytes_per_element_single

    def element_limit(self, double: bool) -> int:
        if double:
            return self.single_partition_element_limit // 2
        return self.single_partition_element_limit


def estimate_footprint_mb(num_elements: int, double: bool, policy: MemoryPolicy | None = None) -> float:
    """Estimated device memory of a mesh in MB (1 MB = 1e6 bytes)."""
    policy = policy or MemoryPolicy()
    return num_elements * policy.bytes_per_element(double) / 1e6


def _free_mb(memory: Sequence[Device] | Sequence[float]) -> list[float]:
    return [m.free_mb if isinstance(m, Device) else float(m) for m in memory]


class MeshPartitioner:
    """Decides the partition count of a mesh under a memory budget.

    Args:
        policy: Memory cost constants (default: MemoryPolicy())
    """

    def __init__(self, policy: MemoryPolicy | None = None):
        self.policy = policy or MemoryPolicy()

    def footprint_mb(self, num_elements: int, double: bool) -> float:
        return estimate_footprint_mb(num_elements, double, self.policy)

    def check_budget(
        self,
        num_elements: int,
        double: bool,
        device_memory: Sequence[Device] | Sequence[float],
    ) -> float:
        """Reject a mesh that cannot fit in the summed free memory.

        Args:
            num_elements: Estimated element count
            double: True for double precision
            device_memory: Devices, or their free memory in MB

        Returns:
            The estimated footprint in MB

        Raises:
            ResourceExhaustionError: If the footprint exceeds the budget
        """
        footprint = self.footprint_mb(num_elements, double)
        available = sum(_free_mb(device_memory))
        precision = "double" if double else "single"

        logger.info(
            "Estimated size: %d elements, %s precision, %.2f MB (budget %.0f MB)",
            num_elements, precision, footprint, available,
        )

        if footprint > available:
            logger.error("Estimated size of %d elements too large, aborting", num_elements)
            raise ResourceExhaustionError(
                f"Mesh of {num_elements} elements needs {footprint:.1f} MB in "
                f"{precision} precision, only {available:.1f} MB available",
                required_mb=footprint,
                available_mb=available,
            )
        return footprint

    def decide(
        self,
        num_elements: int,
        double: bool,
        device_memory: Sequence[Device] | Sequence[float],
        forced: int | None = None,
        requested: int = 2,
        assignment: Sequence[int] | None = None,
    ) -> int:
        """Choose the number of partitions for a mesh.

        Args:
            num_elements: Element count of the mesh
            double: True for double precision
            device_memory: Devices, or their free memory in MB, indexed by id
            forced: Forced partition count; used when 1 <= forced <= devices
            requested: Count used above the single-partition element limit
            assignment: Device ids in the order partitions are placed on
                them (default: 0, 1, 2, ...)

        Returns:
            The partition count

        Raises:
            ResourceExhaustionError: If the mesh does not fit in the summed
                free memory, or the chosen partitions do not fit on the
                devices assigned to them
        """
        free = _free_mb(device_memory)
        num_devices = len(free)
        footprint = self.check_budget(num_elements, double, free)

        if forced is not None and 1 <= forced <= num_devices:
            count = forced
            logger.debug("Forcing partition count to %d", count)
        elif num_elements < self.policy.element_limit(double):
            count = 1
            logger.debug("Element count below limit, 1 partition")
        else:
            count = max(1, min(requested, num_devices))
            if count != requested:
                logger.warning(
                    "Requested %d partitions but only %d devices, using %d",
                    requested, num_devices, count,
                )
            logger.debug("Element count above limit, %d partitions", count)

        order = list(assignment) if assignment is not None else list(range(num_devices))
        used = sum(free[i] for i in order[:count])
        if footprint > used:
            raise ResourceExhaustionError(
                f"{count} partition(s) need {footprint:.1f} MB but their devices "
                f"only have {used:.1f} MB free",
                required_mb=footprint,
                available_mb=used,
            )
        return count
