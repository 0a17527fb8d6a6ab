"""Voxelized simulation mesh and its partitioning into z-slabs.

Voxel encoding:
    position_idx (uint8): bit 7 marks a cell inside the room (air), the low
        seven bits hold the number of face neighbours that are also inside
        (0-6). Interior air cells have 6, boundary cells fewer.
    material_idx (uint8): material of a boundary cell (0 elsewhere).

A mesh is split along z into contiguous slabs, one per partition. Each slab
holds one halo plane on either side; the kernel that owns the field arrays
exchanges halos after every step.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any

import numpy as np
from numpy.typing import NDArray

AIR_FLAG = 0x80
NEIGHBOUR_MASK = 0x7F
FULL_NEIGHBOURS = 6


class Orientation(IntEnum):
    """Orientation of a 2D slice through the volume.

    XY slices are indexed along z, XZ along y and YZ along x.
    """

    XY = 0
    XZ = 1
    YZ = 2


def slice_shape(dims: tuple[int, int, int], orientation: int) -> tuple[int, int]:
    """(width, height) of a slice in the given orientation."""
    nx, ny, nz = dims
    orientation = Orientation(orientation)
    if orientation == Orientation.XY:
        return nx, ny
    if orientation == Orientation.XZ:
        return nx, nz
    return ny, nz


def take_slice(volume, orientation: int, index: int):
    """Cut a 2D slice from an (nx, ny, nz) volume.

    Returns an array of shape (height, width) so that rows run along the
    second in-plane axis, matching image layout.
    """
    orientation = Orientation(orientation)
    if orientation == Orientation.XY:
        return volume[:, :, index].T
    if orientation == Orientation.XZ:
        return volume[:, index, :].T
    return volume[index, :, :].T


def slice_axis(orientation: int) -> int:
    """Volume axis that a slice index runs along."""
    return {Orientation.XY: 2, Orientation.XZ: 1, Orientation.YZ: 0}[Orientation(orientation)]


@dataclass
class Partition:
    """A contiguous z-slab of the mesh assigned to one device.

    Args:
        index: Position of the slab in z order
        device_id: Device holding the slab
        z_start: First global z index owned by the slab
        z_end: One past the last global z index owned by the slab
        fields: Kernel-owned arrays (with one halo plane on each z side)
    """

    index: int
    device_id: int
    z_start: int
    z_end: int
    fields: dict[str, Any] = field(default_factory=dict)

    @property
    def depth(self) -> int:
        return self.z_end - self.z_start

    def local_z(self, z: int) -> int:
        """Local array index of global z (accounting for the halo)."""
        return z - self.z_start + 1


@dataclass
class Mesh:
    """Voxelized simulation state.

    Args:
        position_idx: (nx, ny, nz) uint8 position encoding
        material_idx: (nx, ny, nz) uint8 material indices
        admittance: (nx, ny, nz) boundary admittance for the selected octave
        is_double: True for double-precision fields
        scheme: Update scheme value the mesh was set up for
    """

    position_idx: NDArray[np.uint8]
    material_idx: NDArray[np.uint8]
    admittance: NDArray[np.floating]
    is_double: bool = False
    scheme: int = 0
    partitions: list[Partition] = field(default_factory=list)
    last_direction: int = 1

    def __post_init__(self):
        if self.position_idx.ndim != 3:
            raise ValueError(f"position_idx must be 3D, got shape {self.position_idx.shape}")
        if self.material_idx.shape != self.position_idx.shape:
            raise ValueError(
                f"material_idx shape {self.material_idx.shape} doesn't match "
                f"position_idx shape {self.position_idx.shape}"
            )
        if self.admittance.shape != self.position_idx.shape:
            raise ValueError(
                f"admittance shape {self.admittance.shape} doesn't match "
                f"position_idx shape {self.position_idx.shape}"
            )

    @property
    def dims(self) -> tuple[int, int, int]:
        return tuple(int(n) for n in self.position_idx.shape)

    @property
    def dtype(self):
        return np.float64 if self.is_double else np.float32

    @property
    def inside(self) -> NDArray[np.bool_]:
        return (self.position_idx & AIR_FLAG) != 0

    @property
    def neighbours(self) -> NDArray[np.uint8]:
        return self.position_idx & NEIGHBOUR_MASK

    @property
    def boundary(self) -> NDArray[np.bool_]:
        return self.inside & (self.neighbours != FULL_NEIGHBOURS)

    @property
    def num_elements(self) -> int:
        return int(self.position_idx.size)

    @property
    def num_boundary_elements(self) -> int:
        return int(np.count_nonzero(self.boundary))

    @property
    def num_air_elements(self) -> int:
        return int(np.count_nonzero(self.inside)) - self.num_boundary_elements

    @property
    def num_partitions(self) -> int:
        return len(self.partitions)

    def make_partition(self, count: int, device_ids: list[int] | None = None) -> list[Partition]:
        """Split the mesh into `count` z-slabs.

        Slab depths differ by at most one plane. Any previously allocated
        field storage is dropped.

        Args:
            count: Number of partitions
            device_ids: Device for each partition (default: 0..count-1)
        """
        nz = self.dims[2]
        if count < 1 or count > nz:
            raise ValueError(f"Partition count must be in [1, {nz}], got {count}")
        if device_ids is None:
            device_ids = list(range(count))
        if len(device_ids) != count:
            raise ValueError(f"Need {count} device ids, got {len(device_ids)}")

        bounds = np.linspace(0, nz, count + 1).round().astype(int)
        self.partitions = [
            Partition(index=i, device_id=device_ids[i], z_start=int(bounds[i]), z_end=int(bounds[i + 1]))
            for i in range(count)
        ]
        return self.partitions

    def partition_for(self, z: int) -> Partition:
        """Partition that owns global z index `z`."""
        for part in self.partitions:
            if part.z_start <= z < part.z_end:
                return part
        raise IndexError(f"z index {z} outside mesh of depth {self.dims[2]}")

    def position_slice(self, orientation: int, index: int) -> NDArray[np.uint8]:
        return np.ascontiguousarray(take_slice(self.position_idx, orientation, index))

    def material_slice(self, orientation: int, index: int) -> NDArray[np.uint8]:
        return np.ascontiguousarray(take_slice(self.material_idx, orientation, index))
