"""Contract of the compute-kernel layer.

The controller drives a simulation only through this interface:

    voxelize(geometry, dx)                       -> VoxelGrid
    setup_mesh(grid, materials, parameters, double) -> Mesh
    allocate(mesh)                               per-partition field storage
    run_one_step(mesh, parameters, responses, step, direction)
    run_all_steps(mesh, parameters, responses, interrupt, progress)
                                                 -> (time_per_step, steps)
    pressure_slice(mesh, orientation, index)     -> host 2D array
    pressure_volume(mesh)                        -> host 3D array
    reset_pressures(mesh)
    synchronize(mesh)
    release(mesh)

Kernel launches on a multi-partition mesh are issued partition by partition
in z order; halos are exchanged once all partitions have been updated.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod

import numpy as np
from numpy.typing import NDArray

from strata_parallel.core.callbacks import InterruptSource, ProgressSink
from strata_parallel.core.mesh import AIR_FLAG, FULL_NEIGHBOURS, NEIGHBOUR_MASK, Mesh
from strata_parallel.core.parameters import SimulationParameters, UpdateScheme
from strata_parallel.core.responses import ResponseBuffer

from .voxelizer import VoxelGrid, voxelize


class ComputeKernel(ABC):
    """Base class of compute kernels."""

    name = "abstract"

    def voxelize(self, geometry, dx: float) -> VoxelGrid:
        """Voxelize a geometry (host-side by default)."""
        return voxelize(geometry, dx)

    def setup_mesh(
        self,
        grid: VoxelGrid,
        materials,
        parameters: SimulationParameters,
        double: bool = False,
    ) -> Mesh:
        """Build a mesh from a voxel grid and a material table.

        Boundary cells get the admittance of their material in the selected
        octave band; the rigid scheme zeroes all admittances.

        Raises:
            ValueError: If the grid references a material the table lacks
        """
        material_idx = grid.material_idx
        if material_idx.size and int(material_idx.max()) >= materials.num_materials:
            raise ValueError(
                f"Voxel material index {int(material_idx.max())} has no entry in "
                f"a table of {materials.num_materials} materials"
            )

        dtype = np.float64 if double else np.float32
        if parameters.scheme == UpdateScheme.SRL_RIGID:
            admittance = np.zeros(grid.dims, dtype=dtype)
        else:
            coefficients = materials.material_coefficients(parameters.octave)
            position = grid.position_idx
            boundary = ((position & AIR_FLAG) != 0) & ((position & NEIGHBOUR_MASK) < FULL_NEIGHBOURS)
            admittance = np.where(boundary, coefficients[material_idx], 0.0).astype(dtype)

        return Mesh(
            position_idx=grid.position_idx,
            material_idx=material_idx,
            admittance=admittance,
            is_double=double,
            scheme=int(parameters.scheme),
        )

    @abstractmethod
    def allocate(self, mesh: Mesh, devices=None) -> None:
        """Create field storage for every partition of the mesh."""

    @abstractmethod
    def run_one_step(
        self,
        mesh: Mesh,
        parameters: SimulationParameters,
        responses: ResponseBuffer | None,
        step: int,
        direction: int,
    ) -> None:
        """Advance the field by one step in the given direction (±1)."""

    @abstractmethod
    def pressure_slice(self, mesh: Mesh, orientation: int, index: int) -> NDArray[np.floating]:
        """Host copy of a pressure slice, shape (height, width)."""

    @abstractmethod
    def pressure_volume(self, mesh: Mesh) -> NDArray[np.floating]:
        """Host copy of the full (nx, ny, nz) pressure field."""

    @abstractmethod
    def reset_pressures(self, mesh: Mesh) -> None:
        """Zero all field state of the mesh."""

    def synchronize(self, mesh: Mesh | None = None) -> None:
        """Wait for queued work on the mesh's devices."""

    def release(self, mesh: Mesh) -> None:
        """Drop all field storage of the mesh."""
        for part in mesh.partitions:
            part.fields.clear()

    def run_all_steps(
        self,
        mesh: Mesh,
        parameters: SimulationParameters,
        responses: ResponseBuffer,
        interrupt: InterruptSource,
        progress: ProgressSink | None = None,
    ) -> tuple[float, int]:
        """Run the whole step budget forward from step 0.

        The interrupt source is polled after every step.

        Returns:
            (average time per step in seconds, number of steps run)
        """
        num_steps = parameters.num_steps
        start = time.perf_counter()
        steps = 0
        for step in range(num_steps):
            self.run_one_step(mesh, parameters, responses, step, 1)
            steps += 1
            if progress is not None:
                progress.on_progress(steps, num_steps, (time.perf_counter() - start) / steps)
            if interrupt.is_interrupted():
                break
        self.synchronize(mesh)
        elapsed = time.perf_counter() - start
        return elapsed / max(steps, 1), steps
