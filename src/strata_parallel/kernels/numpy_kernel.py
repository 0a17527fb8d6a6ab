"""Reference compute kernel on the host, using NumPy arrays.

Update (standard rectilinear scheme, Courant number λ = 1/√3):

    p⁺ = [(2 - λ²K)·p + λ²·Σ p_nb - (1 - d·L)·p⁻] / (1 + d·L)

where K is the number of air neighbours of a cell, L = λ(6 - K)β/2 the loss
term of a boundary cell with admittance β, and d = ±1 the step direction.
Cells outside the room are held at zero. The (p, p⁻) pair always holds the
current field and the field one step behind in the stepping direction, so a
change of direction is itself one step: swapping the pair.

Subclasses only override the array hooks (_zeros, _to_device, _to_host,
_transfer) to run the same update on another array library.
"""

from __future__ import annotations

import numpy as np
from numpy.typing import NDArray

from strata_parallel.core.mesh import FULL_NEIGHBOURS, Mesh, Orientation, Partition
from strata_parallel.core.parameters import SimulationParameters, UpdateScheme
from strata_parallel.core.responses import ResponseBuffer

from .base import ComputeKernel


def _pad_slab(volume: NDArray, z_start: int, z_end: int) -> NDArray:
    """Copy of volume[:, :, z_start-1:z_end+1], zero beyond the mesh."""
    nx, ny, nz = volume.shape
    slab = np.zeros((nx, ny, z_end - z_start + 2), dtype=volume.dtype)
    lo = max(z_start - 1, 0)
    hi = min(z_end + 1, nz)
    slab[:, :, lo - (z_start - 1):hi - (z_start - 1)] = volume[:, :, lo:hi]
    return slab


class NumpyKernel(ComputeKernel):
    """Runs every partition on the host."""

    name = "numpy"

    # -------------------------------------------------------------------------
    # Array hooks
    # -------------------------------------------------------------------------

    def _to_device(self, array: NDArray, part: Partition, dtype):
        return np.ascontiguousarray(array, dtype=dtype)

    def _zeros(self, shape, part: Partition, dtype):
        return np.zeros(shape, dtype=dtype)

    def _zeros_like(self, array):
        return np.zeros_like(array)

    def _to_host(self, array) -> NDArray:
        return np.asarray(array)

    def _transfer(self, array, part: Partition):
        return array

    # -------------------------------------------------------------------------
    # Allocation
    # -------------------------------------------------------------------------

    def allocate(self, mesh: Mesh, devices=None) -> None:
        """Create field storage for every partition.

        Args:
            mesh: Partitioned mesh
            devices: Device records indexed by id (unused on the host)
        """
        if not mesh.partitions:
            mesh.make_partition(1)

        dtype = mesh.dtype
        courant = UpdateScheme(mesh.scheme).courant
        inside = mesh.inside.astype(dtype)
        neighbours = mesh.neighbours.astype(dtype)
        loss = (courant * (FULL_NEIGHBOURS - neighbours) * mesh.admittance / 2.0) * inside

        for part in mesh.partitions:
            nx, ny, _ = mesh.dims
            shape = (nx, ny, part.depth + 2)
            part.fields = {
                "p": self._zeros(shape, part, dtype),
                "p_prev": self._zeros(shape, part, dtype),
                "inside": self._to_device(_pad_slab(inside, part.z_start, part.z_end), part, dtype),
                "k": self._to_device(_pad_slab(neighbours, part.z_start, part.z_end), part, dtype),
                "loss": self._to_device(_pad_slab(loss.astype(dtype), part.z_start, part.z_end), part, dtype),
            }
        mesh.last_direction = 1

    def _check_allocated(self, mesh: Mesh) -> None:
        if not mesh.partitions or "p" not in mesh.partitions[0].fields:
            raise RuntimeError("Mesh fields not allocated. Call allocate() first.")

    # -------------------------------------------------------------------------
    # Stepping
    # -------------------------------------------------------------------------

    def _update(self, part: Partition, direction: int, l2: float) -> None:
        f = part.fields
        p = f["p"]
        s = self._zeros_like(p)
        s[1:-1, 1:-1, 1:-1] = (
            p[2:, 1:-1, 1:-1] + p[:-2, 1:-1, 1:-1]
            + p[1:-1, 2:, 1:-1] + p[1:-1, :-2, 1:-1]
            + p[1:-1, 1:-1, 2:] + p[1:-1, 1:-1, :-2]
        )
        loss = f["loss"] * direction
        p_next = f["inside"] * (
            ((2.0 - l2 * f["k"]) * p + l2 * s - (1.0 - loss) * f["p_prev"]) / (1.0 + loss)
        )
        f["p_prev"] = p
        f["p"] = p_next

    def _exchange_halos(self, mesh: Mesh) -> None:
        parts = mesh.partitions
        for lower, upper in zip(parts[:-1], parts[1:]):
            p_lo = lower.fields["p"]
            p_hi = upper.fields["p"]
            p_lo[:, :, -1] = self._transfer(p_hi[:, :, 1], lower)
            p_hi[:, :, 0] = self._transfer(p_lo[:, :, -2], upper)

    def _inject_sources(self, mesh: Mesh, parameters: SimulationParameters, step: int) -> None:
        for i, (x, y, z) in enumerate(parameters.source_elements):
            sample = parameters.source_sample(i, step)
            if sample == 0.0:
                continue
            part = mesh.partition_for(z)
            part.fields["p"][x, y, part.local_z(z)] += sample

    def _withdraw_sources(self, mesh: Mesh, parameters: SimulationParameters, step: int) -> None:
        # p_prev holds the field that received these samples on the way forward
        for i, (x, y, z) in enumerate(parameters.source_elements):
            sample = parameters.source_sample(i, step)
            if sample == 0.0:
                continue
            part = mesh.partition_for(z)
            part.fields["p_prev"][x, y, part.local_z(z)] -= sample

    def _record_receivers(
        self, mesh: Mesh, parameters: SimulationParameters, responses: ResponseBuffer, step: int
    ) -> None:
        samples = np.empty(len(parameters.receiver_elements), dtype=responses.data.dtype)
        for i, (x, y, z) in enumerate(parameters.receiver_elements):
            part = mesh.partition_for(z)
            samples[i] = part.fields["p"][x, y, part.local_z(z)]
        responses.record(step, samples)

    def run_one_step(
        self,
        mesh: Mesh,
        parameters: SimulationParameters,
        responses: ResponseBuffer | None,
        step: int,
        direction: int,
    ) -> None:
        """Advance the field by one step.

        Sources are injected and receivers recorded only when stepping
        forward. A reverse step at counter `step` first withdraws the samples
        injected by forward step `step`, so replays stay exact with driven
        sources. Reversing direction swaps the field pair instead of
        updating.
        """
        if direction not in (1, -1):
            raise ValueError(f"direction must be 1 or -1, got {direction}")
        self._check_allocated(mesh)

        if direction != mesh.last_direction:
            for part in mesh.partitions:
                f = part.fields
                f["p"], f["p_prev"] = f["p_prev"], f["p"]
            mesh.last_direction = direction
            return

        if direction < 0:
            self._withdraw_sources(mesh, parameters, step)

        l2 = parameters.courant ** 2
        for part in mesh.partitions:
            self._update(part, direction, l2)

        if direction > 0:
            self._inject_sources(mesh, parameters, step)
        self._exchange_halos(mesh)

        if direction > 0 and responses is not None and parameters.receiver_elements:
            self._record_receivers(mesh, parameters, responses, step)

    # -------------------------------------------------------------------------
    # Field access
    # -------------------------------------------------------------------------

    def pressure_slice(self, mesh: Mesh, orientation: int, index: int) -> NDArray[np.floating]:
        self._check_allocated(mesh)
        orientation = Orientation(orientation)
        if orientation == Orientation.XY:
            part = mesh.partition_for(index)
            plane = self._to_host(part.fields["p"][:, :, part.local_z(index)])
            return np.array(plane.T)

        planes = []
        for part in mesh.partitions:
            p = part.fields["p"]
            if orientation == Orientation.XZ:
                planes.append(self._to_host(p[:, index, 1:-1]))
            else:
                planes.append(self._to_host(p[index, :, 1:-1]))
        return np.array(np.concatenate(planes, axis=1).T)

    def pressure_volume(self, mesh: Mesh) -> NDArray[np.floating]:
        self._check_allocated(mesh)
        slabs = [self._to_host(part.fields["p"][:, :, 1:-1]) for part in mesh.partitions]
        return np.concatenate(slabs, axis=2)

    def reset_pressures(self, mesh: Mesh) -> None:
        self._check_allocated(mesh)
        for part in mesh.partitions:
            f = part.fields
            f["p"] = self._zeros_like(f["p"])
            f["p_prev"] = self._zeros_like(f["p_prev"])
        mesh.last_direction = 1
