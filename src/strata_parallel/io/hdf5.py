"""HDF5 storage of simulation results.

File structure:
    results.h5
    ├─ /metadata (attributes: created_at, version, script_hash, script_content)
    ├─ /grid (attributes: dims, dx, num_elements, num_air_elements,
    │         num_boundary_elements)
    │  ├─ /position_idx (uint8 voxel encoding)
    │  └─ /material_idx (uint8 material ids)
    ├─ /simulation (attributes: dt, spatial_fs, courant, c, scheme, octave,
    │               precision, num_partitions, device_ids, num_steps,
    │               steps_completed, state)
    ├─ /metrics (attributes: volume, surface_area, absorption_area, ...)
    ├─ /sources/source_{i} (attributes: position, element)
    ├─ /receivers (dataset: (num_steps, num_receivers) responses;
    │              attributes: positions, elements)
    └─ /fields/pressure (dataset: (n, nx, ny, nz) volume captures)
       └─ /fields/steps (dataset: step of each capture)

Example:
    >>> writer = HDF5ResultWriter("results.h5", controller)
    >>> responses = controller.run()
    >>> writer.finalize(responses, runtime=12.5)
    >>> with HDF5ResultReader("results.h5") as reader:
    ...     ir = reader.load_receiver(0)
"""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any

import h5py
import numpy as np
from numpy.typing import NDArray

if TYPE_CHECKING:
    from strata_parallel.core.controller import SimulationController
    from strata_parallel.core.responses import ResponseBuffer


class HDF5ResultWriter:
    """Writer for the results of one controller run.

    Metadata and the voxel grid are written on construction, volume
    captures as they arrive (the writer is a volume sink), and receiver
    responses on finalize().

    Args:
        filename: Output file path
        controller: Controller with an initialized mesh
        script_content: Source script for reproducibility
        compression: Compression algorithm ('gzip', 'lzf', None)
        compression_level: Compression level (0-9 for gzip)
    """

    def __init__(
        self,
        filename: str | Path,
        controller: SimulationController,
        script_content: str | None = None,
        compression: str | None = "gzip",
        compression_level: int = 4,
    ):
        self.filename = Path(filename)
        self.controller = controller
        self.compression = compression
        self.compression_opts = compression_level if compression == "gzip" else None
        self.file = h5py.File(self.filename, "w")
        self._pressure = None
        self._steps = None

        self._write_metadata(script_content)

    def _write_metadata(self, script_content: str | None) -> None:
        from strata_parallel import __version__

        controller = self.controller
        mesh = controller.mesh
        params = controller.parameters

        meta = self.file.create_group("metadata")
        if script_content:
            meta.attrs["script_hash"] = hashlib.sha256(script_content.encode()).hexdigest()
            meta.attrs["script_content"] = script_content
        meta.attrs["created_at"] = datetime.now(timezone.utc).isoformat()
        meta.attrs["version"] = __version__

        grid = self.file.create_group("grid")
        grid.attrs["dims"] = list(mesh.dims)
        grid.attrs["dx"] = params.dx
        grid.attrs["num_elements"] = mesh.num_elements
        grid.attrs["num_air_elements"] = mesh.num_air_elements
        grid.attrs["num_boundary_elements"] = mesh.num_boundary_elements
        grid.create_dataset(
            "position_idx",
            data=mesh.position_idx,
            compression=self.compression,
            compression_opts=self.compression_opts,
        )
        grid.create_dataset(
            "material_idx",
            data=mesh.material_idx,
            compression=self.compression,
            compression_opts=self.compression_opts,
        )

        sim = self.file.create_group("simulation")
        sim.attrs["dt"] = params.dt
        sim.attrs["spatial_fs"] = params.spatial_fs
        sim.attrs["courant"] = params.courant
        sim.attrs["c"] = params.c
        sim.attrs["scheme"] = params.scheme.name
        sim.attrs["octave"] = params.octave
        sim.attrs["precision"] = "double" if mesh.is_double else "single"
        sim.attrs["num_partitions"] = mesh.num_partitions
        sim.attrs["device_ids"] = list(controller.device_ids)
        sim.attrs["num_steps"] = params.num_steps

        if controller.metrics is not None:
            metrics = self.file.create_group("metrics")
            for key, value in controller.metrics.report(params.octave).items():
                metrics.attrs[key] = value

        sources = self.file.create_group("sources")
        for i, position in enumerate(params.sources):
            src = sources.create_group(f"source_{i}")
            src.attrs["position"] = list(position)
            src.attrs["element"] = list(params.source_elements[i])

    # -------------------------------------------------------------------------
    # Volume sink
    # -------------------------------------------------------------------------

    def write_volume(self, step: int, volume: NDArray[np.floating]) -> None:
        """Append a full pressure volume captured at `step`."""
        shape = tuple(volume.shape)
        if self._pressure is None:
            fields = self.file.create_group("fields")
            self._pressure = fields.create_dataset(
                "pressure",
                shape=(0,) + shape,
                maxshape=(None,) + shape,
                dtype=volume.dtype,
                chunks=(1,) + shape,
                compression=self.compression,
                compression_opts=self.compression_opts,
            )
            self._pressure.attrs["units"] = "Pa"
            self._steps = fields.create_dataset("steps", shape=(0,), maxshape=(None,), dtype=np.int64)

        idx = self._pressure.shape[0]
        self._pressure.resize((idx + 1,) + shape)
        self._pressure[idx] = volume
        self._steps.resize((idx + 1,))
        self._steps[idx] = step

    def finalize(self, responses: ResponseBuffer | None = None, runtime: float | None = None, **extra_metadata):
        """Write the responses and final metadata, then close the file.

        Args:
            responses: Receiver responses of the run
            runtime: Total wall-clock runtime in seconds
            **extra_metadata: Additional metadata attributes
        """
        if not self.file:
            return
        controller = self.controller
        params = controller.parameters

        if responses is not None:
            dataset = self.file.create_dataset(
                "receivers",
                data=responses.data,
                compression=self.compression if responses.data.size else None,
                compression_opts=self.compression_opts if responses.data.size else None,
            )
            if params.num_receivers:
                dataset.attrs["positions"] = np.asarray(params.receivers, dtype=np.float64).reshape(-1, 3)
                dataset.attrs["elements"] = np.asarray(params.receiver_elements, dtype=np.int64).reshape(-1, 3)
            dataset.attrs["sample_rate"] = params.spatial_fs
            self.file["simulation"].attrs["steps_completed"] = responses.steps_completed

        self.file["simulation"].attrs["state"] = controller.state.value
        if controller.time_per_step is not None:
            self.file["simulation"].attrs["time_per_step"] = controller.time_per_step
        if runtime is not None:
            self.file["metadata"].attrs["total_runtime_seconds"] = runtime
        for key, value in extra_metadata.items():
            self.file["metadata"].attrs[key] = value

        self.file.flush()
        self.file.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.file:
            self.finalize()


class HDF5ResultReader:
    """Reader for result files written by HDF5ResultWriter.

    Example:
        >>> reader = HDF5ResultReader("results.h5")
        >>> metadata = reader.get_metadata()
        >>> responses = reader.load_responses()
        >>> volume = reader.load_volume(100)
    """

    def __init__(self, filename: str | Path):
        self.filename = Path(filename)
        self.file = h5py.File(filename, "r")

    def get_metadata(self) -> dict[str, Any]:
        """Extract all attributes of the metadata, grid, simulation and
        metrics groups, and the source definitions."""
        metadata = {}
        for group in ("metadata", "grid", "simulation", "metrics"):
            if group in self.file:
                metadata[group] = dict(self.file[group].attrs)
        if "sources" in self.file:
            metadata["sources"] = [dict(self.file[f"sources/{name}"].attrs) for name in self.file["sources"]]
        return metadata

    def load_responses(self) -> NDArray[np.floating]:
        """(num_steps, num_receivers) receiver responses."""
        if "receivers" not in self.file:
            raise ValueError("No receiver data in file")
        return self.file["receivers"][:]

    def load_receiver(self, index: int) -> NDArray[np.floating]:
        responses = self.load_responses()
        if not 0 <= index < responses.shape[1]:
            raise KeyError(f"Receiver {index} not found. Available: 0..{responses.shape[1] - 1}")
        return responses[:, index]

    def receiver_positions(self) -> NDArray[np.float64]:
        if "receivers" not in self.file or "positions" not in self.file["receivers"].attrs:
            return np.zeros((0, 3))
        return self.file["receivers"].attrs["positions"][:]

    def get_volume_steps(self) -> list[int]:
        """Steps at which volumes were captured."""
        if "fields/steps" not in self.file:
            return []
        return [int(s) for s in self.file["fields/steps"][:]]

    def load_volume(self, step: int) -> NDArray[np.floating]:
        """Pressure volume captured at `step`."""
        steps = self.get_volume_steps()
        if step not in steps:
            raise KeyError(f"No volume captured at step {step}. Available: {steps}")
        return self.file["fields/pressure"][steps.index(step)]

    def load_grid(self) -> tuple[NDArray[np.uint8], NDArray[np.uint8]]:
        """(position_idx, material_idx) voxel fields."""
        return self.file["grid/position_idx"][:], self.file["grid/material_idx"][:]

    def close(self):
        if self.file:
            self.file.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
