"""Indexed triangle-list room geometry."""

from __future__ import annotations

import numpy as np
from numpy.typing import NDArray

from strata_parallel.core.errors import GeometryLoadError


class Geometry:
    """Closed triangle surface bounding the simulated air volume.

    Args:
        vertices: (n_vertices, 3) vertex positions in metres
        indices: (n_triangles, 3) vertex indices of each triangle
        material_indices: (n_triangles,) material index per triangle
            (default: all zero)

    Raises:
        GeometryLoadError: If the arrays are inconsistent
    """

    def __init__(
        self,
        vertices: NDArray[np.floating],
        indices: NDArray[np.integer],
        material_indices: NDArray[np.integer] | None = None,
    ):
        vertices = np.asarray(vertices, dtype=np.float64)
        indices = np.asarray(indices, dtype=np.int64)

        if vertices.ndim != 2 or vertices.shape[1] != 3:
            raise GeometryLoadError(f"vertices must have shape (n, 3), got {vertices.shape}")
        if indices.ndim != 2 or indices.shape[1] != 3:
            raise GeometryLoadError(f"indices must have shape (m, 3), got {indices.shape}")
        if indices.size and (indices.min() < 0 or indices.max() >= len(vertices)):
            raise GeometryLoadError("Triangle index out of range of the vertex list")
        if not np.all(np.isfinite(vertices)):
            raise GeometryLoadError("vertices contain non-finite values")

        if material_indices is None:
            material_indices = np.zeros(len(indices), dtype=np.int64)
        material_indices = np.asarray(material_indices, dtype=np.int64).ravel()
        if material_indices.shape[0] != indices.shape[0]:
            raise GeometryLoadError(
                f"{material_indices.shape[0]} material indices for {indices.shape[0]} triangles"
            )
        if material_indices.size and material_indices.min() < 0:
            raise GeometryLoadError("Material indices must be non-negative")

        self.vertices = vertices
        self.indices = indices
        self.material_indices = material_indices

    @classmethod
    def box(cls, size: tuple[float, float, float], origin=(0.0, 0.0, 0.0), material: int = 0) -> Geometry:
        """Axis-aligned shoebox room.

        Args:
            size: Room dimensions (lx, ly, lz) in metres
            origin: Lower corner of the room
            material: Material index of all walls
        """
        lx, ly, lz = size
        ox, oy, oz = origin
        vertices = np.array(
            [
                [0, 0, 0], [lx, 0, 0], [lx, ly, 0], [0, ly, 0],
                [0, 0, lz], [lx, 0, lz], [lx, ly, lz], [0, ly, lz],
            ],
            dtype=np.float64,
        ) + np.array([ox, oy, oz])
        # Outward-facing triangles, two per face
        indices = np.array(
            [
                [0, 2, 1], [0, 3, 2],  # floor
                [4, 5, 6], [4, 6, 7],  # ceiling
                [0, 1, 5], [0, 5, 4],  # y = 0
                [3, 6, 2], [3, 7, 6],  # y = ly
                [0, 4, 7], [0, 7, 3],  # x = 0
                [1, 2, 6], [1, 6, 5],  # x = lx
            ]
        )
        return cls(vertices, indices, np.full(len(indices), material))

    @property
    def num_vertices(self) -> int:
        return int(self.vertices.shape[0])

    @property
    def num_triangles(self) -> int:
        return int(self.indices.shape[0])

    @property
    def num_materials(self) -> int:
        if self.material_indices.size == 0:
            return 0
        return int(self.material_indices.max()) + 1

    @property
    def triangles(self) -> NDArray[np.float64]:
        """(n_triangles, 3, 3) corner coordinates."""
        return self.vertices[self.indices]

    @property
    def bounds(self) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
        """(min corner, max corner) of the vertices used by triangles."""
        used = self.vertices[np.unique(self.indices)] if self.indices.size else self.vertices
        return used.min(axis=0), used.max(axis=0)

    @property
    def bounding_box(self) -> NDArray[np.float64]:
        """Extent of the geometry along x, y and z."""
        lo, hi = self.bounds
        return hi - lo

    def surface_areas(self) -> NDArray[np.float64]:
        """Area of every triangle."""
        tri = self.triangles
        cross = np.cross(tri[:, 1] - tri[:, 0], tri[:, 2] - tri[:, 0])
        return 0.5 * np.linalg.norm(cross, axis=1)

    def surface_area_at(self, i: int) -> float:
        return float(self.surface_areas()[i])

    @property
    def total_surface_area(self) -> float:
        return float(self.surface_areas().sum())

    def estimated_elements(self, dx: float) -> int:
        """Voxel count of the bounding box at grid spacing dx."""
        extent = self.bounding_box / dx
        return int(np.prod(extent))

    def __repr__(self) -> str:
        return f"Geometry(vertices={self.num_vertices}, triangles={self.num_triangles})"
