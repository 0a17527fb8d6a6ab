"""Geometry file loading.

Supported formats:
    .vtk  Legacy ASCII VTK POLYDATA with POINTS and POLYGONS sections and an
          optional CELL_DATA scalar array holding per-polygon material
          indices. Polygons with more than three corners are fan-triangulated.
    .npz  NumPy archive with 'vertices', 'indices' and optional 'materials'.

Any problem reading or parsing a file raises GeometryLoadError.
"""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np

from strata_parallel.core.errors import GeometryLoadError

from .triangles import Geometry

logger = logging.getLogger(__name__)


def load_geometry(path: str | Path) -> Geometry:
    """Load a geometry file, dispatching on the extension.

    Raises:
        GeometryLoadError: If the file is missing, unreadable or malformed
    """
    path = Path(path)
    logger.debug("Loading geometry from %s", path)

    suffix = path.suffix.lower()
    if suffix == ".vtk":
        geometry = read_vtk(path)
    elif suffix == ".npz":
        geometry = read_npz(path)
    else:
        raise GeometryLoadError(f"Unsupported geometry format '{suffix}' ({path})")

    if geometry.num_triangles == 0:
        raise GeometryLoadError(f"{path} contains no triangles")

    logger.info(
        "Loaded %s: %d vertices, %d triangles, %d materials",
        path.name, geometry.num_vertices, geometry.num_triangles, geometry.num_materials,
    )
    return geometry


def read_npz(path: Path) -> Geometry:
    try:
        with np.load(path) as data:
            vertices = data["vertices"]
            indices = data["indices"]
            materials = data["materials"] if "materials" in data else None
    except (OSError, ValueError, KeyError) as e:
        raise GeometryLoadError(f"Invalid geometry archive {path}: {e}") from e
    return Geometry(vertices, indices, materials)


def read_vtk(path: Path) -> Geometry:
    try:
        text = path.read_text()
    except (OSError, UnicodeDecodeError) as e:
        logger.error("Invalid geometry file: %s", path)
        raise GeometryLoadError(f"Cannot read {path}: {e}") from e
    try:
        return parse_vtk(text)
    except GeometryLoadError as e:
        logger.error("Invalid geometry file: %s", path)
        raise GeometryLoadError(f"{path}: {e}") from e


def parse_vtk(text: str) -> Geometry:
    """Parse legacy ASCII VTK POLYDATA text."""
    lines = text.splitlines()
    if len(lines) < 4 or not lines[0].startswith("# vtk DataFile"):
        raise GeometryLoadError("Missing VTK header")
    if lines[2].strip().upper() != "ASCII":
        raise GeometryLoadError("Only ASCII VTK files are supported")
    if lines[3].split()[:2] != ["DATASET", "POLYDATA"]:
        raise GeometryLoadError("Only POLYDATA datasets are supported")

    tokens = " ".join(lines[4:]).split()
    pos = 0
    vertices = None
    triangles: list[list[int]] = []
    polygon_of_triangle: list[int] = []
    polygon_materials = None

    def take(n: int) -> list[str]:
        nonlocal pos
        if pos + n > len(tokens):
            raise GeometryLoadError("Unexpected end of file")
        chunk = tokens[pos:pos + n]
        pos += n
        return chunk

    try:
        while pos < len(tokens):
            keyword = take(1)[0].upper()
            if keyword == "POINTS":
                count = int(take(2)[0])
                vertices = np.array(take(3 * count), dtype=np.float64).reshape(count, 3)
            elif keyword == "POLYGONS":
                count, _size = (int(v) for v in take(2))
                for poly in range(count):
                    n = int(take(1)[0])
                    if n < 3:
                        raise GeometryLoadError(f"Polygon {poly} has {n} corners")
                    corners = [int(v) for v in take(n)]
                    for k in range(1, n - 1):
                        triangles.append([corners[0], corners[k], corners[k + 1]])
                        polygon_of_triangle.append(poly)
            elif keyword == "CELL_DATA":
                count = int(take(1)[0])
                header = take(1)[0].upper()
                if header != "SCALARS":
                    raise GeometryLoadError(f"Unsupported CELL_DATA section '{header}'")
                take(2)  # name, type
                nxt = take(1)[0]
                if nxt.upper() == "LOOKUP_TABLE":
                    take(1)
                    values = take(count)
                else:
                    # Optional component count was present
                    take(2)
                    values = take(count)
                polygon_materials = np.array([int(float(v)) for v in values], dtype=np.int64)
            else:
                raise GeometryLoadError(f"Unsupported VTK section '{keyword}'")
    except ValueError as e:
        raise GeometryLoadError(f"Malformed number in VTK data: {e}") from e

    if vertices is None:
        raise GeometryLoadError("No POINTS section")
    if not triangles:
        raise GeometryLoadError("No POLYGONS section")

    materials = None
    if polygon_materials is not None:
        materials = polygon_materials[np.asarray(polygon_of_triangle)]
    return Geometry(vertices, np.asarray(triangles, dtype=np.int64), materials)


def write_vtk(geometry: Geometry, path: str | Path) -> None:
    """Write a geometry as legacy ASCII VTK POLYDATA."""
    lines = [
        "# vtk DataFile Version 3.0",
        "strata-parallel geometry",
        "ASCII",
        "DATASET POLYDATA",
        f"POINTS {geometry.num_vertices} float",
    ]
    lines += [" ".join(f"{v:.9g}" for v in vertex) for vertex in geometry.vertices]
    lines.append(f"POLYGONS {geometry.num_triangles} {4 * geometry.num_triangles}")
    lines += [f"3 {a} {b} {c}" for a, b, c in geometry.indices]
    lines.append(f"CELL_DATA {geometry.num_triangles}")
    lines.append("SCALARS material int 1")
    lines.append("LOOKUP_TABLE default")
    lines += [str(int(m)) for m in geometry.material_indices]
    Path(path).write_text("\n".join(lines) + "\n")
