"""Room geometry as indexed triangle meshes."""

from strata_parallel.geometry.loader import load_geometry, parse_vtk, write_vtk
from strata_parallel.geometry.triangles import Geometry

__all__ = ["Geometry", "load_geometry", "parse_vtk", "write_vtk"]
