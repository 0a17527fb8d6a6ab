"""Room-acoustic diagnostics from geometry, materials and the voxel mesh.

These are classical estimates used as a sanity check before a run:

    V    = dx³ · (air elements + boundary elements)
    A(o) = Σ_i S_i · (1 - R_i(o)²)           R from the admittance of triangle i
    Sabine RT(o) = 0.1611 · V / A(o)
    Eyring RT(o) = 0.1611 · V / (-S · ln(1 - ᾱ(o)))

Note:
    Surface coefficients are normal-incidence values, not random-incidence
    ones, so the reverberation times are approximations only.
"""

from __future__ import annotations

import logging

import numpy as np

logger = logging.getLogger(__name__)

SABINE_CONSTANT = 0.1611  # s/m at 20°C


class AcousticMetrics:
    """Read-only acoustic estimates of a voxelized room.

    Args:
        dx: Grid spacing in metres
        num_air_elements: Interior air cells of the mesh
        num_boundary_elements: Boundary cells of the mesh
        geometry: Geometry providing triangle areas
        materials: MaterialTable aligned with the geometry's triangles
    """

    def __init__(self, dx: float, num_air_elements: int, num_boundary_elements: int, geometry, materials):
        if dx <= 0:
            raise ValueError(f"dx must be positive, got {dx}")
        if materials.num_triangles != geometry.num_triangles:
            raise ValueError(
                f"Material table covers {materials.num_triangles} triangles, "
                f"geometry has {geometry.num_triangles}"
            )
        self.dx = dx
        self.num_air_elements = num_air_elements
        self.num_boundary_elements = num_boundary_elements
        self.geometry = geometry
        self.materials = materials

    @classmethod
    def from_mesh(cls, mesh, dx: float, geometry, materials) -> AcousticMetrics:
        return cls(dx, mesh.num_air_elements, mesh.num_boundary_elements, geometry, materials)

    def volume(self) -> float:
        number_of_elements = self.num_air_elements + self.num_boundary_elements
        return self.dx ** 3 * number_of_elements

    def total_surface_area(self) -> float:
        return self.geometry.total_surface_area

    def total_absorption_area(self, octave: int) -> float:
        return float(np.sum(self.geometry.surface_areas() * self.materials.absorption(octave)))

    def mean_absorption(self, octave: int) -> float:
        return self.materials.mean_absorption(octave, self.geometry.surface_areas())

    def sabine_rt(self, octave: int) -> float:
        """Sabine estimate; infinite for a fully reflective room."""
        with np.errstate(divide="ignore"):
            return float(np.divide(SABINE_CONSTANT * self.volume(), self.total_absorption_area(octave)))

    def eyring_rt(self, octave: int) -> float:
        mean_absorption = self.mean_absorption(octave)
        with np.errstate(divide="ignore"):
            # abs() keeps a rigid room at +inf rather than -0.0 in the denominator
            exponent = np.abs(np.log(1.0 - mean_absorption))
            return float(np.divide(SABINE_CONSTANT * self.volume(), self.total_surface_area() * exponent))

    def report(self, octave: int) -> dict[str, float]:
        """All estimates for one octave band."""
        return {
            "volume": self.volume(),
            "surface_area": self.total_surface_area(),
            "absorption_area": self.total_absorption_area(octave),
            "mean_absorption": self.mean_absorption(octave),
            "sabine_rt": self.sabine_rt(octave),
            "eyring_rt": self.eyring_rt(octave),
        }

    def log_report(self, octave: int) -> dict[str, float]:
        values = self.report(octave)
        logger.info("Volume: %f m³", values["volume"])
        logger.info("Surface area: %f m²", values["surface_area"])
        logger.info("Total absorption area: %f m², octave: %d", values["absorption_area"], octave)
        logger.info("Sabine RT: %f s", values["sabine_rt"])
        logger.info("Eyring RT: %f s (mean absorption %f)", values["eyring_rt"], values["mean_absorption"])
        return values
