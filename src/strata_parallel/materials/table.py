"""Boundary materials as octave-band surface admittances.

Each material is a row of normalized specific admittances β (one per octave
band). β = 0 is rigid, β = 1 is a perfect match to air. The table is
aligned with a geometry through its per-triangle material indices.

Conversions (normal incidence):
    R = (1 - β) / (1 + β)
    β = (1 - R) / (1 + R)
    α = 1 - R²
"""

from __future__ import annotations

import numpy as np
from numpy.typing import NDArray


def admittance_to_reflection(admittance):
    """Normal-incidence reflection coefficient of an admittance."""
    admittance = np.asarray(admittance, dtype=np.float64)
    return (1.0 - admittance) / (1.0 + admittance)


def reflection_to_admittance(reflection):
    """Admittance giving a normal-incidence reflection coefficient."""
    reflection = np.asarray(reflection, dtype=np.float64)
    return (1.0 - reflection) / (1.0 + reflection)


def absorption_to_admittance(absorption):
    """Admittance for an absorption coefficient α, using R = sqrt(1 - α)."""
    absorption = np.asarray(absorption, dtype=np.float64)
    if np.any((absorption < 0) | (absorption > 1)):
        raise ValueError("absorption coefficients must be in [0, 1]")
    return reflection_to_admittance(np.sqrt(1.0 - absorption))


class MaterialTable:
    """Octave-band admittances of every material plus the triangle mapping.

    Args:
        admittances: (n_materials, n_octaves) admittance table
        triangle_materials: (n_triangles,) material index of each triangle

    Example:
        >>> table = MaterialTable.from_absorption(
        ...     [[0.02, 0.03], [0.6, 0.8]],
        ...     triangle_materials=geometry.material_indices,
        ... )
        >>> table.mean_absorption(octave=1, areas=geometry.surface_areas())
    """

    def __init__(self, admittances, triangle_materials):
        admittances = np.atleast_2d(np.asarray(admittances, dtype=np.float64))
        triangle_materials = np.asarray(triangle_materials, dtype=np.int64).ravel()

        if np.any(admittances < 0):
            raise ValueError("admittances must be non-negative")
        if triangle_materials.size and triangle_materials.max() >= admittances.shape[0]:
            raise ValueError(
                f"Triangle material index {triangle_materials.max()} has no entry "
                f"in a table of {admittances.shape[0]} materials"
            )
        if admittances.shape[0] > 255:
            raise ValueError("Maximum 255 materials supported")

        self.admittances = admittances
        self.triangle_materials = triangle_materials

    @classmethod
    def from_absorption(cls, absorption, triangle_materials) -> MaterialTable:
        """Build a table from absorption coefficients α in [0, 1]."""
        return cls(absorption_to_admittance(np.atleast_2d(absorption)), triangle_materials)

    @classmethod
    def uniform(cls, admittance: float, num_triangles: int, num_octaves: int = 1) -> MaterialTable:
        """One material with the same admittance in every octave."""
        return cls(np.full((1, num_octaves), admittance), np.zeros(num_triangles, dtype=np.int64))

    @property
    def num_materials(self) -> int:
        return int(self.admittances.shape[0])

    @property
    def num_octaves(self) -> int:
        return int(self.admittances.shape[1])

    @property
    def num_triangles(self) -> int:
        return int(self.triangle_materials.shape[0])

    def _check_octave(self, octave: int) -> None:
        if not 0 <= octave < self.num_octaves:
            raise IndexError(f"Octave {octave} out of range [0, {self.num_octaves})")

    def material_coefficients(self, octave: int) -> NDArray[np.float64]:
        """Admittance of every material in one octave band."""
        self._check_octave(octave)
        return self.admittances[:, octave]

    def surface_coefficient_at(self, triangle: int, octave: int) -> float:
        """Admittance of a triangle's material in one octave band."""
        self._check_octave(octave)
        return float(self.admittances[self.triangle_materials[triangle], octave])

    def surface_coefficients(self, octave: int) -> NDArray[np.float64]:
        """Admittance of every triangle in one octave band."""
        return self.material_coefficients(octave)[self.triangle_materials]

    def absorption(self, octave: int) -> NDArray[np.float64]:
        """Absorption coefficient 1 - R² of every triangle."""
        reflection = admittance_to_reflection(self.surface_coefficients(octave))
        return 1.0 - reflection * reflection

    def mean_absorption(self, octave: int, areas: NDArray[np.floating]) -> float:
        """Area-weighted mean absorption coefficient."""
        areas = np.asarray(areas, dtype=np.float64)
        if areas.shape != (self.num_triangles,):
            raise ValueError(f"Expected {self.num_triangles} areas, got {areas.shape}")
        total = areas.sum()
        if total <= 0:
            raise ValueError("Total surface area must be positive")
        return float((areas * self.absorption(octave)).sum() / total)

    def __repr__(self) -> str:
        return f"MaterialTable(materials={self.num_materials}, octaves={self.num_octaves})"
