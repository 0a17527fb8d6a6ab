"""Boundary materials as per-octave surface admittances."""

from strata_parallel.materials.table import (
    MaterialTable,
    absorption_to_admittance,
    admittance_to_reflection,
    reflection_to_admittance,
)

__all__ = [
    "MaterialTable",
    "absorption_to_admittance",
    "admittance_to_reflection",
    "reflection_to_admittance",
]
