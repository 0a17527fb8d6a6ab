"""Pressure-to-colour encoding for captures and live slices.

Signed pressure is shown on two channels with logarithmic compression:

    c = max(0, (log10(p²) + dB) / dB)

green for p > 0 and blue for p < 0, where dB is the dynamic range in bels
(a capture_db of 80 dB gives dB = 8). Boundary cells (inside the room with
fewer than six air neighbours) are painted opaque white.
"""

from __future__ import annotations

from enum import IntEnum

import numpy as np
from numpy.typing import NDArray

from strata_parallel.core.mesh import AIR_FLAG, FULL_NEIGHBOURS, NEIGHBOUR_MASK


class DisplaySelector(IntEnum):
    """What a live slice shows."""

    PRESSURE_WITH_BOUNDARIES = 0
    PRESSURE = 1
    MATERIALS = 2


def boundary_mask(position: NDArray[np.uint8]) -> NDArray[np.bool_]:
    return ((position & AIR_FLAG) != 0) & ((position & NEIGHBOUR_MASK) != FULL_NEIGHBOURS)


def log_magnitude(pressure: NDArray[np.floating], dynamic_range: float) -> NDArray[np.float32]:
    """Compressed magnitude in [0, 1] (values above full scale clip to 1)."""
    if dynamic_range <= 0:
        raise ValueError(f"dynamic_range must be positive, got {dynamic_range}")
    pressure = np.asarray(pressure, dtype=np.float64)
    with np.errstate(divide="ignore"):
        c = (np.log10(pressure * pressure) + dynamic_range) / dynamic_range
    return np.clip(np.nan_to_num(c, nan=0.0, neginf=0.0), 0.0, 1.0).astype(np.float32)


def encode_pressure(
    pressure: NDArray[np.floating],
    position: NDArray[np.uint8] | None,
    dynamic_range: float,
) -> NDArray[np.uint8]:
    """Encode a pressure slice as an RGBA image.

    Args:
        pressure: (height, width) pressure slice
        position: (height, width) position encoding, or None for no boundary
            overlay
        dynamic_range: Compression range in bels

    Returns:
        (height, width, 4) uint8 RGBA image
    """
    pressure = np.asarray(pressure)
    c = log_magnitude(pressure, dynamic_range)
    image = np.zeros(pressure.shape + (4,), dtype=np.uint8)
    image[..., 1] = np.where(pressure > 0, c * 255, 0).astype(np.uint8)
    image[..., 2] = np.where(pressure < 0, c * 255, 0).astype(np.uint8)
    image[..., 3] = 255
    if position is not None:
        image[boundary_mask(position)] = 255
    return image


def encode_materials(material: NDArray[np.uint8], position: NDArray[np.uint8]) -> NDArray[np.uint8]:
    """Grey-level material map of the boundary cells."""
    image = np.zeros(material.shape + (4,), dtype=np.uint8)
    levels = material.max() if material.size else 0
    scale = 200.0 / max(int(levels), 1)
    grey = (55 + material.astype(np.float64) * scale).astype(np.uint8)
    mask = boundary_mask(position)
    for channel in range(3):
        image[..., channel] = np.where(mask, grey, 0)
    image[..., 3] = 255
    return image
