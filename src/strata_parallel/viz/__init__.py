"""Slice encoding and the render-surface bridge."""

from strata_parallel.viz.bridge import (
    InteropBuffer,
    RenderSurface,
    VisualizationBridge,
    prepare_visualization,
)
from strata_parallel.viz.encoding import DisplaySelector, encode_materials, encode_pressure

__all__ = [
    "DisplaySelector",
    "InteropBuffer",
    "RenderSurface",
    "VisualizationBridge",
    "encode_materials",
    "encode_pressure",
    "prepare_visualization",
]
