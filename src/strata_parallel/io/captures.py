"""Writers for slice captures.

A capture sink receives a CaptureRequest and an RGBA image. The PNG writer
stores each capture as `<directory>/capture_<orientation>_<step>_<slice>.png`.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol, runtime_checkable

import matplotlib.image as mpimg
import numpy as np
from numpy.typing import NDArray

logger = logging.getLogger(__name__)


@runtime_checkable
class SliceSink(Protocol):
    def write_slice(self, request, image: NDArray[np.uint8]) -> None: ...


@runtime_checkable
class VolumeSink(Protocol):
    def write_volume(self, step: int, volume: NDArray[np.floating]) -> None: ...


class PNGCaptureWriter:
    """Writes slice captures as PNG files.

    Args:
        directory: Output directory (created if missing)
    """

    def __init__(self, directory: str | Path = "."):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.written: list[Path] = []

    def path_for(self, request) -> Path:
        return self.directory / f"{request.key}.png"

    def write_slice(self, request, image: NDArray[np.uint8]) -> None:
        path = self.path_for(request)
        mpimg.imsave(path, image)
        self.written.append(path)
        logger.debug("Wrote capture %s", path)


class MemoryCaptureSink:
    """Keeps captures in memory, keyed like the PNG writer's file names."""

    def __init__(self):
        self.slices: dict[str, NDArray[np.uint8]] = {}
        self.volumes: dict[int, NDArray[np.floating]] = {}

    def write_slice(self, request, image: NDArray[np.uint8]) -> None:
        self.slices[request.key] = np.array(image)

    def write_volume(self, step: int, volume: NDArray[np.floating]) -> None:
        self.volumes[step] = np.array(volume)
