"""Hand-off of simulation slices to a rendering surface.

The bridge keeps one double-buffered RGBA image per slice orientation. A
frame is written into the back buffer while mapped and becomes visible when
unmapped, so a renderer reading the front buffer on another thread never
sees a half-written frame.

Frames are read-only snapshots of the controller's field state. A dropped
frame is logged and reported through push_frame()'s return value; it never
affects the simulation.

Example:
    >>> controller, bridge = prepare_visualization(simulation, DeviceManager())
    >>> while not done:
    ...     controller.execute_step()
    ...     bridge.push_frame(Orientation.XY, 40)
    ...     image = bridge.buffer(Orientation.XY).front()
"""

from __future__ import annotations

import logging
import threading
from typing import Protocol, runtime_checkable

import numpy as np
from numpy.typing import NDArray

from strata_parallel.core.controller import SimulationController
from strata_parallel.core.devices import DeviceManager
from strata_parallel.core.errors import InvalidStateError
from strata_parallel.core.mesh import Orientation, slice_axis, slice_shape

from .encoding import DisplaySelector, encode_materials, encode_pressure

logger = logging.getLogger(__name__)

DEFAULT_DYNAMIC_RANGE_DB = 80.0


class InteropBuffer:
    """Double-buffered (height, width, 4) uint8 image.

    Args:
        width: Image width in pixels
        height: Image height in pixels
    """

    def __init__(self, width: int, height: int):
        if width < 1 or height < 1:
            raise ValueError(f"Buffer size must be positive, got {width}x{height}")
        self.width = width
        self.height = height
        self._buffers = [np.zeros((height, width, 4), dtype=np.uint8) for _ in range(2)]
        self._front = 0
        self._mapped = False
        self._lock = threading.Lock()
        self.frames = 0

    @property
    def shape(self) -> tuple[int, int, int]:
        return (self.height, self.width, 4)

    @property
    def is_mapped(self) -> bool:
        return self._mapped

    def map(self) -> NDArray[np.uint8]:
        """Return the back buffer for writing.

        Raises:
            RuntimeError: If the buffer is already mapped
        """
        if self._mapped:
            raise RuntimeError("Buffer is already mapped")
        self._mapped = True
        return self._buffers[1 - self._front]

    def unmap(self) -> None:
        """Publish the back buffer as the new front buffer."""
        if not self._mapped:
            raise RuntimeError("Buffer is not mapped")
        with self._lock:
            self._front = 1 - self._front
            self.frames += 1
        self._mapped = False

    def discard(self) -> None:
        """Unmap without publishing; the front buffer keeps the last frame."""
        self._mapped = False

    def front(self) -> NDArray[np.uint8]:
        """Copy of the last published frame."""
        with self._lock:
            return self._buffers[self._front].copy()


@runtime_checkable
class RenderSurface(Protocol):
    """Display side of the bridge, e.g. a texture per orientation."""

    def register(self, orientation: Orientation, buffer: InteropBuffer) -> None: ...

    def present(self, orientation: Orientation, buffer: InteropBuffer) -> None: ...


class VisualizationBridge:
    """Exposes pressure and material slices of a running simulation.

    Args:
        controller: Controller owning the mesh; its mesh must be initialized
        surface: Optional render surface notified of new frames
        sync_timeout: Bound in seconds for the setup barrier (default: the
            device manager's timeout)
    """

    def __init__(
        self,
        controller: SimulationController,
        surface: RenderSurface | None = None,
        sync_timeout: float | None = None,
    ):
        self.controller = controller
        self.surface = surface
        self.sync_timeout = sync_timeout
        self._buffers: dict[Orientation, InteropBuffer] = {}
        self.barriers = 0
        self.dropped = 0

    @property
    def is_setup(self) -> bool:
        return bool(self._buffers)

    def buffer(self, orientation: int) -> InteropBuffer:
        if not self._buffers:
            raise InvalidStateError("Bridge is not set up. Call setup() first.")
        return self._buffers[Orientation(orientation)]

    def setup(self) -> dict[Orientation, InteropBuffer]:
        """Allocate one buffer per orientation and synchronize the devices.

        The single full device barrier here makes sure the first frame reads
        a consistent field; per-frame reads rely on stream ordering.

        Raises:
            InvalidStateError: If the bridge is already set up or the mesh is
                not initialized
            DeviceTimeoutError: If the barrier does not finish in time
        """
        if self._buffers:
            raise InvalidStateError("Bridge is already set up")
        controller = self.controller
        mesh = controller.mesh

        buffers = {}
        for orientation in Orientation:
            width, height = slice_shape(mesh.dims, orientation)
            buffers[orientation] = InteropBuffer(width, height)

        controller.kernel.synchronize(mesh)
        controller.device_manager.synchronize(timeout=self.sync_timeout, device_ids=controller.device_ids)
        self.barriers += 1

        self._buffers = buffers
        if self.surface is not None:
            for orientation, buf in buffers.items():
                self.surface.register(orientation, buf)
        logger.info(
            "Visualization buffers: %s",
            ", ".join(f"{o.name} {b.width}x{b.height}" for o, b in buffers.items()),
        )
        return buffers

    def render(
        self,
        orientation: int,
        slice_index: int,
        selector: int = DisplaySelector.PRESSURE_WITH_BOUNDARIES,
        dynamic_range_db: float = DEFAULT_DYNAMIC_RANGE_DB,
    ) -> NDArray[np.uint8]:
        """Encode one slice as an RGBA image without publishing it."""
        controller = self.controller
        mesh = controller.mesh
        selector = DisplaySelector(selector)
        position = mesh.position_slice(orientation, slice_index)
        if selector == DisplaySelector.MATERIALS:
            return encode_materials(mesh.material_slice(orientation, slice_index), position)

        pressure = controller.kernel.pressure_slice(mesh, orientation, slice_index)
        overlay = position if selector == DisplaySelector.PRESSURE_WITH_BOUNDARIES else None
        return encode_pressure(pressure, overlay, dynamic_range_db / 10.0)

    def push_frame(
        self,
        orientation: int,
        slice_index: int,
        selector: int = DisplaySelector.PRESSURE_WITH_BOUNDARIES,
        dynamic_range_db: float = DEFAULT_DYNAMIC_RANGE_DB,
    ) -> bool:
        """Write the current slice into the orientation's buffer.

        Args:
            orientation: Slice orientation
            slice_index: Index along the orientation's normal axis
            selector: What to display (DisplaySelector)
            dynamic_range_db: Dynamic range of the log compression in dB

        Returns:
            True if the frame was published, False if it was dropped
        """
        buf = self.buffer(orientation)
        try:
            image = self.render(orientation, slice_index, selector, dynamic_range_db)
            target = buf.map()
        except Exception as e:
            self.dropped += 1
            logger.warning("Dropped frame (orientation %d, slice %d): %s", int(orientation), slice_index, e)
            return False

        try:
            target[...] = image
        except ValueError as e:
            buf.discard()
            self.dropped += 1
            logger.warning("Dropped frame (orientation %d, slice %d): %s", int(orientation), slice_index, e)
            return False
        buf.unmap()

        if self.surface is not None:
            self.surface.present(Orientation(orientation), buf)
        return True

    def close(self) -> None:
        self._buffers = {}


def prepare_visualization(
    simulation,
    device_manager: DeviceManager,
    kernel=None,
    surface: RenderSurface | None = None,
    slice_indices: dict[int, int] | None = None,
    interrupt=None,
    progress=None,
) -> tuple[SimulationController, VisualizationBridge]:
    """Set up an interactive run and push the first frame of every slice.

    The run uses single precision on a single partition for two seconds of
    simulated time.

    Args:
        simulation: Simulation to view
        device_manager: Device manager for the run
        kernel: Compute kernel (default: chosen from the devices)
        surface: Optional render surface
        slice_indices: Slice index per orientation (default: mid-planes)
        interrupt: Interrupt source for the controller
        progress: Progress sink for the controller

    Returns:
        (controller, bridge), with the mesh ready and the bridge set up
    """
    controller = SimulationController(
        simulation.for_visualization(),
        device_manager,
        kernel=kernel,
        interrupt=interrupt,
        progress=progress,
    )
    mesh = controller.initialize_mesh(partition_hint=1)
    bridge = VisualizationBridge(controller, surface)
    bridge.setup()

    slice_indices = slice_indices or {}
    for orientation in Orientation:
        depth = mesh.dims[slice_axis(orientation)]
        index = slice_indices.get(int(orientation), depth // 2)
        bridge.push_frame(orientation, index)
    return controller, bridge
