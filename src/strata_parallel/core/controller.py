"""Step-execution state machine of a simulation run.

The controller owns the mesh and its field state. It drives the compute
kernel one step at a time, polls the interrupt source after every step,
reports progress, issues scheduled captures and keeps a smoothed estimate
of the time per step.

State machine:

    UNINITIALIZED --initialize_mesh()--> MESH_READY --run()--> RUNNING
    RUNNING --> INTERRUPTED | COMPLETED
    any state --close()--> CLOSED

reset_pressures() returns to MESH_READY from any state after mesh setup.

Example:
    >>> manager = DeviceManager()
    >>> with SimulationController(simulation, manager) as controller:
    ...     controller.initialize_mesh()
    ...     responses = controller.run()
    >>> responses.valid().shape
    (2000, 1)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

import numpy as np
from numpy.typing import NDArray

from strata_parallel.analysis.metrics import AcousticMetrics

from .callbacks import as_interrupt, as_progress
from .devices import DeviceManager
from .errors import InvalidStateError
from .mesh import Mesh
from .parameters import CaptureRequest, Simulation
from .partition import MeshPartitioner
from .responses import ResponseBuffer

if TYPE_CHECKING:
    from strata_parallel.io.captures import SliceSink, VolumeSink

logger = logging.getLogger(__name__)

TIME_SMOOTHING_WEIGHT = 0.5


def smooth_time_per_step(previous: float | None, sample: float, weight: float = TIME_SMOOTHING_WEIGHT) -> float:
    """Fixed-weight exponential smoothing of the time per step.

    With the default weight of 0.5 this is (previous + sample) / 2: recent
    steps dominate, but the first sample is never fully forgotten. The first
    sample seeds the estimate.

    Args:
        previous: Current estimate, or None before the first step
        sample: Duration of the step just run in seconds
        weight: Weight of the new sample, in (0, 1]

    Returns:
        The updated estimate
    """
    if not 0.0 < weight <= 1.0:
        raise ValueError(f"weight must be in (0, 1], got {weight}")
    if previous is None:
        return sample
    return (1.0 - weight) * previous + weight * sample


class SimulationState(Enum):
    UNINITIALIZED = "uninitialized"
    MESH_READY = "mesh_ready"
    RUNNING = "running"
    INTERRUPTED = "interrupted"
    COMPLETED = "completed"
    CLOSED = "closed"


_STEPPABLE = (
    SimulationState.MESH_READY,
    SimulationState.RUNNING,
    SimulationState.INTERRUPTED,
    SimulationState.COMPLETED,
)


@dataclass
class ExecutionState:
    """Position of the run in simulated time.

    Attributes:
        current_step: Step counter; moves by `direction` on every step
        direction: +1 forward, -1 reverse playback
        time_per_step: Smoothed seconds per step (None before the first step)
        interrupted: True once an interrupt has been observed
        steps_run: Steps executed since the last reset, in either direction
    """

    current_step: int = 0
    direction: int = 1
    time_per_step: float | None = None
    interrupted: bool = False
    steps_run: int = 0


class SimulationController:
    """Drives one simulation from mesh setup to close.

    Args:
        simulation: Geometry, materials and parameters of the run
        device_manager: Device manager; initialized on demand
        kernel: Compute kernel (default: get_kernel(device_manager))
        interrupt: InterruptSource or callable returning bool
        progress: ProgressSink or callable (step, max_step, time_per_step)
        slice_sink: Receives encoded slice captures
        volume_sink: Receives full pressure volume captures
        partitioner: Partitioning policy (default: from the simulation's
            memory policy)
    """

    def __init__(
        self,
        simulation: Simulation,
        device_manager: DeviceManager,
        kernel=None,
        interrupt=None,
        progress=None,
        slice_sink: SliceSink | None = None,
        volume_sink: VolumeSink | None = None,
        partitioner: MeshPartitioner | None = None,
    ):
        self.simulation = simulation
        self.device_manager = device_manager
        self.kernel = kernel
        self.slice_sink = slice_sink
        self.volume_sink = volume_sink
        self.partitioner = partitioner or MeshPartitioner(simulation.memory_policy)
        self._interrupt = as_interrupt(interrupt)
        self._progress = as_progress(progress)

        self._state = SimulationState.UNINITIALIZED
        self._execution = ExecutionState()
        self._mesh: Mesh | None = None
        self._responses: ResponseBuffer | None = None
        self._metrics: AcousticMetrics | None = None
        self._device_ids: list[int] = []

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def state(self) -> SimulationState:
        return self._state

    @property
    def parameters(self):
        return self.simulation.parameters

    @property
    def mesh(self) -> Mesh:
        if self._mesh is None:
            raise InvalidStateError("Mesh not initialized. Call initialize_mesh() first.")
        return self._mesh

    @property
    def responses(self) -> ResponseBuffer | None:
        return self._responses

    @property
    def metrics(self) -> AcousticMetrics | None:
        return self._metrics

    @property
    def execution(self) -> ExecutionState:
        return self._execution

    @property
    def current_step(self) -> int:
        return self._execution.current_step

    @property
    def direction(self) -> int:
        return self._execution.direction

    @property
    def time_per_step(self) -> float | None:
        return self._execution.time_per_step

    @property
    def device_ids(self) -> list[int]:
        """Devices holding the mesh partitions, in partition order."""
        return list(self._device_ids)

    def _require(self, allowed: tuple[SimulationState, ...], operation: str) -> None:
        if self._state not in allowed:
            raise InvalidStateError(f"Cannot {operation} in state {self._state.value}")

    # -------------------------------------------------------------------------
    # Setup
    # -------------------------------------------------------------------------

    def initialize_mesh(self, partition_hint: int = 2) -> Mesh:
        """Voxelize the geometry, set up the mesh and partition it.

        The memory budget is checked against a bounding-box estimate before
        anything is allocated, and again once the voxel count is known.

        Args:
            partition_hint: Partition count used above the single-partition
                element limit

        Returns:
            The partitioned, allocated mesh

        Raises:
            ResourceExhaustionError: If the mesh does not fit in device memory
            DeviceQueryError: If device enumeration fails
            GeometryLoadError: If the geometry cannot be voxelized
            InvalidStateError: If the mesh is already initialized

        Any failure closes the controller before the error propagates.
        """
        self._require((SimulationState.UNINITIALIZED,), "initialize the mesh")
        sim = self.simulation
        params = sim.parameters

        try:
            manager = self.device_manager
            if not manager.is_initialized:
                manager.initialize()
            devices = manager.devices

            estimate = sim.geometry.estimated_elements(params.dx)
            self.partitioner.check_budget(estimate, sim.double, devices)

            if self.kernel is None:
                from strata_parallel.kernels import get_kernel

                self.kernel = get_kernel(manager)
            logger.info("Using %s kernel", self.kernel.name)

            grid = self.kernel.voxelize(sim.geometry, params.dx)
            logger.info("Voxelized geometry: dims %s, dx %f", grid.dims, params.dx)
            params.bind_to_grid(grid.origin, grid.dims)

            mesh = self.kernel.setup_mesh(grid, sim.materials, params, sim.double)
            logger.info(
                "Mesh: %d elements, %d air, %d boundary",
                mesh.num_elements, mesh.num_air_elements, mesh.num_boundary_elements,
            )

            order = manager.assignment(manager.num_devices)
            count = self.partitioner.decide(
                mesh.num_elements,
                sim.double,
                devices,
                forced=sim.force_partitions,
                requested=partition_hint,
                assignment=order,
            )
            self._device_ids = order[:count]
            mesh.make_partition(count, self._device_ids)
            logger.info("Mesh split into %d partition(s) on devices %s", count, self._device_ids)

            self.kernel.allocate(mesh, devices)
            self.kernel.synchronize(mesh)
            manager.synchronize(device_ids=self._device_ids)

            self._metrics = AcousticMetrics.from_mesh(mesh, params.dx, sim.geometry, sim.materials)
            self._metrics.log_report(params.octave)
        except Exception:
            logger.error("Mesh initialization failed, releasing devices")
            self.close()
            raise

        self._mesh = mesh
        self._execution = ExecutionState()
        self._state = SimulationState.MESH_READY
        return mesh

    # -------------------------------------------------------------------------
    # Stepping
    # -------------------------------------------------------------------------

    def execute_step(self) -> int:
        """Run one step in the current direction.

        Receiver samples are recorded when stepping forward. Captures
        scheduled for the new step counter are issued afterwards, so a
        capture at step N holds the field after N steps. Capture failures
        are logged and do not stop the run.

        Returns:
            The new step counter
        """
        self._require(_STEPPABLE, "execute a step")
        mesh = self.mesh
        params = self.parameters
        execution = self._execution
        if self._responses is None:
            self._responses = ResponseBuffer(params.num_steps, params.num_receivers, self.simulation.double)

        step = execution.current_step
        start = time.perf_counter()
        self.kernel.run_one_step(mesh, params, self._responses, step, execution.direction)
        elapsed = time.perf_counter() - start

        execution.time_per_step = smooth_time_per_step(execution.time_per_step, elapsed)
        execution.current_step += execution.direction
        execution.steps_run += 1

        if self.simulation.captures:
            self._issue_captures(execution.current_step)

        self._progress.on_progress(execution.current_step, params.num_steps, execution.time_per_step)
        return execution.current_step

    def _issue_captures(self, step: int) -> None:
        captures = self.simulation.captures
        for request in captures.slices_at(step):
            self._capture_slice(request)
        if captures.volume_at(step):
            self._capture_volume(step)

    def _capture_slice(self, request: CaptureRequest) -> None:
        if self.slice_sink is None:
            logger.debug("No slice sink, skipping %s", request.key)
            return
        try:
            image = self.render_slice(request.orientation, request.slice_index, self.simulation.capture_db / 10.0)
            self.slice_sink.write_slice(request, image)
        except Exception as e:
            logger.warning("Capture %s failed: %s", request.key, e)

    def _capture_volume(self, step: int) -> None:
        if self.volume_sink is None:
            logger.debug("No volume sink, skipping volume capture at step %d", step)
            return
        try:
            self.volume_sink.write_volume(step, self.kernel.pressure_volume(self.mesh))
        except Exception as e:
            logger.warning("Volume capture at step %d failed: %s", step, e)

    def render_slice(self, orientation: int, index: int, dynamic_range: float) -> NDArray[np.uint8]:
        """RGBA image of a pressure slice with the boundary overlay."""
        from strata_parallel.viz.encoding import encode_pressure

        pressure = self.kernel.pressure_slice(self.mesh, orientation, index)
        return encode_pressure(pressure, self.mesh.position_slice(orientation, index), dynamic_range)

    def invert_direction(self) -> int:
        """Flip the step direction; the step counter is left unchanged.

        Returns:
            The new direction
        """
        self._require(_STEPPABLE, "invert the direction")
        self._execution.direction = -self._execution.direction
        logger.debug("Step direction now %+d at step %d", self._execution.direction, self.current_step)
        return self._execution.direction

    def reset_pressures(self) -> None:
        """Zero the field state and step counter, keeping the mesh."""
        self._require(_STEPPABLE, "reset pressures")
        self.kernel.reset_pressures(self.mesh)
        self._execution = ExecutionState()
        self._state = SimulationState.MESH_READY

    # -------------------------------------------------------------------------
    # Runs
    # -------------------------------------------------------------------------

    def _begin_run(self) -> None:
        self._require(
            (SimulationState.MESH_READY, SimulationState.INTERRUPTED, SimulationState.COMPLETED),
            "start a run",
        )
        if self._execution.steps_run or self._execution.direction != 1:
            logger.info("Resetting fields from step %d before a new run", self.current_step)
            self.reset_pressures()
        params = self.parameters
        params.lock()
        self._responses = ResponseBuffer(params.num_steps, params.num_receivers, self.simulation.double)
        self._state = SimulationState.RUNNING
        logger.info(
            "Running %d steps at %.1f Hz, %d source(s), %d receiver(s)",
            params.num_steps, params.spatial_fs, params.num_sources, params.num_receivers,
        )

    def _abort_run(self) -> None:
        logger.error("Run failed at step %d, releasing devices", self._execution.current_step)
        self.parameters.unlock()
        self.close()

    def _finish_run(self) -> None:
        try:
            self.kernel.synchronize(self.mesh)
            self.device_manager.synchronize(device_ids=self._device_ids)
        except Exception:
            logger.error("Device synchronization failed at end of run, releasing devices")
            self.close()
            raise
        finally:
            self.parameters.unlock()

        if self._execution.current_step >= self.parameters.num_steps:
            self._state = SimulationState.COMPLETED
            logger.info("Completed %d steps", self._execution.current_step)
        else:
            self._state = SimulationState.INTERRUPTED
            logger.info("Run interrupted at step %d", self._execution.current_step)
        self._responses.steps_completed = min(self._execution.current_step, self.parameters.num_steps)
        if self._execution.time_per_step is not None:
            logger.info("Time per step: %f s", self._execution.time_per_step)

    def run(self) -> ResponseBuffer:
        """Step until the step budget is exhausted or an interrupt arrives.

        An interrupt is polled after every step and takes effect once that
        step has finished. Reaching the last step wins over an interrupt
        observed on it.

        Returns:
            The response buffer; rows of steps that did not run are zero
        """
        self._begin_run()
        num_steps = self.parameters.num_steps
        try:
            while self._execution.current_step < num_steps:
                self.execute_step()
                if self._interrupt.is_interrupted():
                    self._execution.interrupted = True
                    break
        except Exception:
            self._abort_run()
            raise
        self._finish_run()
        return self._responses

    def run_batch(self) -> ResponseBuffer:
        """Full run through the kernel's run_all_steps, without captures."""
        self._begin_run()
        try:
            time_per_step, steps = self.kernel.run_all_steps(
                self.mesh, self.parameters, self._responses, self._interrupt, self._progress
            )
        except Exception:
            self._abort_run()
            raise
        self._execution.current_step = steps
        self._execution.steps_run = steps
        self._execution.time_per_step = time_per_step
        self._execution.interrupted = steps < self.parameters.num_steps
        self._finish_run()
        return self._responses

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Release field storage and devices. Safe to call repeatedly."""
        if self._state == SimulationState.CLOSED:
            return
        if self._mesh is not None and self.kernel is not None:
            self.kernel.release(self._mesh)
        self.device_manager.shutdown()
        self._state = SimulationState.CLOSED
        logger.info("Simulation closed")

    def __enter__(self) -> SimulationController:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return (
            f"SimulationController(state={self._state.value}, "
            f"step={self.current_step}, direction={self.direction:+d})"
        )
