"""Simulation parameters, capture schedule and the run setup object.

A simulation script builds a Simulation from a geometry, a material table
and SimulationParameters; the controller turns it into a running mesh.

Example:
    >>> from strata_parallel import Simulation, SimulationParameters
    >>> params = SimulationParameters(
    ...     dx=0.05,
    ...     num_steps=2000,
    ...     sources=[(1.0, 1.2, 1.5)],
    ...     receivers=[(2.5, 2.0, 1.2)],
    ... )
    >>> simulation = Simulation(geometry, materials, params)
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import IntEnum

import numpy as np
from numpy.typing import NDArray

from .errors import InvalidStateError
from .mesh import Orientation
from .partition import MemoryPolicy

SPEED_OF_SOUND = 343.0  # m/s at 20°C


class UpdateScheme(IntEnum):
    """Finite-difference update scheme.

    SRL: Standard rectilinear 7-point scheme with frequency-independent
        boundary admittances.
    SRL_RIGID: Same stencil with all boundaries treated as rigid
        (lossless, exactly time-reversible).
    """

    SRL = 0
    SRL_RIGID = 1

    @property
    def courant(self) -> float:
        """Courant number λ = c·dt/dx of the scheme."""
        return 1.0 / np.sqrt(3.0)


@dataclass
class SimulationParameters:
    """Parameters of one simulation run.

    Positions are in metres in the geometry's coordinate frame. Their
    element-space coordinates are filled in by bind_to_grid() once the
    geometry has been voxelized.

    Args:
        dx: Grid spacing in metres
        num_steps: Number of time steps to run
        scheme: Update scheme
        sources: Source positions in metres
        receivers: Receiver positions in metres
        source_signals: (num_sources, n) input signals; default is a unit
            impulse at step 0 for every source
        octave: Octave band used to select boundary admittances
        c: Speed of sound in m/s
    """

    dx: float
    num_steps: int = 1000
    scheme: UpdateScheme = UpdateScheme.SRL
    sources: list[tuple[float, float, float]] = field(default_factory=list)
    receivers: list[tuple[float, float, float]] = field(default_factory=list)
    source_signals: NDArray[np.floating] | None = None
    octave: int = 0
    c: float = SPEED_OF_SOUND
    source_elements: list[tuple[int, int, int]] = field(default_factory=list, init=False)
    receiver_elements: list[tuple[int, int, int]] = field(default_factory=list, init=False)
    _locked: bool = field(default=False, init=False, repr=False)

    def __post_init__(self):
        if self.dx <= 0:
            raise ValueError(f"dx must be positive, got {self.dx}")
        if self.octave < 0:
            raise ValueError(f"octave must be non-negative, got {self.octave}")
        self.scheme = UpdateScheme(self.scheme)
        if self.source_signals is not None:
            self.source_signals = np.atleast_2d(np.asarray(self.source_signals, dtype=np.float64))
            if self.source_signals.shape[0] != len(self.sources):
                raise ValueError(
                    f"source_signals has {self.source_signals.shape[0]} rows "
                    f"for {len(self.sources)} sources"
                )

    def __setattr__(self, name, value):
        # Every change of num_steps, direct or through set_num_steps, honours the run lock
        if name == "num_steps":
            if self._locked:
                raise InvalidStateError("num_steps cannot change during a run")
            if value < 1:
                raise ValueError(f"num_steps must be >= 1, got {value}")
            value = int(value)
        super().__setattr__(name, value)

    @property
    def num_sources(self) -> int:
        return len(self.sources)

    @property
    def num_receivers(self) -> int:
        return len(self.receivers)

    @property
    def courant(self) -> float:
        return self.scheme.courant

    @property
    def spatial_fs(self) -> float:
        """Sample rate implied by dx and the scheme's Courant number."""
        return self.c / (self.courant * self.dx)

    @property
    def dt(self) -> float:
        return 1.0 / self.spatial_fs

    def set_num_steps(self, num_steps: int) -> None:
        """Change the step count; only allowed before a run starts."""
        self.num_steps = num_steps

    def lock(self) -> None:
        self._locked = True

    def unlock(self) -> None:
        self._locked = False

    def source_sample(self, source: int, step: int) -> float:
        """Input sample of a source at a step (zero outside the signal)."""
        if self.source_signals is None:
            return 1.0 if step == 0 else 0.0
        signal = self.source_signals[source]
        if 0 <= step < signal.shape[0]:
            return float(signal[step])
        return 0.0

    def bind_to_grid(self, origin: NDArray[np.floating], dims: tuple[int, int, int]) -> None:
        """Compute element coordinates of sources and receivers.

        Args:
            origin: Position of the lower corner of cell (0, 0, 0) in metres
            dims: Grid dimensions

        Raises:
            ValueError: If a source or receiver falls outside the grid
        """
        origin = np.asarray(origin, dtype=np.float64)

        def to_element(position, kind, i):
            idx = np.floor((np.asarray(position, dtype=np.float64) - origin) / self.dx).astype(int)
            if np.any(idx < 0) or np.any(idx >= np.asarray(dims)):
                raise ValueError(
                    f"{kind} {i} at {tuple(position)} lies outside the grid {dims}"
                )
            return tuple(int(v) for v in idx)

        self.source_elements = [to_element(p, "Source", i) for i, p in enumerate(self.sources)]
        self.receiver_elements = [to_element(p, "Receiver", i) for i, p in enumerate(self.receivers)]


@dataclass(frozen=True)
class CaptureRequest:
    """A 2D slice snapshot to take at a given step.

    Args:
        slice_index: Index of the slice along the orientation's normal axis
        orientation: Slice orientation (Orientation value)
        step: Step at which to capture
    """

    slice_index: int
    orientation: int
    step: int

    @property
    def key(self) -> str:
        return f"capture_{int(self.orientation)}_{self.step}_{self.slice_index}"

    def __post_init__(self):
        Orientation(self.orientation)
        if self.slice_index < 0 or self.step < 0:
            raise ValueError("slice_index and step must be non-negative")


@dataclass
class CaptureSchedule:
    """Slice and volume captures issued during stepping.

    Args:
        slices: Slice capture requests
        volume_steps: Steps at which the full pressure volume is captured
    """

    slices: list[CaptureRequest] = field(default_factory=list)
    volume_steps: list[int] = field(default_factory=list)

    def add_slice(self, slice_index: int, orientation: int, step: int) -> CaptureRequest:
        request = CaptureRequest(slice_index, int(orientation), step)
        self.slices.append(request)
        return request

    def add_volume(self, step: int) -> None:
        self.volume_steps.append(int(step))

    def slices_at(self, step: int) -> list[CaptureRequest]:
        return [r for r in self.slices if r.step == step]

    def volume_at(self, step: int) -> bool:
        return step in self.volume_steps

    def __bool__(self) -> bool:
        return bool(self.slices or self.volume_steps)


@dataclass
class Simulation:
    """Everything needed to set up one run.

    Args:
        geometry: Room geometry (triangle mesh)
        materials: Material table aligned with the geometry's triangles
        parameters: Simulation parameters
        double: Use double-precision fields
        force_partitions: Force the partition count (ignored if invalid)
        memory_policy: Memory cost constants for partitioning
        captures: Capture schedule
        capture_db: Dynamic range of slice captures in dB
    """

    geometry: object
    materials: object
    parameters: SimulationParameters
    double: bool = False
    force_partitions: int | None = None
    memory_policy: MemoryPolicy = field(default_factory=MemoryPolicy)
    captures: CaptureSchedule = field(default_factory=CaptureSchedule)
    capture_db: float = 80.0

    def for_visualization(self) -> Simulation:
        """Copy set up for interactive viewing.

        Visualization runs in single precision on a single partition for two
        seconds of simulated time.
        """
        params = dataclasses.replace(self.parameters)
        params.set_num_steps(int(params.spatial_fs * 2))
        return dataclasses.replace(self, parameters=params, double=False, force_partitions=1)
