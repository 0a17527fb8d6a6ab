"""Exception hierarchy for strata-parallel.

Every fatal condition of a run maps to one of these classes. An interrupted
run is not an error and has no exception class; the controller reports it
through its state instead.
"""


class StrataParallelError(Exception):
    """Base class for all strata-parallel errors."""

    pass


class ResourceExhaustionError(StrataParallelError, MemoryError):
    """Raised when the estimated mesh footprint exceeds available device memory.

    Attributes:
        required_mb: Estimated footprint of the mesh in MB
        available_mb: Free memory of the devices that would hold it in MB
    """

    def __init__(self, message: str, required_mb: float, available_mb: float):
        super().__init__(message)
        self.required_mb = required_mb
        self.available_mb = available_mb


class DeviceQueryError(StrataParallelError, RuntimeError):
    """Raised when a device enumeration or memory query fails."""

    pass


class DeviceTimeoutError(StrataParallelError, TimeoutError):
    """Raised when a device synchronization does not finish in time."""

    pass


class DeviceStateError(StrataParallelError, RuntimeError):
    """Raised on an illegal change of the active-device lifecycle."""

    pass


class GeometryLoadError(StrataParallelError, ValueError):
    """Raised for malformed, unreadable or degenerate geometry input."""

    pass


class InvalidStateError(StrataParallelError, RuntimeError):
    """Raised when a controller operation is called in the wrong state."""

    pass
