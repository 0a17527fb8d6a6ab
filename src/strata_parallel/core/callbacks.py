"""Interrupt and progress callback abstractions.

The controller polls an InterruptSource once per step and reports to a
ProgressSink after every step. Both are small protocols, and plain
callables are accepted too:

    >>> controller = SimulationController(sim, devices, kernel,
    ...                                   interrupt=lambda: False,
    ...                                   progress=print)

Callbacks run synchronously on the control thread and must not block.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class InterruptSource(Protocol):
    """Cheap, side-effect free poll for a stop request."""

    def is_interrupted(self) -> bool: ...


@runtime_checkable
class ProgressSink(Protocol):
    """Receives (step, max_step, time_per_step) after every step."""

    def on_progress(self, step: int, max_step: int, time_per_step: float) -> None: ...


class _CallableInterrupt:
    def __init__(self, fn: Callable[[], bool]):
        self._fn = fn

    def is_interrupted(self) -> bool:
        return bool(self._fn())


class _CallableProgress:
    def __init__(self, fn: Callable[[int, int, float], None]):
        self._fn = fn

    def on_progress(self, step: int, max_step: int, time_per_step: float) -> None:
        self._fn(step, max_step, time_per_step)


class NeverInterrupt:
    """Interrupt source that never fires."""

    def is_interrupted(self) -> bool:
        return False


class InterruptFlag:
    """Thread-safe flag that another thread (or a signal handler) can set.

    Example:
        >>> flag = InterruptFlag()
        >>> signal.signal(signal.SIGINT, lambda *_: flag.set())
        >>> controller = SimulationController(..., interrupt=flag)
    """

    def __init__(self):
        self._event = threading.Event()
        self._reported = False

    def set(self) -> None:
        self._event.set()

    def clear(self) -> None:
        self._event.clear()
        self._reported = False

    def is_interrupted(self) -> bool:
        interrupted = self._event.is_set()
        if interrupted and not self._reported:
            logger.info("Execution interrupted")
            self._reported = True
        return interrupted


class LoggingProgress:
    """Logs step, time per step and the estimated time left.

    Args:
        interval: Minimum seconds between log records
    """

    def __init__(self, interval: float = 1.0):
        self.interval = interval
        self._last = 0.0

    def on_progress(self, step: int, max_step: int, time_per_step: float) -> None:
        now = time.monotonic()
        if now - self._last < self.interval and step < max_step:
            return
        self._last = now
        estimate = time_per_step * max(max_step - step, 0)
        logger.info(
            "Step %d/%d, time per step %f s, estimated time left %.1f s",
            step, max_step, time_per_step, estimate,
        )


def as_interrupt(source) -> InterruptSource:
    """Normalize None, a callable or an InterruptSource."""
    if source is None:
        return NeverInterrupt()
    if isinstance(source, InterruptSource):
        return source
    if callable(source):
        return _CallableInterrupt(source)
    raise TypeError(f"Expected an InterruptSource or callable, got {type(source).__name__}")


def as_progress(sink) -> ProgressSink:
    """Normalize None, a callable or a ProgressSink."""
    if sink is None:
        return LoggingProgress()
    if isinstance(sink, ProgressSink):
        return sink
    if callable(sink):
        return _CallableProgress(sink)
    raise TypeError(f"Expected a ProgressSink or callable, got {type(sink).__name__}")
