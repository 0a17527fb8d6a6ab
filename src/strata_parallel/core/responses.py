"""Receiver response storage."""

from __future__ import annotations

import numpy as np
from numpy.typing import NDArray


class ResponseBuffer:
    """Pre-allocated (num_steps, num_receivers) receiver time series.

    The buffer is zero-initialized; rows of steps that never ran stay zero.

    Args:
        num_steps: Number of time steps
        num_receivers: Number of receivers
        double: Store float64 instead of float32
    """

    def __init__(self, num_steps: int, num_receivers: int, double: bool = False):
        if num_steps < 1:
            raise ValueError(f"num_steps must be >= 1, got {num_steps}")
        if num_receivers < 0:
            raise ValueError(f"num_receivers must be >= 0, got {num_receivers}")
        self.data = np.zeros((num_steps, num_receivers), dtype=np.float64 if double else np.float32)
        self.steps_completed = 0

    @property
    def num_steps(self) -> int:
        return int(self.data.shape[0])

    @property
    def num_receivers(self) -> int:
        return int(self.data.shape[1])

    @property
    def shape(self) -> tuple[int, int]:
        return self.data.shape

    def record(self, step: int, samples) -> bool:
        """Store one row of samples; steps outside the buffer are ignored.

        Returns:
            True if the row was stored
        """
        if not 0 <= step < self.num_steps:
            return False
        self.data[step] = samples
        self.steps_completed = max(self.steps_completed, step + 1)
        return True

    def record_sample(self, step: int, receiver: int, value: float) -> None:
        if 0 <= step < self.num_steps:
            self.data[step, receiver] = value
            self.steps_completed = max(self.steps_completed, step + 1)

    def receiver(self, index: int) -> NDArray[np.floating]:
        """Time series of one receiver."""
        return self.data[:, index]

    def valid(self) -> NDArray[np.floating]:
        """Rows up to the last completed step."""
        return self.data[: self.steps_completed]

    def __getitem__(self, key):
        return self.data[key]

    def __array__(self, dtype=None, copy=None):
        if dtype is None:
            return self.data
        return self.data.astype(dtype)

    def __repr__(self) -> str:
        return (
            f"ResponseBuffer(steps={self.num_steps}, receivers={self.num_receivers}, "
            f"completed={self.steps_completed})"
        )
