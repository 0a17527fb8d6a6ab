"""Room-acoustic diagnostics."""

from strata_parallel.analysis.metrics import SABINE_CONSTANT, AcousticMetrics

__all__ = ["AcousticMetrics", "SABINE_CONSTANT"]
