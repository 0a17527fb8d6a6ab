"""Capture and result persistence."""

from strata_parallel.io.captures import MemoryCaptureSink, PNGCaptureWriter
from strata_parallel.io.hdf5 import HDF5ResultReader, HDF5ResultWriter

__all__ = [
    "HDF5ResultReader",
    "HDF5ResultWriter",
    "MemoryCaptureSink",
    "PNGCaptureWriter",
]
