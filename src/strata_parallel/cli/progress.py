"""Progress display for simulation runs.

Provides rich terminal UI for real-time progress tracking including:
- Progress bar with percentage
- Elapsed time and ETA
- Computational throughput (Mcells/s)
- Memory usage
"""

from __future__ import annotations

import time

import psutil
from rich.console import Console
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)
from rich.table import Table


def format_time(seconds: float) -> str:
    """Format time duration for display.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted string like "1m 23s" or "2h 15m"
    """
    if seconds < 60:
        return f"{seconds:.0f}s"
    elif seconds < 3600:
        minutes = int(seconds // 60)
        secs = int(seconds % 60)
        return f"{minutes}m {secs:02d}s"
    else:
        hours = int(seconds // 3600)
        minutes = int((seconds % 3600) // 60)
        return f"{hours}h {minutes:02d}m"


def format_megabytes(mb: float) -> str:
    """Format a size in MB (1e6 bytes) as MB or GB."""
    if mb >= 1000.0:
        return f"{mb / 1000.0:.1f} GB"
    return f"{mb:.1f} MB"


class SimulationProgress:
    """Progress sink showing a rich progress bar.

    Receives (step, max_step, time_per_step) from the controller after every
    step and rate-limits the display updates.

    Example:
        >>> progress = SimulationProgress(console, num_elements=mesh.num_elements)
        >>> controller = SimulationController(simulation, manager, progress=progress)

    Args:
        console: Rich console instance
        num_elements: Mesh elements, for the throughput figure
        update_interval: Minimum time between updates (seconds)
    """

    def __init__(self, console: Console, num_elements: int = 0, update_interval: float = 0.1):
        self.console = console
        self.num_elements = num_elements
        self.update_interval = update_interval

        self.last_update = 0.0
        self.peak_memory = 0.0
        self.time_per_step: float | None = None
        self._task = None

        self.progress = Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            TimeElapsedColumn(),
            TextColumn("•"),
            TimeRemainingColumn(),
            TextColumn("[dim]{task.fields[stats]}"),
            console=console,
        )

    def on_progress(self, step: int, max_step: int, time_per_step: float) -> None:
        """Update the display for the step just completed."""
        if self._task is None:
            self._task = self.progress.add_task("Computing", total=max_step, stats="")
            self.progress.start()

        self.time_per_step = time_per_step
        current_time = time.time()
        if current_time - self.last_update < self.update_interval and step < max_step:
            return

        if time_per_step > 0 and self.num_elements:
            throughput_mcells = self.num_elements / time_per_step / 1e6
        else:
            throughput_mcells = 0.0

        current_memory = psutil.Process().memory_info().rss / (1024**3)  # GB
        self.peak_memory = max(self.peak_memory, current_memory)

        stats = (
            f"{time_per_step * 1e3:.2f} ms/step | {throughput_mcells:.1f} Mcells/s | "
            f"Memory: {current_memory:.2f} GB (peak: {self.peak_memory:.2f} GB)"
        )
        self.progress.update(self._task, completed=step, stats=stats)
        self.last_update = current_time

    def finish(self):
        """Stop the progress display."""
        if self._task is not None:
            self.progress.stop()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.finish()


def print_device_table(console: Console, devices) -> None:
    """Print the enumerated devices and their free memory."""
    table = Table(title="Devices", box=None, padding=(0, 2))
    table.add_column("Id", style="cyan")
    table.add_column("Name", style="white")
    table.add_column("Kind")
    table.add_column("Free", justify="right")
    table.add_column("Total", justify="right")
    for device in devices:
        table.add_row(
            str(device.id),
            device.name,
            device.kind,
            format_megabytes(device.free_mb),
            format_megabytes(device.total_mb),
        )
    console.print(table)
    console.print()


def print_simulation_info(console: Console, simulation, output_path, mode: str) -> None:
    """Print simulation parameters before running.

    Args:
        console: Rich console instance
        simulation: Simulation to run
        output_path: Path to output file
        mode: Run mode shown in the table
    """
    params = simulation.parameters
    geometry = simulation.geometry
    estimate = geometry.estimated_elements(params.dx)

    table = Table(show_header=False, box=None, padding=(0, 2))
    table.add_column("Parameter", style="cyan")
    table.add_column("Value", style="white")

    table.add_row("Geometry", f"{geometry.num_triangles} triangles, {geometry.num_materials} material(s)")
    table.add_row("Resolution", f"{params.dx * 1e3:.2f} mm (~{estimate / 1e6:.2f}M elements)")
    table.add_row("Scheme", f"{params.scheme.name}, octave {params.octave}")
    table.add_row("Sample rate", f"{params.spatial_fs:.1f} Hz")
    table.add_row("Duration", f"{params.num_steps} steps ({params.num_steps * params.dt:.3f} s)")
    table.add_row("Precision", "double" if simulation.double else "single")
    table.add_row("Sources / receivers", f"{params.num_sources} / {params.num_receivers}")
    if simulation.force_partitions is not None:
        table.add_row("Forced partitions", str(simulation.force_partitions))
    table.add_row("Mode", mode)
    table.add_row("Output", str(output_path))

    console.print(table)
    console.print()
