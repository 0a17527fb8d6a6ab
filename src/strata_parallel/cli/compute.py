"""Command-line tool for running simulation scripts.

The fdtd-parallel CLI tool executes a simulation script, partitions the mesh
across the available devices and runs it with progress tracking, optional
PNG slice captures and HDF5 output.
"""

from __future__ import annotations

import dataclasses
import hashlib
import logging
import signal
import sys
import time
from pathlib import Path

import click
from rich.console import Console

from strata_parallel.core.callbacks import InterruptFlag
from strata_parallel.core.controller import SimulationController, SimulationState
from strata_parallel.core.devices import DeviceManager
from strata_parallel.core.errors import (
    DeviceQueryError,
    DeviceTimeoutError,
    GeometryLoadError,
    ResourceExhaustionError,
    StrataParallelError,
)
from strata_parallel.core.partition import MemoryPolicy, MeshPartitioner
from strata_parallel.io.captures import PNGCaptureWriter
from strata_parallel.io.hdf5 import HDF5ResultWriter
from strata_parallel.logging_config import setup_logging

from .executor import RestrictedImportError, execute_simulation_script, validate_simulation_object
from .progress import SimulationProgress, format_megabytes, format_time, print_device_table, print_simulation_info

console = Console()
logger = logging.getLogger(__name__)

EXIT_INTERRUPTED = 130


def apply_overrides(
    simulation,
    double: bool | None = None,
    force_partitions: int | None = None,
    bytes_single: float | None = None,
    bytes_double: float | None = None,
    element_limit: int | None = None,
):
    """Copy of a simulation with command-line overrides applied."""
    policy = simulation.memory_policy
    policy = MemoryPolicy(
        bytes_per_element_single=bytes_single if bytes_single is not None else policy.bytes_per_element_single,
        bytes_per_element_double=bytes_double if bytes_double is not None else policy.bytes_per_element_double,
        single_partition_element_limit=(
            element_limit if element_limit is not None else policy.single_partition_element_limit
        ),
    )
    return dataclasses.replace(
        simulation,
        double=simulation.double if double is None else double,
        force_partitions=simulation.force_partitions if force_partitions is None else force_partitions,
        memory_policy=policy,
    )


@click.command()
@click.argument("script", type=click.Path(exists=True, path_type=Path))
@click.option(
    "--output",
    "-o",
    type=click.Path(path_type=Path),
    help="Output file path (default: results_{hash}.h5)",
)
@click.option(
    "--mode",
    type=click.Choice(["simulate", "capture", "batch"]),
    default="simulate",
    help="simulate: step loop; capture: step loop with PNG slice captures; "
    "batch: kernel-driven full run",
)
@click.option("--double/--single", default=None, help="Override the script's precision")
@click.option("--partitions", type=int, default=2, show_default=True, help="Partitions above the element limit")
@click.option("--force-partitions", type=int, help="Force the partition count (ignored if invalid)")
@click.option("--bytes-single", type=float, help="Device bytes per element, single precision")
@click.option("--bytes-double", type=float, help="Device bytes per element, double precision")
@click.option("--element-limit", type=int, help="Single-partition element limit")
@click.option("--timeout", type=float, default=60.0, show_default=True, help="Device synchronization timeout (s)")
@click.option(
    "--capture-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("captures"),
    show_default=True,
    help="Directory for PNG captures (capture mode)",
)
@click.option("--log-file", type=click.Path(dir_okay=False), help="Also write the log to this file")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output with debug info")
@click.option("--dry-run", is_flag=True, help="Validate the script and memory budget without running")
@click.version_option(prog_name="fdtd-parallel", package_name="strata-parallel")
def main(script: Path, **options):
    """Run a room-acoustics simulation from a Python script.

    SCRIPT is the path to a Python file that defines a 'simulation' variable
    containing a Simulation instance.

    Example script:

    \b
        from strata_parallel import (Geometry, MaterialTable, Simulation,
                                     SimulationParameters)
        geometry = Geometry.box((4.0, 3.0, 2.5))
        materials = MaterialTable.uniform(0.1, geometry.num_triangles)
        params = SimulationParameters(dx=0.05, num_steps=2000,
                                      sources=[(1.0, 1.0, 1.2)],
                                      receivers=[(3.0, 2.0, 1.2)])
        simulation = Simulation(geometry, materials, params)
    """
    sys.exit(run_script(script, **options))


def run_script(
    script: Path,
    output: Path | None = None,
    mode: str = "simulate",
    double: bool | None = None,
    partitions: int = 2,
    force_partitions: int | None = None,
    bytes_single: float | None = None,
    bytes_double: float | None = None,
    element_limit: int | None = None,
    timeout: float = 60.0,
    capture_dir: Path = Path("captures"),
    log_file: str | None = None,
    verbose: bool = False,
    dry_run: bool = False,
    device_manager: DeviceManager | None = None,
    kernel=None,
) -> int:
    """Body of the fdtd-parallel command.

    Returns:
        Process exit code: 0 on success, 130 if interrupted, 1 on error
    """
    setup_logging(logging.DEBUG if verbose else logging.INFO, log_file, console=console)

    console.print(f"\n[bold]Simulation:[/bold] {script.name}", style="blue")
    console.print("─" * 60)

    script_content = Path(script).read_text()
    script_hash = hashlib.sha256(script_content.encode()).hexdigest()
    logger.debug("Script hash: %s", script_hash)

    if output is None:
        output = Path(f"results_{script_hash[:8]}.h5")

    console.print("Loading simulation...", style="dim")
    try:
        namespace = execute_simulation_script(Path(script), script_content)
        simulation = validate_simulation_object(namespace)
    except RestrictedImportError as e:
        console.print(f"\n[bold red]Security Error:[/bold red] {e}")
        return 1
    except SyntaxError as e:
        console.print("\n[bold red]Syntax Error in script:[/bold red]")
        console.print(f"  {e}")
        return 1
    except GeometryLoadError as e:
        console.print(f"\n[bold red]Geometry Error:[/bold red] {e}")
        return 1
    except ValueError as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
        return 1

    simulation = apply_overrides(simulation, double, force_partitions, bytes_single, bytes_double, element_limit)
    print_simulation_info(console, simulation, output, mode)

    manager = device_manager or DeviceManager(sync_timeout=timeout)
    try:
        if dry_run:
            return _dry_run(simulation, manager)
        return _run(simulation, manager, kernel, output, mode, partitions, capture_dir, script_content, verbose)
    except ResourceExhaustionError as e:
        console.print(f"\n[bold red]Out of device memory:[/bold red] {e}")
        return 1
    except (DeviceQueryError, DeviceTimeoutError) as e:
        console.print(f"\n[bold red]Device Error:[/bold red] {e}")
        return 1
    except (StrataParallelError, ValueError) as e:
        console.print(f"\n[bold red]Error:[/bold red] {e}")
        if verbose:
            console.print_exception()
        return 1
    finally:
        manager.shutdown()


def _dry_run(simulation, manager: DeviceManager) -> int:
    devices = manager.enumerate()
    print_device_table(console, devices)
    params = simulation.parameters
    estimate = simulation.geometry.estimated_elements(params.dx)
    partitioner = MeshPartitioner(simulation.memory_policy)
    footprint = partitioner.check_budget(estimate, simulation.double, devices)
    console.print(
        f"Estimated footprint {format_megabytes(footprint)} of {format_megabytes(manager.budget_mb)} available"
    )
    console.print("[yellow]Dry run - simulation not executed[/yellow]")
    return 0


def _run(simulation, manager, kernel, output, mode, partitions, capture_dir, script_content, verbose) -> int:
    interrupt = InterruptFlag()
    progress = SimulationProgress(console)
    slice_sink = PNGCaptureWriter(capture_dir) if mode == "capture" else None

    controller = SimulationController(
        simulation,
        manager,
        kernel=kernel,
        interrupt=interrupt,
        progress=progress,
        slice_sink=slice_sink,
    )
    mesh = controller.initialize_mesh(partition_hint=partitions)
    print_device_table(console, manager.devices)
    progress.num_elements = mesh.num_elements

    writer = HDF5ResultWriter(output, controller, script_content=script_content)
    controller.volume_sink = writer

    previous_handler = signal.signal(signal.SIGINT, lambda *_: interrupt.set())
    start_time = time.time()
    try:
        with progress:
            if mode == "batch":
                responses = controller.run_batch()
            else:
                responses = controller.run()
    except Exception as e:
        console.print(f"\n[bold red]Simulation Error:[/bold red] {e}")
        if verbose:
            console.print_exception()
        writer.finalize()
        controller.close()
        return 1
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    runtime = time.time() - start_time
    interrupted = controller.state == SimulationState.INTERRUPTED
    writer.finalize(responses, runtime=runtime, mode=mode)
    controller.close()

    console.print("─" * 60)
    if interrupted:
        console.print(f"[yellow]Interrupted at step {responses.steps_completed}[/yellow]")
        exit_code = EXIT_INTERRUPTED
    else:
        console.print("✓ [bold green]Simulation complete![/bold green]")
        exit_code = 0

    if output.exists():
        console.print(f"  Output: {output} ({output.stat().st_size / 1e6:.1f} MB)")
    else:
        console.print(f"  Output: {output}")
    if slice_sink is not None:
        console.print(f"  Captures: {len(slice_sink.written)} in {capture_dir}")
    console.print(f"  Runtime: {format_time(runtime)}")

    if runtime > 0:
        throughput = responses.steps_completed * mesh.num_elements / runtime / 1e6
        console.print(f"  Average throughput: {throughput:.1f} Mcells/s")
    return exit_code


if __name__ == "__main__":
    main()
