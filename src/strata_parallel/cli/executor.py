"""Script execution sandbox for simulation setup scripts.

A simulation script builds a `Simulation` from a geometry, a material table
and parameters. It runs with restricted imports in its own namespace.
"""

from __future__ import annotations

import builtins
import logging
import sys
from pathlib import Path
from typing import Any

from strata_parallel.core.parameters import Simulation

logger = logging.getLogger(__name__)

ALLOWED_MODULES = frozenset({"strata_parallel", "numpy", "np", "math", "pathlib"})


class RestrictedImportError(ImportError):
    """Raised when a disallowed module import is attempted."""

    pass


def execute_simulation_script(script_path: Path, script_content: str) -> dict[str, Any]:
    """Execute a simulation script in a controlled namespace.

    Only numpy, math, pathlib and strata_parallel may be imported. The
    script's directory is on sys.path while it runs so that it can load
    geometry files relative to itself.

    Args:
        script_path: Path to the script file (for __file__)
        script_content: Content of the script to execute

    Returns:
        Namespace dict containing all variables defined by the script

    Raises:
        RestrictedImportError: If the script imports a disallowed module
        SyntaxError: If the script has syntax errors
        Exception: Any exception raised by the script during execution
    """
    original_import = builtins.__import__

    def restricted_import(name, *args, **kwargs):
        top_level = name.split(".")[0]
        if top_level not in ALLOWED_MODULES:
            raise RestrictedImportError(
                f"Import of '{name}' is not allowed in simulation scripts. "
                f"Allowed modules: {', '.join(sorted(ALLOWED_MODULES))}"
            )
        return original_import(name, *args, **kwargs)

    # A private copy of the builtins keeps the patch out of the interpreter
    script_builtins = dict(vars(builtins))
    script_builtins["__import__"] = restricted_import
    namespace = {
        "__name__": "__main__",
        "__file__": str(script_path),
        "__builtins__": script_builtins,
    }

    script_dir = str(Path(script_path).parent)
    sys.path.insert(0, script_dir)
    try:
        logger.debug("Executing script: %s", script_path)
        exec(compile(script_content, str(script_path), "exec"), namespace)
        defined = [k for k in namespace if not k.startswith("__")]
        logger.debug("Script defined variables: %s", ", ".join(defined))
    finally:
        if script_dir in sys.path:
            sys.path.remove(script_dir)

    return namespace


def validate_simulation_object(namespace: dict[str, Any]) -> Simulation:
    """Return the script's `simulation` variable.

    Raises:
        ValueError: If no simulation is defined or it is not a Simulation
    """
    simulation = namespace.get("simulation")

    if simulation is None:
        raise ValueError(
            "Script must define a 'simulation' variable. "
            "Example: simulation = Simulation(geometry, materials, SimulationParameters(dx=0.05))"
        )

    if not isinstance(simulation, Simulation):
        raise ValueError(
            f"'simulation' must be a Simulation instance, got {type(simulation).__name__}"
        )

    return simulation
