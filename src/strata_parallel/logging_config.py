"""Logging configuration for the strata_parallel package."""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler


def setup_logging(
    level: int = logging.INFO,
    log_file: str | None = None,
    console: Console | None = None,
) -> logging.Logger:
    """Configure the 'strata_parallel' logger.

    Console records go through rich; an optional file gets plain records.

    Args:
        level: Logging level (e.g. logging.DEBUG, logging.INFO)
        log_file: Optional path to save logs to a file
        console: Rich console to log to (default: stderr)

    Returns:
        The package logger
    """
    logger = logging.getLogger("strata_parallel")
    logger.setLevel(level)

    # Avoid duplicate records when called more than once
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console_handler = RichHandler(console=console or Console(stderr=True), show_path=False)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter("%(message)s", datefmt="%H:%M:%S"))
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode="w", encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s", datefmt="%H:%M:%S")
        )
        logger.addHandler(file_handler)

    logger.debug("Logging initialized")
    return logger
