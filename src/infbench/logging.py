"""Logging setup for infbench.

Console output is the operator's view of a benchmark run; the optional
file handler keeps the full transcript (always at DEBUG) next to the
results so a run can be audited after the fact.
"""

from __future__ import annotations

import logging
from pathlib import Path

_LOGGER_NAME = "infbench"
_FILE_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
_CONSOLE_FORMAT = "%(message)s"
_VERBOSE_CONSOLE_FORMAT = "%(levelname)-8s %(message)s"


def setup_logging(
    *,
    verbose: bool = False,
    quiet: bool = False,
    log_file: Path | None = None,
) -> logging.Logger:
    """Configure and return the root infbench logger.

    Args:
        verbose: Console at DEBUG, with level names.
        quiet: Console at WARNING. Ignored if *verbose* is True.
        log_file: If provided, also write a DEBUG transcript to this path.
            Parent directories are created.

    Returns:
        The configured ``infbench`` logger.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    logger.setLevel(logging.DEBUG)

    # Reconfiguration (e.g. repeated CLI invocations in tests) must not
    # stack handlers.
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler()
    if verbose:
        console.setLevel(logging.DEBUG)
        console.setFormatter(logging.Formatter(_VERBOSE_CONSOLE_FORMAT))
    else:
        console.setLevel(logging.WARNING if quiet else logging.INFO)
        console.setFormatter(logging.Formatter(_CONSOLE_FORMAT))
    logger.addHandler(console)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(log_file, encoding="utf-8")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(_FILE_FORMAT))
        logger.addHandler(fh)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a named child logger under the infbench namespace."""
    return logging.getLogger(f"{_LOGGER_NAME}.{name}")
