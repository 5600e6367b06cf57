"""Execution environment classification.

Decides which hardware class the benchmark host belongs to so the
planner can pick backend flags declaratively instead of branching on
host details throughout the run.

Markers checked, in order:

- ``/etc/nv_tegra_release`` or a ``tegra`` kernel: embedded accelerator
  board (NVIDIA Jetson family).
- ``/proc/device-tree/model`` mentioning Raspberry Pi: single-board
  computer.
- Anything else: generic desktop.
"""

from __future__ import annotations

import enum
import functools
import logging
import platform
import shutil
from pathlib import Path
from typing import Callable

log = logging.getLogger("infbench")

_TEGRA_RELEASE = "etc/nv_tegra_release"
_DEVICE_TREE_MODEL = "proc/device-tree/model"
_CUDA_COMPILER = "nvcc"
_CUDA_DEFAULT_NVCC = Path("/usr/local/cuda/bin/nvcc")


class PlatformClass(str, enum.Enum):
    """Hardware class of the benchmark host."""

    EMBEDDED_ACCELERATOR = "embedded-accelerator"
    SINGLE_BOARD = "single-board"
    GENERIC_DESKTOP = "generic-desktop"

    def __str__(self) -> str:
        return self.value


class AcceleratorState(str, enum.Enum):
    """Whether accelerator-specific backend flags are applied."""

    ENABLED = "enabled"
    DISABLED = "disabled"

    def __str__(self) -> str:
        return self.value


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def classify_platform(
    *,
    root: Path = Path("/"),
    kernel_release: str | None = None,
) -> PlatformClass:
    """Classify a host from its filesystem markers and kernel string.

    Pure apart from reading marker files under *root*.  Unreadable or
    unrecognized hosts map to ``GENERIC_DESKTOP``; this never raises.

    Args:
        root: Filesystem root to look for markers under (tests point
            this at a temporary directory).
        kernel_release: Kernel release string.  Defaults to
            ``platform.release()``.
    """
    if kernel_release is None:
        try:
            kernel_release = platform.release()
        except Exception:  # noqa: BLE001
            kernel_release = ""

    try:
        if (root / _TEGRA_RELEASE).exists():
            return PlatformClass.EMBEDDED_ACCELERATOR
    except OSError:
        pass
    if "tegra" in kernel_release.lower():
        return PlatformClass.EMBEDDED_ACCELERATOR

    try:
        model_path = root / _DEVICE_TREE_MODEL
        if model_path.exists():
            # Device-tree strings are NUL-terminated.
            model = model_path.read_bytes().decode("utf-8", errors="replace")
            if "Raspberry Pi" in model:
                return PlatformClass.SINGLE_BOARD
    except OSError:
        pass

    return PlatformClass.GENERIC_DESKTOP


@functools.lru_cache(maxsize=1)
def detect() -> PlatformClass:
    """Classify the current host once and cache the result."""
    platform_class = classify_platform()
    log.debug("Detected platform: %s", platform_class)
    return platform_class


# ---------------------------------------------------------------------------
# Accelerator toolchain
# ---------------------------------------------------------------------------


def accelerator_toolchain_present(
    which: Callable[[str], str | None] = shutil.which,
) -> bool:
    """Return True if the CUDA compiler is available on this host."""
    if which(_CUDA_COMPILER):
        return True
    try:
        return _CUDA_DEFAULT_NVCC.is_file()
    except OSError:
        return False


def accelerator_state(
    platform_class: PlatformClass,
    toolchain_present: bool,
) -> AcceleratorState:
    """Decide whether accelerator flags apply.

    Enabled only on an embedded accelerator board whose toolchain was
    verified; every other combination is disabled.
    """
    if platform_class is PlatformClass.EMBEDDED_ACCELERATOR and toolchain_present:
        return AcceleratorState.ENABLED
    return AcceleratorState.DISABLED
