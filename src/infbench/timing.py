"""Timed subprocess execution.

Runs one backend invocation and measures its wall-clock time with
``time.monotonic`` (immune to system clock adjustments).  Commands are
always argument lists: nothing goes through a shell.

Each child starts its own session so that on timeout, or when the
parent is interrupted, the whole process group can be killed, including
anything the backend spawned itself (``cargo run`` starts the compiled
example as a grandchild).
"""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

log = logging.getLogger("infbench")

# How much of a failing command's stderr to keep for diagnostics.
STDERR_TAIL_CHARS = 2000


@dataclass
class TimedResult:
    """Result of a timed subprocess execution."""

    wall_time_s: float
    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.exit_code == 0

    @property
    def stderr_tail(self) -> str:
        return self.stderr[-STDERR_TAIL_CHARS:]


def run_timed(
    argv: Sequence[str],
    *,
    cwd: str | Path | None = None,
    env: dict[str, str] | None = None,
    timeout: float = 600,
) -> TimedResult:
    """Execute *argv* and measure its wall-clock duration.

    Args:
        argv: Program and arguments.  Must be non-empty.
        cwd: Working directory for the subprocess.
        env: Extra environment variables layered over ``os.environ``.
        timeout: Seconds before the process group is killed.

    Returns:
        TimedResult.  A timeout yields ``timed_out=True`` and exit
        code -1.

    Raises:
        OSError: If the program cannot be started (e.g. not installed).
        KeyboardInterrupt: Propagated after the child group is killed.
    """
    if not argv:
        raise ValueError("run_timed needs a non-empty argument list")

    run_env = dict(os.environ)
    if env:
        run_env.update(env)

    wall_start = time.monotonic()
    proc = subprocess.Popen(
        list(argv),
        cwd=str(cwd) if cwd else None,
        env=run_env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        errors="replace",
        start_new_session=True,
    )

    timed_out = False
    try:
        stdout, stderr = proc.communicate(timeout=timeout)
        exit_code = proc.returncode
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_process_group(proc)
        stdout, stderr = _drain(proc)
        exit_code = -1
    except BaseException:
        # Interrupted while waiting: don't leave the backend running.
        _kill_process_group(proc)
        _drain(proc)
        raise

    wall_time = time.monotonic() - wall_start

    return TimedResult(
        wall_time_s=round(wall_time, 6),
        exit_code=exit_code,
        stdout=stdout or "",
        stderr=stderr or "",
        timed_out=timed_out,
    )


def _kill_process_group(proc: subprocess.Popen[str]) -> None:
    """Kill the child's whole process group."""
    try:
        os.killpg(os.getpgid(proc.pid), signal.SIGKILL)
    except (ProcessLookupError, PermissionError, OSError):
        # Group already gone; fall back to the direct child.
        try:
            proc.kill()
        except OSError:
            pass


def _drain(proc: subprocess.Popen[str]) -> tuple[str, str]:
    """Collect remaining output after a kill without blocking forever."""
    try:
        return proc.communicate(timeout=5)
    except subprocess.TimeoutExpired:
        # A grandchild outside the group still holds the pipes open.
        proc.kill()
        log.debug("Output pipes of pid %d still open after kill", proc.pid)
        for pipe in (proc.stdout, proc.stderr):
            if pipe is not None:
                pipe.close()
        proc.wait()
        return "", ""
