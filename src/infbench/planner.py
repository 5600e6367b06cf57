"""Benchmark matrix planning.

Expands backend x size x task into immutable run descriptors, dropping
combinations whose model artifacts are not installed.  A missing
artifact directory is an expected partial installation, so it produces
a skip notice rather than an error.

Ordering is backend-major, size-minor, task innermost.  The same order
drives execution and the rows of the final report.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Mapping, Sequence

from infbench.config import BackendDef, BenchConfig
from infbench.environment import AcceleratorState, PlatformClass, accelerator_state

log = logging.getLogger("infbench")

RunKey = tuple[str, str, str]


# ---------------------------------------------------------------------------
# RunDescriptor
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RunDescriptor:
    """One fully resolved benchmark unit."""

    backend: str
    model_size: str
    task: str
    repetitions: int
    warmup_count: int
    artifact_path: Path
    extra_flags: tuple[str, ...] = ()
    prompt: str = ""

    def __post_init__(self) -> None:
        if self.repetitions < 1:
            raise ValueError(f"repetitions must be positive (got {self.repetitions})")
        if self.warmup_count < 0:
            raise ValueError(f"warmup_count cannot be negative (got {self.warmup_count})")

    @property
    def key(self) -> RunKey:
        """The (backend, model_size, task) identity of this run."""
        return (self.backend, self.model_size, self.task)

    @property
    def label(self) -> str:
        return "/".join(self.key)

    def to_dict(self) -> dict[str, object]:
        return {
            "backend": self.backend,
            "model_size": self.model_size,
            "task": self.task,
            "repetitions": self.repetitions,
            "warmup_count": self.warmup_count,
            "artifact_path": str(self.artifact_path),
            "extra_flags": list(self.extra_flags),
            "prompt": self.prompt,
        }

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> RunDescriptor:
        return cls(
            backend=str(data["backend"]),
            model_size=str(data["model_size"]),
            task=str(data["task"]),
            repetitions=int(data["repetitions"]),  # type: ignore[arg-type]
            warmup_count=int(data.get("warmup_count", 0)),  # type: ignore[arg-type]
            artifact_path=Path(str(data["artifact_path"])),
            extra_flags=tuple(str(f) for f in data.get("extra_flags", [])),  # type: ignore[union-attr]
            prompt=str(data.get("prompt", "")),
        )


# ---------------------------------------------------------------------------
# Plan output
# ---------------------------------------------------------------------------


@dataclass
class PlanSkip:
    """A requested combination left out of the plan, and why."""

    backend: str
    model_size: str
    task: str
    reason: str

    def to_dict(self) -> dict[str, str]:
        return {
            "backend": self.backend,
            "model_size": self.model_size,
            "task": self.task,
            "reason": self.reason,
        }


@dataclass
class PlanResult:
    """Ordered descriptors plus the skip notices produced while planning."""

    platform: PlatformClass
    accelerator: AcceleratorState
    descriptors: list[RunDescriptor] = field(default_factory=list)
    skips: list[PlanSkip] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


def artifact_path(model_dir: Path, backend: str, size: str) -> Path:
    """Where the weights for (backend, size) are expected to live."""
    return model_dir / backend / size.capitalize()


def backend_flags(backend: BackendDef, state: AcceleratorState) -> tuple[str, ...]:
    """Flags to append for *backend* under the given accelerator state."""
    if state is AcceleratorState.ENABLED:
        return tuple(backend.accelerator_flags)
    return tuple(backend.fallback_flags)


def plan(
    platform: PlatformClass,
    backends: Sequence[str],
    sizes: Sequence[str],
    tasks: Sequence[str],
    repetitions: int,
    warmup: int,
    *,
    config: BenchConfig,
    exists: Callable[[Path], bool] = Path.is_dir,
    toolchain_present: bool = False,
    environ: Mapping[str, str] | None = None,
) -> PlanResult:
    """Expand the requested matrix into run descriptors.

    Args:
        platform: Host classification from ``environment.detect()``.
        backends: Backend names, in requested order.
        sizes: Model size names, in requested order.
        tasks: Task names, in requested order.
        repetitions: Timed repetitions per descriptor.
        warmup: Untimed warmup invocations per descriptor.
        config: Supplies ``model_dir``, backend definitions and prompts.
        exists: Artifact existence predicate.  Tests inject a fake.
        toolchain_present: Whether the accelerator toolchain was
            independently verified on this host.
        environ: Environment consulted for ``required_env``.

    Returns:
        A PlanResult whose descriptors preserve the cross-product order.
    """
    env = os.environ if environ is None else environ
    state = accelerator_state(platform, toolchain_present)
    result = PlanResult(platform=platform, accelerator=state)
    log.debug("Planning on %s (accelerator flags %s)", platform, state)

    for backend_name in backends:
        backend = config.backend_defs[backend_name]
        missing_env = [var for var in backend.required_env if not env.get(var)]
        flags = backend_flags(backend, state)

        for size in sizes:
            path = artifact_path(config.model_dir, backend_name, size)
            for task in tasks:
                reason = ""
                if missing_env:
                    reason = f"environment variable {missing_env[0]} not set"
                elif not exists(path):
                    reason = f"artifact directory not found: {path}"

                if reason:
                    result.skips.append(PlanSkip(backend_name, size, task, reason))
                    log.info("Skipping %s/%s/%s (%s)", backend_name, size, task, reason)
                    continue

                result.descriptors.append(
                    RunDescriptor(
                        backend=backend_name,
                        model_size=size,
                        task=task,
                        repetitions=repetitions,
                        warmup_count=warmup,
                        artifact_path=path,
                        extra_flags=flags,
                        prompt=config.prompts.get(task, ""),
                    )
                )

    return result


def plan_from_config(
    config: BenchConfig,
    platform: PlatformClass,
    *,
    exists: Callable[[Path], bool] = Path.is_dir,
    toolchain_present: bool = False,
    environ: Mapping[str, str] | None = None,
) -> PlanResult:
    """Plan the matrix described by *config*."""
    return plan(
        platform,
        config.backends,
        config.sizes,
        config.tasks,
        config.repetitions,
        config.warmup,
        config=config,
        exists=exists,
        toolchain_present=toolchain_present,
        environ=environ,
    )


def matrix_groups(backends: Sequence[str], sizes: Sequence[str]) -> list[tuple[str, str]]:
    """Report row order: (backend, size) in planner order."""
    return [(backend, size) for backend in backends for size in sizes]
