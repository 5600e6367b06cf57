"""Per-(backend, size) aggregation of run results.

Metrics are computed from the raw per-repetition samples recorded by
the runner.  Statistics a backend reports about itself in its own
output file are not consulted.
"""

from __future__ import annotations

import statistics
from dataclasses import dataclass, field
from typing import Any, Sequence

from infbench.planner import matrix_groups
from infbench.results import RunResult

# Decimal places for success rates, everywhere.
RATE_PRECISION = 1

UNAVAILABLE = "unavailable"


@dataclass
class AggregateRecord:
    """Derived statistics for one (backend, model size) group."""

    backend: str
    model_size: str
    avg_duration: float | None = None  # None: no successful samples
    success_rate: float = 0.0  # percent, 0-100
    attempted: int = 0
    succeeded: int = 0
    runs: int = 0
    failures: list[str] = field(default_factory=list)

    @property
    def has_data(self) -> bool:
        return self.attempted > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "backend": self.backend,
            "model_size": self.model_size,
            "avg_duration": UNAVAILABLE if self.avg_duration is None else round(self.avg_duration, 6),
            "success_rate": self.success_rate,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "runs": self.runs,
            "failures": self.failures,
        }


def success_rate(succeeded: int, attempted: int) -> float:
    """Percentage of successful repetitions; 0.0 if nothing was attempted."""
    if attempted <= 0:
        return 0.0
    return round(100.0 * succeeded / attempted, RATE_PRECISION)


def aggregate(
    results: Sequence[RunResult],
    *,
    backends: Sequence[str] | None = None,
    sizes: Sequence[str] | None = None,
    tasks: Sequence[str] | None = None,
) -> list[AggregateRecord]:
    """Group results by (backend, model size) and compute metrics.

    With *backends* and *sizes* given, the rows are exactly their
    cross product in planner order, and groups without any result are
    still present (with no average and a zero success rate).  Results
    outside the requested matrix are ignored.  Without a matrix, rows
    follow first appearance in *results*.

    Args:
        results: Run results, typically ``ResultStore.list()``.
        backends: Requested backends, in order.
        sizes: Requested model sizes, in order.
        tasks: If given, only results for these tasks are counted.
    """
    groups: dict[tuple[str, str], list[RunResult]] = {}
    if backends is not None and sizes is not None:
        for group in matrix_groups(backends, sizes):
            groups[group] = []
        fixed = True
    else:
        fixed = False

    task_filter = set(tasks) if tasks is not None else None
    for result in results:
        d = result.descriptor
        if task_filter is not None and d.task not in task_filter:
            continue
        group = (d.backend, d.model_size)
        if group not in groups:
            if fixed:
                continue
            groups[group] = []
        groups[group].append(result)

    return [_aggregate_group(backend, size, members) for (backend, size), members in groups.items()]


def _aggregate_group(backend: str, size: str, members: list[RunResult]) -> AggregateRecord:
    record = AggregateRecord(backend=backend, model_size=size, runs=len(members))
    samples: list[float] = []
    for result in sorted(members, key=lambda r: r.descriptor.task):
        samples.extend(result.elapsed_seconds)
        record.attempted += result.attempted
        record.succeeded += result.succeeded
        if not result.ok and result.reason:
            record.failures.append(f"{result.descriptor.task}: {result.reason}")

    if samples:
        record.avg_duration = statistics.fmean(samples)
    record.success_rate = success_rate(record.succeeded, record.attempted)
    return record
