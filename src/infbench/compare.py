"""Side-by-side backend comparison per model size.

Built from the aggregate rows: for each model size measured by more
than one backend, every backend's average is set against the fastest
one.  Groups without samples stay in the comparison with no ratio.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

from infbench.aggregate import UNAVAILABLE, AggregateRecord

# Decimal places for relative-speed ratios.
RATIO_PRECISION = 2


@dataclass
class BackendStanding:
    """One backend's average for a model size, relative to the fastest."""

    backend: str
    avg_duration: float | None
    relative: float | None = None  # avg / fastest avg; None without samples
    fastest: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "backend": self.backend,
            "avg_duration": UNAVAILABLE if self.avg_duration is None else round(self.avg_duration, 6),
            "relative": UNAVAILABLE if self.relative is None else self.relative,
        }


@dataclass
class SizeComparison:
    """All backends requested for one model size."""

    model_size: str
    standings: list[BackendStanding] = field(default_factory=list)

    @property
    def fastest(self) -> str | None:
        """Name of the fastest backend, or None if nothing has samples."""
        for standing in self.standings:
            if standing.fastest:
                return standing.backend
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "model_size": self.model_size,
            "fastest": self.fastest,
            "backends": [s.to_dict() for s in self.standings],
        }


def compare_backends(aggregates: Sequence[AggregateRecord]) -> list[SizeComparison]:
    """Compare backends within each model size.

    Sizes appear in first-seen order and backends keep their row order.
    A size covered by a single backend has nothing to compare and is
    left out.
    """
    by_size: dict[str, list[AggregateRecord]] = {}
    for record in aggregates:
        by_size.setdefault(record.model_size, []).append(record)

    comparisons: list[SizeComparison] = []
    for size, records in by_size.items():
        if len(records) < 2:
            continue
        measured = [r.avg_duration for r in records if r.avg_duration is not None]
        best = min(measured) if measured else None
        comparison = SizeComparison(model_size=size)
        for record in records:
            standing = BackendStanding(record.backend, record.avg_duration)
            if record.avg_duration is not None and best:
                standing.relative = round(record.avg_duration / best, RATIO_PRECISION)
            if best is not None and record.avg_duration == best and comparison.fastest is None:
                standing.fastest = True
            comparison.standings.append(standing)
        comparisons.append(comparison)
    return comparisons
