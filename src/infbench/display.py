"""Plain-text formatting for benchmark summaries and plans.

The summary layout mirrors what operators have been reading on the
console and in ``summary_<timestamp>.txt``: a header with the host
description, then one block per (backend, model size) in planner order,
then the backends side by side for each model size.
"""

from __future__ import annotations

import time
from pathlib import Path

from infbench.aggregate import AggregateRecord
from infbench.compare import BackendStanding, SizeComparison, compare_backends
from infbench.planner import PlanResult
from infbench.results import BenchMeta
from infbench.system import format_system_profile

TITLE = "Benchmark Summary"


# ---------------------------------------------------------------------------
# Value formatting
# ---------------------------------------------------------------------------


def format_duration(seconds: float | None, precision: int = 3) -> str:
    """Format an average duration, or N/A when there were no samples."""
    if seconds is None:
        return "N/A"
    return f"{seconds:.{precision}f} seconds"


def format_rate(record: AggregateRecord) -> str:
    """Format a success rate, or N/A when nothing was attempted."""
    if not record.has_data:
        return "N/A"
    return f"{record.success_rate:.1f}%"


def format_relative(standing: BackendStanding) -> str:
    """Format a ratio to the fastest backend, or N/A without samples."""
    if standing.relative is None:
        return "N/A"
    text = f"{standing.relative:.2f}x"
    if standing.fastest:
        text += " (fastest)"
    return text


def _format_comparison(comparison: SizeComparison) -> list[str]:
    width = max(len(s.backend) for s in comparison.standings)
    lines = [f"Model Size: {comparison.model_size}"]
    for standing in comparison.standings:
        lines.append(
            f"  {standing.backend:<{width}s}  "
            f"{format_duration(standing.avg_duration):<16s} {format_relative(standing)}"
        )
    return lines


# ---------------------------------------------------------------------------
# Summary report
# ---------------------------------------------------------------------------


def render_report(
    meta: BenchMeta,
    aggregates: list[AggregateRecord],
    *,
    results_dir: Path,
) -> str:
    """Render the human-readable summary.

    Args:
        meta: Run metadata (platform, system profile, skips).
        aggregates: Rows from ``aggregate()``, already in report order.
        results_dir: Where the per-run JSON records live.

    Returns:
        The summary text, newline-terminated.
    """
    lines: list[str] = []

    title = meta.name or TITLE
    lines.append(title)
    lines.append("=" * len(title))
    lines.append(f"Platform: {meta.platform or 'unknown'}")
    if meta.accelerator:
        lines.append(f"Accelerator flags: {meta.accelerator}")
    lines.append(f"Date: {meta.start_time or time.strftime('%Y-%m-%dT%H:%M:%S%z')}")
    if meta.interrupted:
        lines.append(
            f"Interrupted: {meta.runs_completed} of {meta.runs_planned} planned runs completed"
        )
    lines.append("")
    lines.append(format_system_profile(meta.system))
    lines.append("")

    lines.append("Results")
    lines.append("-" * 7)
    if not aggregates:
        lines.append("No benchmark combinations were requested.")
    for record in aggregates:
        lines.append(f"Backend: {record.backend}, Model Size: {record.model_size}")
        lines.append(f"  Average Time: {format_duration(record.avg_duration)}")
        lines.append(f"  Success Rate: {format_rate(record)}")
        if record.has_data:
            lines.append(f"  Repetitions:  {record.succeeded}/{record.attempted} succeeded")
        for failure in record.failures:
            lines.append(f"  Failure: {failure}")
        lines.append("")

    comparisons = compare_backends(aggregates)
    if comparisons:
        lines.append("Backend Comparison")
        lines.append("-" * 18)
        for comparison in comparisons:
            lines.extend(_format_comparison(comparison))
            lines.append("")

    if meta.skips:
        lines.append("Skipped")
        lines.append("-" * 7)
        for skip in meta.skips:
            lines.append(f"  {skip.backend}/{skip.model_size}/{skip.task}: {skip.reason}")
        lines.append("")

    lines.append(f"For detailed results, see the individual JSON files in {results_dir}")
    return "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# Plan (dry run)
# ---------------------------------------------------------------------------


def format_plan(planned: PlanResult, *, repetitions: int, warmup: int) -> str:
    """Describe what ``run`` would execute, without executing anything."""
    lines = [
        f"Platform: {planned.platform}",
        f"Accelerator flags: {planned.accelerator}",
        f"Repetitions: {repetitions} measured + {warmup} warmup",
        "",
    ]

    if planned.descriptors:
        lines.append(f"Runs ({len(planned.descriptors)}):")
        for i, d in enumerate(planned.descriptors, 1):
            flags = " ".join(d.extra_flags) or "-"
            lines.append(f"  {i:3d}. {d.label:32s} {d.artifact_path}  [{flags}]")
    else:
        lines.append("Runs: none")

    if planned.skips:
        lines.append("")
        lines.append(f"Skipped ({len(planned.skips)}):")
        for skip in planned.skips:
            lines.append(f"  {skip.backend}/{skip.model_size}/{skip.task}: {skip.reason}")

    return "\n".join(lines)
