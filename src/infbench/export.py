"""Export benchmark results as JSON and CSV.

JSON: the aggregate summary, the per-size backend comparison and the
run metadata, one document per benchmark, written next to the text
summary.

CSV: one row per backend x size x task x repetition (long format for
spreadsheets and pandas).  This is the raw timing data.
"""

from __future__ import annotations

import csv
import io
import json

from infbench.aggregate import AggregateRecord
from infbench.compare import compare_backends
from infbench.results import BenchMeta, RunResult

CSV_COLUMNS = [
    "backend",
    "model_size",
    "task",
    "repetition",
    "wall_time_s",
    "exit_code",
    "status",
    "detail",
    "run_status",
]


def export_json(meta: BenchMeta, aggregates: list[AggregateRecord]) -> str:
    """Export the summary as a JSON document."""
    document = {
        "bench_id": meta.bench_id,
        "name": meta.name,
        "platform": meta.platform,
        "accelerator": meta.accelerator,
        "start_time": meta.start_time,
        "end_time": meta.end_time,
        "interrupted": meta.interrupted,
        "system": meta.system.to_dict(),
        "matrix": meta.matrix,
        "skips": [skip.to_dict() for skip in meta.skips],
        "aggregates": [record.to_dict() for record in aggregates],
        "comparisons": [c.to_dict() for c in compare_backends(aggregates)],
    }
    return json.dumps(document, indent=2) + "\n"


def export_csv(results: list[RunResult]) -> str:
    """Export every recorded repetition as CSV.

    Results with no repetitions (nothing was attempted) produce no rows.
    """
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(CSV_COLUMNS)

    for r in sorted(results, key=lambda r: r.key):
        d = r.descriptor
        for rep in r.repetitions:
            writer.writerow(
                [
                    d.backend,
                    d.model_size,
                    d.task,
                    rep.index,
                    f"{rep.wall_time_s:.6f}",
                    rep.exit_code,
                    rep.status,
                    rep.detail,
                    r.status,
                ]
            )

    return output.getvalue()
