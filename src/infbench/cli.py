"""Command-line interface for infbench.

Subcommands:
    infbench run      Execute the benchmark matrix and write the summary
    infbench plan     Show what ``run`` would execute, without running it
    infbench report   Re-aggregate a results directory (text, JSON or CSV)
    infbench system   Print platform classification and host profile
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Any, Callable

import click

from infbench import __version__
from infbench.config import BenchConfig
from infbench.results import BenchMeta, RunResult

log = logging.getLogger("infbench")

# Exit status after an interrupted run, as a shell would report SIGINT.
EXIT_INTERRUPTED = 130


@click.group()
@click.version_option(version=__version__)
def main() -> None:
    """Benchmark inference backends across model sizes and tasks."""


# ---------------------------------------------------------------------------
# Shared options
# ---------------------------------------------------------------------------


def _matrix_options(func: Callable[..., Any]) -> Callable[..., Any]:
    """Options shared by ``run`` and ``plan``."""
    options = [
        click.option(
            "--profile",
            "profile_path",
            type=click.Path(exists=True, dir_okay=False),
            help="YAML profile defining the matrix and backends.",
        ),
        click.option(
            "--backend",
            "backends",
            multiple=True,
            help="Backend to benchmark (repeatable, default: candle, onnx).",
        ),
        click.option(
            "--size",
            "sizes",
            multiple=True,
            help="Model size (repeatable, default: small, medium).",
        ),
        click.option(
            "--task",
            "tasks",
            multiple=True,
            help="Task (repeatable, default: objects, description).",
        ),
        click.option(
            "--backend-def",
            "backend_defs",
            multiple=True,
            help="Inline backend: 'name:command=...,args=...' (repeatable). "
            "Select it with --backend.",
        ),
        click.option(
            "-r", "--repetitions", type=int, default=None, help="Timed repetitions (default: 3)."
        ),
        click.option(
            "-w", "--warmup", type=int, default=None, help="Warmup invocations (default: 1)."
        ),
        click.option(
            "--timeout",
            type=float,
            default=None,
            help="Per-repetition timeout in seconds (default: 600).",
        ),
        click.option(
            "--workers",
            type=int,
            default=None,
            help="Run up to N backends concurrently (default: 1).",
        ),
        click.option(
            "--devices",
            type=int,
            default=None,
            help="Accelerator devices available to timed runs (default: 1).",
        ),
        click.option(
            "--model-dir",
            type=click.Path(file_okay=False),
            default=None,
            help="Model artifact root (default: models).",
        ),
        click.option(
            "--output-dir",
            "results_dir",
            type=click.Path(file_okay=False),
            default=None,
            help="Results directory (default: benchmark_results).",
        ),
        click.option(
            "--input",
            "input_path",
            type=click.Path(dir_okay=False),
            default=None,
            help="Input image passed to every backend (default: test_image.jpg).",
        ),
        click.option("--name", type=str, default=None, help="Human-readable benchmark name."),
    ]
    for option in reversed(options):
        func = option(func)
    return func


def _build_config(
    profile_path: str | None,
    backend_defs: tuple[str, ...],
    **overrides: Any,
) -> BenchConfig:
    """Combine profile, inline backends and command-line overrides.

    Raises:
        ValueError: If the profile or an inline backend is malformed.
    """
    from infbench.config import config_from_profile, load_profile, parse_inline_backend

    profile_data = load_profile(Path(profile_path)) if profile_path else {}
    cli_overrides = {
        key: list(value) if isinstance(value, tuple) else value
        for key, value in overrides.items()
    }
    config = config_from_profile(profile_data, cli_overrides=cli_overrides)

    for spec in backend_defs:
        backend = parse_inline_backend(spec)
        config.backend_defs[backend.name] = backend

    config.cli_args = sys.argv[1:]
    return config


def _current_results(store_results: list[RunResult], meta: BenchMeta) -> list[RunResult]:
    """Drop stored records for keys the recorded invocation skipped.

    Such records are left over from an earlier run in the same
    directory and would contradict the Skipped section.
    """
    skipped = {(s.backend, s.model_size, s.task) for s in meta.skips}
    current = []
    for result in store_results:
        if result.key in skipped:
            log.info("Ignoring stale record for skipped run %s", result.descriptor.label)
            continue
        current.append(result)
    return current


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


@main.command()
@_matrix_options
@click.option("-v", "--verbose", is_flag=True, default=False, help="Debug output.")
@click.option("-q", "--quiet", is_flag=True, default=False, help="Warnings and errors only.")
def run(
    profile_path: str | None,
    backend_defs: tuple[str, ...],
    verbose: bool,
    quiet: bool,
    **overrides: Any,
) -> None:
    """Run the backend x size x task benchmark matrix.

    Combinations whose model directory is missing are skipped.  Failed
    runs are recorded and reported; they do not change the exit status.

    \b
    Examples:
        # Built-in Rust backends, default matrix
        infbench run --input test_image.jpg

        # A script-based backend defined inline
        infbench run --backend python \\
            --backend-def "python:command=python3 benchmark.py,args=-i {image} -s {size} -o {output}"

        # From a profile, overriding repetitions
        infbench run --profile bench.yaml -r 5
    """
    from infbench.aggregate import aggregate
    from infbench.display import render_report
    from infbench.export import export_json
    from infbench.logging import setup_logging
    from infbench.results import atomic_write
    from infbench.runner import BenchRunner

    try:
        config = _build_config(profile_path, backend_defs, **overrides)
    except (ValueError, OSError) as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    setup_logging(verbose=verbose, quiet=quiet, log_file=config.log_path)

    runner = BenchRunner(config)
    try:
        meta, _planned, _results = runner.run()
    except ValueError as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    matrix = meta.matrix
    aggregates = aggregate(
        _current_results(runner.store.list(), meta),
        backends=matrix["backends"],
        sizes=matrix["sizes"],
        tasks=matrix["tasks"],
    )
    report = render_report(meta, aggregates, results_dir=config.store_dir)

    atomic_write(config.summary_path, report)
    atomic_write(config.summary_path.with_suffix(".json"), export_json(meta, aggregates))
    log.info("Summary written to %s", config.summary_path)

    click.echo()
    click.echo(report, nl=False)
    click.echo(f"Summary saved to: {config.summary_path}")
    click.echo(f"Log saved to: {config.log_path}")

    if meta.interrupted:
        click.echo("Benchmark interrupted.", err=True)
        raise SystemExit(EXIT_INTERRUPTED)


# ---------------------------------------------------------------------------
# plan
# ---------------------------------------------------------------------------


@main.command("plan")
@_matrix_options
def plan_cmd(profile_path: str | None, backend_defs: tuple[str, ...], **overrides: Any) -> None:
    """Show the runs ``run`` would execute, and what would be skipped.

    Nothing is executed.  The input file does not need to exist yet.
    """
    from infbench.config import validate_config
    from infbench.display import format_plan
    from infbench.environment import accelerator_toolchain_present, detect
    from infbench.planner import plan_from_config

    try:
        config = _build_config(profile_path, backend_defs, **overrides)
    except (ValueError, OSError) as exc:
        click.echo(f"Error: {exc}", err=True)
        raise SystemExit(1) from exc

    problems = [e for e in validate_config(config) if e.field != "input_path"]
    for problem in problems:
        label = "Warning" if problem.severity == "warning" else "Error"
        click.echo(f"{label}: {problem.field}: {problem.message}", err=True)
    if any(p.severity == "error" for p in problems):
        raise SystemExit(1)

    planned = plan_from_config(
        config,
        detect(),
        toolchain_present=accelerator_toolchain_present(),
    )
    click.echo(format_plan(planned, repetitions=config.repetitions, warmup=config.warmup))


# ---------------------------------------------------------------------------
# report
# ---------------------------------------------------------------------------


@main.command()
@click.argument("output_dir", type=click.Path(exists=True, file_okay=False))
@click.option(
    "--format",
    "fmt",
    type=click.Choice(["text", "json", "csv"]),
    default="text",
    help="Output format.",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False),
    default=None,
    help="Output file (default: stdout).",
)
def report(output_dir: str, fmt: str, output: str | None) -> None:
    """Summarize the results stored in OUTPUT_DIR.

    The matrix recorded by the last ``run`` decides the report rows.
    Without ``bench_meta.json`` every stored result is reported.

    \b
    Examples:
        infbench report benchmark_results
        infbench report benchmark_results --format csv > runs.csv
    """
    from infbench.aggregate import aggregate
    from infbench.display import render_report
    from infbench.export import export_csv, export_json
    from infbench.results import ResultStore, load_meta

    results_dir = Path(output_dir)
    try:
        meta = load_meta(results_dir)
    except (FileNotFoundError, ValueError) as exc:
        click.echo(f"Warning: {exc}; reporting all stored results.", err=True)
        meta = BenchMeta(bench_id=results_dir.name)

    store = ResultStore(results_dir / "runs")
    results = _current_results(store.list(), meta)
    matrix = meta.matrix
    if matrix.get("backends") is not None and matrix.get("sizes") is not None:
        aggregates = aggregate(
            results,
            backends=matrix["backends"],
            sizes=matrix["sizes"],
            tasks=matrix.get("tasks"),
        )
    else:
        aggregates = aggregate(results)

    if fmt == "json":
        text = export_json(meta, aggregates)
    elif fmt == "csv":
        text = export_csv(results)
    else:
        text = render_report(meta, aggregates, results_dir=store.root)

    if output:
        Path(output).write_text(text, encoding="utf-8")
        click.echo(f"Exported to {output}")
    else:
        click.echo(text, nl=False)


# ---------------------------------------------------------------------------
# system
# ---------------------------------------------------------------------------


@main.command("system")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
def system_cmd(as_json: bool) -> None:
    """Print platform classification and host profile."""
    from infbench.environment import accelerator_state, accelerator_toolchain_present, detect
    from infbench.system import capture_system_profile, format_system_profile

    platform = detect()
    profile = capture_system_profile(platform)
    state = accelerator_state(platform, accelerator_toolchain_present())

    if as_json:
        data = profile.to_dict()
        data["accelerator_state"] = state.value
        click.echo(json.dumps(data, indent=2))
    else:
        click.echo(format_system_profile(profile))
        click.echo(f"Accelerator flags: {state}")
