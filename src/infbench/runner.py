"""Benchmark execution engine.

Orchestrates:
1. Configuration validation (setup errors stop everything here)
2. Platform detection and system profiling
3. Planning the backend x size x task matrix
4. Backend preparation (untimed, once per backend)
5. Warmup and timed repetitions per run descriptor
6. Incremental result persistence, one record per key

Execution is sequential by default so timed runs never contend for the
same hardware.  With ``workers > 1`` each worker takes one backend's
queue; preparation and warmups overlap, while timed repetitions hold a
device semaphore sized to the number of accelerator devices.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable

from infbench.config import BackendDef, BenchConfig, validate_config
from infbench.environment import PlatformClass, accelerator_toolchain_present, detect
from infbench.planner import PlanResult, RunDescriptor, plan_from_config
from infbench.results import (
    REP_ERROR,
    REP_FAIL,
    REP_OK,
    REP_TIMEOUT,
    STATUS_FAILURE,
    STATUS_SUCCESS,
    BenchMeta,
    RepetitionRecord,
    ResultStore,
    RunResult,
    save_meta,
)
from infbench.system import SystemProfile, capture_system_profile
from infbench.timing import TimedResult, run_timed

log = logging.getLogger("infbench")


def _now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%S%z")


# ---------------------------------------------------------------------------
# Command construction
# ---------------------------------------------------------------------------


def build_command(
    descriptor: RunDescriptor,
    backend: BackendDef,
    *,
    input_path: Path,
    output_path: Path,
) -> list[str]:
    """Build the argv for one backend invocation.

    Only descriptor fields from a fixed whitelist can reach the command
    line, and each template renders to exactly one argument.  Prompts
    with spaces or quotes therefore stay a single argument and nothing
    is ever interpreted by a shell.

    Raises:
        ValueError: If a template references an unknown placeholder.
    """
    fields = {
        "image": str(input_path),
        "prompt": descriptor.prompt,
        "model_path": str(descriptor.artifact_path),
        "size": descriptor.model_size,
        "backend": descriptor.backend,
        "task": descriptor.task,
        "output": str(output_path),
        # Each invocation is one run; the loop lives in ExecutionRunner.
        "runs": "1",
        "warmup": "0",
    }
    argv = [*backend.command, *descriptor.extra_flags]
    for template in backend.args:
        try:
            argv.append(template.format_map(fields))
        except (KeyError, IndexError) as exc:
            raise ValueError(
                f"Backend '{backend.name}': unknown placeholder {exc} in '{template}'"
            ) from exc
    return argv


def _classify(timed: TimedResult) -> tuple[str, str]:
    """Map a TimedResult to (repetition status, failure reason)."""
    if timed.timed_out:
        return REP_TIMEOUT, "timeout"
    if timed.exit_code == 0:
        return REP_OK, ""
    if timed.exit_code < 0:
        return REP_FAIL, f"killed by signal {-timed.exit_code}"
    return REP_FAIL, f"exit code {timed.exit_code}"


# ---------------------------------------------------------------------------
# Progress callback
# ---------------------------------------------------------------------------


@dataclass
class BenchProgress:
    """Progress info passed to the callback."""

    phase: str  # "warmup" or "measure"
    run: str  # backend/size/task
    iteration: int  # 1-based
    total_iterations: int
    runs_done: int
    runs_total: int
    wall_time_s: float = 0.0
    status: str = ""


ProgressCallback = Callable[[BenchProgress], None]


def default_progress(progress: BenchProgress) -> None:
    """Log one line per invocation."""
    marker = "W" if progress.phase == "warmup" else "M"
    line = (
        f"  [{progress.runs_done + 1}/{progress.runs_total}] {progress.run:32s} "
        f"{marker}{progress.iteration}/{progress.total_iterations} "
    )
    if progress.wall_time_s:
        line += f"{progress.wall_time_s:8.3f}s "
    if progress.status:
        line += f"[{progress.status}]"
    log.info(line)


# ---------------------------------------------------------------------------
# ExecutionRunner
# ---------------------------------------------------------------------------


class ExecutionRunner:
    """Runs a single RunDescriptor and produces its RunResult.

    Usage::

        runner = ExecutionRunner(config)
        result = runner.run(descriptor)
    """

    def __init__(
        self,
        config: BenchConfig,
        *,
        progress: ProgressCallback | None = None,
        timed_lock: Any = None,
    ) -> None:
        self.config = config
        self.progress = progress or (lambda p: None)
        # Held around timed repetitions only.  A no-op when sequential.
        self._timed_lock = timed_lock if timed_lock is not None else _NullLock()

    def output_path(self, descriptor: RunDescriptor) -> Path:
        """Where the backend is asked to write its own JSON output."""
        return self.config.raw_dir / ("_".join(descriptor.key) + ".json")

    def command_for(self, descriptor: RunDescriptor) -> list[str]:
        return build_command(
            descriptor,
            self.config.backend_defs[descriptor.backend],
            input_path=self.config.input_path,
            output_path=self.output_path(descriptor),
        )

    def prepare(self, backend_name: str, extra_flags: tuple[str, ...]) -> str | None:
        """Run the backend's untimed preparation step, if any.

        Returns:
            None on success (or nothing to do), otherwise a failure reason.
        """
        backend = self.config.backend_defs[backend_name]
        if not backend.prepare:
            return None
        argv = [*backend.prepare, *extra_flags]
        log.info("Preparing %s: %s", backend_name, " ".join(argv))
        try:
            timed = run_timed(argv, timeout=self.config.timeout)
        except (OSError, ValueError) as exc:
            return f"prepare failed: {exc}"
        if not timed.ok:
            _, reason = _classify(timed)
            log.debug("Prepare stderr for %s:\n%s", backend_name, timed.stderr_tail)
            return f"prepare failed: {reason}"
        log.debug("Prepared %s in %.1fs", backend_name, timed.wall_time_s)
        return None

    def failed(self, descriptor: RunDescriptor, reason: str) -> RunResult:
        """A result for a descriptor whose backend could not be prepared.

        Every requested repetition is recorded as an error so the run
        counts as attempted and failed, not as missing.
        """
        stamp = _now()
        return RunResult(
            descriptor=descriptor,
            repetitions=[
                RepetitionRecord(
                    index=i + 1, wall_time_s=0.0, exit_code=-1, status=REP_ERROR, detail=reason
                )
                for i in range(descriptor.repetitions)
            ],
            status=STATUS_FAILURE,
            reason=reason,
            started_at=stamp,
            finished_at=stamp,
        )

    def run(
        self,
        descriptor: RunDescriptor,
        *,
        runs_done: int = 0,
        runs_total: int = 1,
    ) -> RunResult:
        """Execute warmups then timed repetitions for *descriptor*."""
        result = RunResult(descriptor=descriptor, started_at=_now())
        argv = self.command_for(descriptor)
        output_path = self.output_path(descriptor)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        log.debug("Command for %s: %s", descriptor.label, argv)

        for i in range(descriptor.warmup_count):
            status, detail, timed = self._invoke(argv)
            if status != REP_OK:
                log.warning(
                    "Warmup %d/%d for %s failed: %s",
                    i + 1,
                    descriptor.warmup_count,
                    descriptor.label,
                    detail,
                )
            self.progress(
                BenchProgress(
                    phase="warmup",
                    run=descriptor.label,
                    iteration=i + 1,
                    total_iterations=descriptor.warmup_count,
                    runs_done=runs_done,
                    runs_total=runs_total,
                    wall_time_s=timed.wall_time_s if timed else 0.0,
                    status=status,
                )
            )

        # Don't let a warmup's (or an earlier run's) output stand in for
        # the measured runs.
        output_path.unlink(missing_ok=True)

        with self._timed_lock:
            for i in range(descriptor.repetitions):
                status, detail, timed = self._invoke(argv)
                rep = RepetitionRecord(
                    index=i + 1,
                    wall_time_s=timed.wall_time_s if timed else 0.0,
                    exit_code=timed.exit_code if timed else -1,
                    status=status,
                    detail=detail,
                )
                result.repetitions.append(rep)
                if status != REP_OK:
                    log.warning(
                        "Repetition %d/%d for %s failed: %s",
                        i + 1,
                        descriptor.repetitions,
                        descriptor.label,
                        detail,
                    )
                    if result.status == STATUS_SUCCESS:
                        result.status = STATUS_FAILURE
                        result.reason = detail
                self.progress(
                    BenchProgress(
                        phase="measure",
                        run=descriptor.label,
                        iteration=i + 1,
                        total_iterations=descriptor.repetitions,
                        runs_done=runs_done,
                        runs_total=runs_total,
                        wall_time_s=rep.wall_time_s,
                        status=status,
                    )
                )

        result.raw_output = _read_output(output_path)
        result.finished_at = _now()
        return result

    def _invoke(self, argv: list[str]) -> tuple[str, str, TimedResult | None]:
        """Run once; returns (status, detail, timing or None if not started)."""
        try:
            timed = run_timed(argv, timeout=self.config.timeout)
        except OSError as exc:
            return REP_ERROR, f"executable not found: {argv[0]} ({exc.strerror or exc})", None
        except ValueError as exc:
            # Popen rejects arguments it cannot pass on, e.g. embedded NUL bytes.
            return REP_ERROR, f"invalid command: {exc}", None
        status, detail = _classify(timed)
        if status != REP_OK and timed.stderr:
            log.debug("stderr:\n%s", timed.stderr_tail)
        return status, detail, timed


class _NullLock:
    def __enter__(self) -> None:
        return None

    def __exit__(self, *exc: object) -> None:
        return None


def _read_output(path: Path) -> Any:
    """Return the backend's JSON output as an opaque payload, if any."""
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        log.warning("Backend output %s is not valid JSON: %s", path, exc)
        return None


# ---------------------------------------------------------------------------
# BenchRunner
# ---------------------------------------------------------------------------


class BenchRunner:
    """Executes a whole benchmark according to a BenchConfig.

    Usage::

        config = BenchConfig(...)
        runner = BenchRunner(config)
        meta, plan, results = runner.run()
    """

    def __init__(
        self,
        config: BenchConfig,
        progress_callback: ProgressCallback | None = None,
        *,
        platform: PlatformClass | None = None,
        toolchain_present: bool | None = None,
        system_profile: SystemProfile | None = None,
        exists: Callable[[Path], bool] = Path.is_dir,
    ) -> None:
        self.config = config
        self.progress = progress_callback or default_progress
        self.store = ResultStore(config.store_dir)
        self._platform = platform
        self._toolchain_present = toolchain_present
        self._system_profile = system_profile
        self._exists = exists
        self._cancel = threading.Event()

    def cancel(self) -> None:
        """Stop before the next run descriptor starts."""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def run(self) -> tuple[BenchMeta, PlanResult, list[RunResult]]:
        """Execute the full benchmark.

        Returns:
            Tuple of (BenchMeta, PlanResult, RunResults of this invocation).

        Raises:
            ValueError: If the configuration is invalid.  Nothing has been
                executed in that case.
        """
        errors = validate_config(self.config)
        for w in (e for e in errors if e.severity == "warning"):
            log.warning("Config warning: %s: %s", w.field, w.message)
        fatal = [e for e in errors if e.severity == "error"]
        if fatal:
            messages = [f"  {e.field}: {e.message}" for e in fatal]
            raise ValueError("Invalid benchmark configuration:\n" + "\n".join(messages))

        platform = self._platform or detect()
        toolchain = (
            self._toolchain_present
            if self._toolchain_present is not None
            else accelerator_toolchain_present()
        )
        log.info("Detected platform: %s", platform)

        system = self._system_profile or capture_system_profile(platform)
        planned = plan_from_config(
            self.config,
            platform,
            exists=self._exists,
            toolchain_present=toolchain,
        )
        log.info(
            "Planned %d runs (%d skipped), accelerator flags %s",
            len(planned.descriptors),
            len(planned.skips),
            planned.accelerator,
        )

        meta = BenchMeta(
            bench_id=self.config.bench_id,
            name=self.config.name,
            platform=platform.value,
            accelerator=planned.accelerator.value,
            system=system,
            matrix=self.config.matrix(),
            config={
                "repetitions": self.config.repetitions,
                "warmup": self.config.warmup,
                "timeout": self.config.timeout,
                "workers": self.config.workers,
                "devices": self.config.devices,
                "model_dir": str(self.config.model_dir),
                "input_path": str(self.config.input_path),
                "backend_defs": {
                    name: self.config.backend_defs[name].to_dict()
                    for name in self.config.backends
                },
            },
            skips=planned.skips,
            cli_args=self.config.cli_args,
            start_time=_now(),
            runs_planned=len(planned.descriptors),
        )
        save_meta(self.config.results_dir, meta)

        results: list[RunResult] = []
        try:
            if self.config.workers > 1:
                self._run_pooled(planned.descriptors, results)
            else:
                self._run_sequential(planned.descriptors, results)
        except KeyboardInterrupt:
            self.cancel()
            log.warning("Interrupted; the run in progress was discarded.")

        meta.end_time = _now()
        meta.runs_completed = len(results)
        meta.interrupted = self.cancelled
        save_meta(self.config.results_dir, meta)
        return meta, planned, results

    # -- strategies ---------------------------------------------------------

    def _run_sequential(
        self,
        descriptors: list[RunDescriptor],
        results: list[RunResult],
    ) -> None:
        runner = ExecutionRunner(self.config, progress=self.progress)
        prepared: dict[str, str | None] = {}
        total = len(descriptors)

        for idx, descriptor in enumerate(descriptors):
            if self.cancelled:
                log.info("Cancelled before %s", descriptor.label)
                break
            if descriptor.backend not in prepared:
                prepared[descriptor.backend] = runner.prepare(
                    descriptor.backend, descriptor.extra_flags
                )
            failure = prepared[descriptor.backend]
            if failure:
                result = runner.failed(descriptor, failure)
            else:
                result = runner.run(descriptor, runs_done=idx, runs_total=total)
            self._record(result, results)

    def _run_pooled(
        self,
        descriptors: list[RunDescriptor],
        results: list[RunResult],
    ) -> None:
        queues: dict[str, list[RunDescriptor]] = {}
        for descriptor in descriptors:
            queues.setdefault(descriptor.backend, []).append(descriptor)
        if not queues:
            return

        max_workers = min(self.config.workers, len(queues), self.config.devices)
        device_slots = threading.BoundedSemaphore(self.config.devices)
        runner = ExecutionRunner(self.config, progress=self.progress, timed_lock=device_slots)
        results_lock = threading.Lock()
        total = len(descriptors)
        log.info("Running %d backend queues on %d workers", len(queues), max_workers)

        def _worker(queue: list[RunDescriptor]) -> None:
            failure = runner.prepare(queue[0].backend, queue[0].extra_flags)
            for descriptor in queue:
                if self.cancelled:
                    return
                if failure:
                    result = runner.failed(descriptor, failure)
                else:
                    with results_lock:
                        done = len(results)
                    result = runner.run(descriptor, runs_done=done, runs_total=total)
                with results_lock:
                    self._record(result, results)

        pool = ThreadPoolExecutor(max_workers=max_workers)
        try:
            futures = {pool.submit(_worker, q): name for name, q in queues.items()}
            for future in as_completed(futures):
                try:
                    future.result()
                except Exception as exc:
                    log.error("Worker for backend %s failed: %s", futures[future], exc)
        except KeyboardInterrupt:
            # Workers finish their current descriptor and stop.
            self.cancel()
            raise
        finally:
            pool.shutdown(wait=True)

    def _record(self, result: RunResult, results: list[RunResult]) -> None:
        self.store.persist(result)
        results.append(result)
        if result.ok:
            log.info(
                "Completed %s: %d/%d repetitions ok",
                result.descriptor.label,
                result.succeeded,
                result.attempted,
            )
        else:
            log.warning("Run %s failed: %s", result.descriptor.label, result.reason)
