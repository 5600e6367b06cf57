"""Tests for infbench.runner: execution and orchestration."""

from __future__ import annotations

import dataclasses
import json
import sys
import tempfile
import threading
import time
import unittest
from pathlib import Path

from infbench.aggregate import aggregate
from infbench.config import BackendDef
from infbench.display import render_report
from infbench.environment import PlatformClass
from infbench.results import REP_ERROR, REP_FAIL, REP_OK, REP_TIMEOUT, ResultStore
from infbench.runner import (
    BenchProgress,
    BenchRunner,
    ExecutionRunner,
    _classify,
    build_command,
)
from infbench.system import SystemProfile
from infbench.timing import TimedResult

from bench_test_helpers import install_models, make_config, make_descriptor, python_backend

# Writes a small JSON report to the requested output path.
OK_SCRIPT = (
    "import json, sys\n"
    "json.dump({'size': sys.argv[2], 'prompt': sys.argv[5]}, open(sys.argv[4], 'w'))\n"
)

FAIL_SCRIPT = "import sys; sys.exit(2)"

# Fails only on the invocation number given in the counter's name.
_NTH_FAIL_SCRIPT = (
    "import pathlib, sys\n"
    "p = pathlib.Path(sys.argv[1]).with_name('calls-' + sys.argv[3])\n"
    "n = int(p.read_text()) if p.exists() else 0\n"
    "p.write_text(str(n + 1))\n"
    "sys.exit(1 if n == {n} else 0)\n"
)


def nth_fail_script(n: int) -> str:
    return _NTH_FAIL_SCRIPT.replace("{n}", str(n))


def _quiet(progress: BenchProgress) -> None:
    pass


class _RecordingLock:
    def __init__(self) -> None:
        self.entered = 0

    def __enter__(self) -> None:
        self.entered += 1

    def __exit__(self, *exc: object) -> None:
        return None


# ---------------------------------------------------------------------------
# Command construction
# ---------------------------------------------------------------------------


class TestBuildCommand(unittest.TestCase):
    def test_prefix_flags_then_args(self) -> None:
        backend = BackendDef(
            name="candle",
            command=["cargo", "run"],
            args=["--", "--image", "{image}", "--runs", "{runs}", "--warmup", "{warmup}"],
        )
        descriptor = dataclasses.replace(make_descriptor(), extra_flags=("--features", "x"))
        argv = build_command(
            descriptor, backend, input_path=Path("in.jpg"), output_path=Path("out.json")
        )
        self.assertEqual(
            argv,
            [
                "cargo", "run", "--features", "x",
                "--", "--image", "in.jpg", "--runs", "1", "--warmup", "0",
            ],
        )

    def test_prompt_is_one_argument(self) -> None:
        backend = BackendDef(name="candle", command=["bench"], args=["--prompt", "{prompt}"])
        descriptor = make_descriptor(prompt="What's in \"this\"; rm -rf / ?")
        argv = build_command(descriptor, backend, input_path=Path("i"), output_path=Path("o"))
        self.assertEqual(argv, ["bench", "--prompt", "What's in \"this\"; rm -rf / ?"])

    def test_all_placeholders(self) -> None:
        backend = BackendDef(
            name="candle",
            command=["b"],
            args=["{model_path}", "{size}", "{backend}", "{task}", "{output}"],
        )
        argv = build_command(
            make_descriptor(model_dir=Path("m")),
            backend,
            input_path=Path("i"),
            output_path=Path("o.json"),
        )
        self.assertEqual(argv, ["b", "m/candle/Small", "small", "candle", "objects", "o.json"])

    def test_unknown_placeholder(self) -> None:
        backend = BackendDef(name="candle", command=["b"], args=["{gpu}"])
        with self.assertRaises(ValueError):
            build_command(make_descriptor(), backend, input_path=Path("i"), output_path=Path("o"))


class TestClassify(unittest.TestCase):
    def test_outcomes(self) -> None:
        self.assertEqual(_classify(TimedResult(1.0, 0, "", "")), (REP_OK, ""))
        self.assertEqual(_classify(TimedResult(1.0, 3, "", "")), (REP_FAIL, "exit code 3"))
        self.assertEqual(
            _classify(TimedResult(1.0, -9, "", "")), (REP_FAIL, "killed by signal 9")
        )
        self.assertEqual(
            _classify(TimedResult(1.0, -1, "", "", timed_out=True)), (REP_TIMEOUT, "timeout")
        )


# ---------------------------------------------------------------------------
# ExecutionRunner
# ---------------------------------------------------------------------------


class TestExecutionRunner(unittest.TestCase):
    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self.tmpdir = Path(self._tmpdir.name)

    def tearDown(self) -> None:
        self._tmpdir.cleanup()

    def _run(self, script: str, *, repetitions: int = 3, warmup: int = 0, **kwargs: object):
        config = make_config(self.tmpdir, backends=["fake"], **kwargs)
        config.backend_defs["fake"] = python_backend("fake", script)
        runner = ExecutionRunner(config)
        descriptor = make_descriptor(
            "fake", repetitions=repetitions, warmup=warmup, model_dir=config.model_dir
        )
        return runner, runner.run(descriptor)

    def test_all_succeed(self) -> None:
        _, result = self._run(OK_SCRIPT)
        self.assertTrue(result.ok)
        self.assertEqual(len(result.elapsed_seconds), 3)
        self.assertTrue(all(s > 0 for s in result.elapsed_seconds))
        self.assertEqual(
            result.raw_output, {"size": "small", "prompt": "What objects are in this image?"}
        )
        self.assertNotEqual(result.started_at, "")
        self.assertNotEqual(result.finished_at, "")

    def test_all_fail(self) -> None:
        _, result = self._run(FAIL_SCRIPT)
        self.assertFalse(result.ok)
        self.assertEqual(result.reason, "exit code 2")
        self.assertEqual(result.elapsed_seconds, [])
        self.assertEqual(result.attempted, 3)
        self.assertIsNone(result.raw_output)

    def test_partial_failure_keeps_successes(self) -> None:
        _, result = self._run(nth_fail_script(1))
        self.assertFalse(result.ok)
        self.assertEqual([r.status for r in result.repetitions], [REP_OK, REP_FAIL, REP_OK])
        self.assertEqual(len(result.elapsed_seconds), 2)
        self.assertLessEqual(len(result.elapsed_seconds), result.descriptor.repetitions)

    def test_warmup_failure_does_not_abort(self) -> None:
        with self.assertLogs("infbench", level="WARNING") as logs:
            _, result = self._run(nth_fail_script(0), repetitions=2, warmup=1)
        self.assertTrue(result.ok)
        self.assertEqual(len(result.elapsed_seconds), 2)
        self.assertTrue(any("Warmup 1/1" in line for line in logs.output))

    def test_warmups_not_recorded(self) -> None:
        _, result = self._run(OK_SCRIPT, repetitions=1, warmup=2)
        self.assertEqual(result.attempted, 1)

    def test_timeout(self) -> None:
        start = time.monotonic()
        _, result = self._run("import time; time.sleep(5)", repetitions=1, timeout=1.0)
        self.assertLess(time.monotonic() - start, 3.0)
        self.assertFalse(result.ok)
        self.assertEqual(result.reason, "timeout")
        self.assertEqual(result.repetitions[0].status, REP_TIMEOUT)
        self.assertEqual(result.elapsed_seconds, [])

    def test_missing_executable(self) -> None:
        config = make_config(self.tmpdir, backends=["gone"])
        config.backend_defs["gone"] = BackendDef(
            name="gone", command=["/nonexistent/backend"], args=[]
        )
        result = ExecutionRunner(config).run(
            make_descriptor("gone", repetitions=2, model_dir=config.model_dir)
        )
        self.assertFalse(result.ok)
        self.assertTrue(result.reason.startswith("executable not found: /nonexistent/backend"))
        self.assertEqual([r.status for r in result.repetitions], [REP_ERROR, REP_ERROR])

    def test_unpassable_argument(self) -> None:
        config = make_config(self.tmpdir, backends=["nul"])
        config.backend_defs["nul"] = BackendDef(
            name="nul", command=[sys.executable, "-c", "pass", "a\x00b"], args=[]
        )
        result = ExecutionRunner(config).run(
            make_descriptor("nul", repetitions=2, model_dir=config.model_dir)
        )
        self.assertFalse(result.ok)
        self.assertTrue(result.reason.startswith("invalid command:"))
        self.assertEqual([r.status for r in result.repetitions], [REP_ERROR, REP_ERROR])

    def test_stale_output_discarded(self) -> None:
        config = make_config(self.tmpdir, backends=["fake"])
        config.backend_defs["fake"] = python_backend("fake", FAIL_SCRIPT)
        runner = ExecutionRunner(config)
        descriptor = make_descriptor("fake", repetitions=1, model_dir=config.model_dir)
        stale = runner.output_path(descriptor)
        stale.parent.mkdir(parents=True)
        stale.write_text(json.dumps({"from": "last week"}))
        result = runner.run(descriptor)
        self.assertIsNone(result.raw_output)
        self.assertFalse(stale.exists())

    def test_invalid_output_ignored(self) -> None:
        script = "import sys; open(sys.argv[4], 'w').write('not json')"
        with self.assertLogs("infbench", level="WARNING"):
            _, result = self._run(script, repetitions=1)
        self.assertTrue(result.ok)
        self.assertIsNone(result.raw_output)

    def test_timed_lock_held_once_per_run(self) -> None:
        config = make_config(self.tmpdir, backends=["fake"])
        config.backend_defs["fake"] = python_backend("fake", OK_SCRIPT)
        lock = _RecordingLock()
        runner = ExecutionRunner(config, timed_lock=lock)
        runner.run(make_descriptor("fake", repetitions=2, warmup=1, model_dir=config.model_dir))
        self.assertEqual(lock.entered, 1)

    def test_progress_phases(self) -> None:
        config = make_config(self.tmpdir, backends=["fake"])
        config.backend_defs["fake"] = python_backend("fake", OK_SCRIPT)
        seen: list[tuple[str, int]] = []
        runner = ExecutionRunner(config, progress=lambda p: seen.append((p.phase, p.iteration)))
        runner.run(make_descriptor("fake", repetitions=2, warmup=1, model_dir=config.model_dir))
        self.assertEqual(seen, [("warmup", 1), ("measure", 1), ("measure", 2)])

    def test_prepare(self) -> None:
        config = make_config(self.tmpdir, backends=["fake"])
        config.backend_defs["fake"] = python_backend(
            "fake", OK_SCRIPT, prepare=[sys.executable, "-c", "import sys; sys.exit(4)"]
        )
        runner = ExecutionRunner(config)
        self.assertEqual(runner.prepare("fake", ()), "prepare failed: exit code 4")

    def test_no_prepare(self) -> None:
        config = make_config(self.tmpdir, backends=["fake"])
        config.backend_defs["fake"] = python_backend("fake", OK_SCRIPT)
        self.assertIsNone(ExecutionRunner(config).prepare("fake", ()))

    def test_failed_records_every_repetition(self) -> None:
        config = make_config(self.tmpdir)
        result = ExecutionRunner(config).failed(make_descriptor(repetitions=3), "prepare failed: x")
        self.assertEqual(result.attempted, 3)
        self.assertEqual(result.succeeded, 0)
        self.assertEqual(result.reason, "prepare failed: x")


# ---------------------------------------------------------------------------
# BenchRunner
# ---------------------------------------------------------------------------


class TestBenchRunner(unittest.TestCase):
    def setUp(self) -> None:
        self._tmpdir = tempfile.TemporaryDirectory()
        self.tmpdir = Path(self._tmpdir.name)

    def tearDown(self) -> None:
        self._tmpdir.cleanup()

    def _runner(self, config, progress=_quiet) -> BenchRunner:
        return BenchRunner(
            config,
            progress,
            platform=PlatformClass.GENERIC_DESKTOP,
            toolchain_present=False,
            system_profile=SystemProfile(cpu_model="Test CPU"),
        )

    def test_invalid_config_runs_nothing(self) -> None:
        config = make_config(self.tmpdir, input_path=self.tmpdir / "absent.jpg")
        with self.assertRaises(ValueError) as ctx:
            self._runner(config).run()
        self.assertIn("Input file not found", str(ctx.exception))
        self.assertFalse(config.results_dir.exists())

    def test_end_to_end_single_installed_combination(self) -> None:
        config = make_config(
            self.tmpdir, backends=["ok", "other"], sizes=["small", "medium"], tasks=["objects"]
        )
        config.backend_defs["ok"] = python_backend("ok", OK_SCRIPT)
        config.backend_defs["other"] = python_backend("other", OK_SCRIPT)
        install_models(config.model_dir, "ok", "small")

        meta, planned, results = self._runner(config).run()

        self.assertEqual(len(planned.descriptors), 1)
        self.assertEqual(len(planned.skips), 3)
        self.assertEqual(len(results), 1)
        self.assertEqual(meta.runs_completed, 1)
        self.assertFalse(meta.interrupted)
        self.assertTrue((config.results_dir / "bench_meta.json").exists())
        self.assertTrue((config.store_dir / "ok_small_objects.json").exists())

        aggregates = aggregate(
            ResultStore(config.store_dir).list(),
            backends=config.backends,
            sizes=config.sizes,
            tasks=config.tasks,
        )
        self.assertEqual(len(aggregates), 4)
        self.assertEqual(sum(a.avg_duration is None for a in aggregates), 3)
        self.assertEqual(aggregates[0].success_rate, 100.0)

        report = render_report(meta, aggregates, results_dir=config.store_dir)
        self.assertEqual(report.count("Average Time: N/A"), 3)
        self.assertEqual(report.count("Success Rate: N/A"), 3)

    def test_failures_do_not_stop_the_run(self) -> None:
        config = make_config(self.tmpdir, backends=["bad", "ok"], sizes=["small"])
        config.backend_defs["bad"] = python_backend("bad", FAIL_SCRIPT)
        config.backend_defs["ok"] = python_backend("ok", OK_SCRIPT)
        install_models(config.model_dir, "bad", "small")
        install_models(config.model_dir, "ok", "small")

        _, _, results = self._runner(config).run()

        self.assertEqual(
            [(r.key, r.ok) for r in results],
            [
                (("bad", "small", "objects"), False),
                (("bad", "small", "description"), False),
                (("ok", "small", "objects"), True),
                (("ok", "small", "description"), True),
            ],
        )

    def test_unpassable_argument_does_not_stop_the_run(self) -> None:
        config = make_config(self.tmpdir, backends=["nul", "ok"], sizes=["small"])
        config.backend_defs["nul"] = BackendDef(
            name="nul", command=[sys.executable, "-c", "pass", "a\x00b"], args=[]
        )
        config.backend_defs["ok"] = python_backend("ok", OK_SCRIPT)
        install_models(config.model_dir, "nul", "small")
        install_models(config.model_dir, "ok", "small")

        _, _, results = self._runner(config).run()

        self.assertEqual(
            [(r.key[0], r.ok) for r in results],
            [("nul", False), ("nul", False), ("ok", True), ("ok", True)],
        )

    def test_prepare_failure_skips_invocation(self) -> None:
        marker = self.tmpdir / "invoked"
        script = f"open({str(marker)!r}, 'w').close()"
        config = make_config(self.tmpdir, backends=["fake"], sizes=["small"])
        config.backend_defs["fake"] = python_backend(
            "fake", script, prepare=[sys.executable, "-c", "import sys; sys.exit(1)"]
        )
        install_models(config.model_dir, "fake", "small")

        _, _, results = self._runner(config).run()

        self.assertEqual(len(results), 2)
        for r in results:
            self.assertFalse(r.ok)
            self.assertEqual(r.reason, "prepare failed: exit code 1")
            self.assertEqual(r.attempted, config.repetitions)
        self.assertFalse(marker.exists())

    def test_cancel_stops_before_next_descriptor(self) -> None:
        config = make_config(self.tmpdir, backends=["ok"], sizes=["small"], repetitions=1)
        config.backend_defs["ok"] = python_backend("ok", OK_SCRIPT)
        install_models(config.model_dir, "ok", "small")

        holder: dict[str, BenchRunner] = {}

        def cancel_after_first(progress: BenchProgress) -> None:
            holder["runner"].cancel()

        runner = self._runner(config, cancel_after_first)
        holder["runner"] = runner
        meta, planned, results = runner.run()

        self.assertEqual(len(planned.descriptors), 2)
        self.assertEqual(len(results), 1)
        self.assertTrue(meta.interrupted)
        self.assertEqual(meta.runs_completed, 1)

    def test_keyboard_interrupt_discards_in_flight_run(self) -> None:
        config = make_config(self.tmpdir, backends=["ok"], sizes=["small"], repetitions=2)
        config.backend_defs["ok"] = python_backend("ok", OK_SCRIPT)
        install_models(config.model_dir, "ok", "small")

        def interrupt(progress: BenchProgress) -> None:
            raise KeyboardInterrupt

        meta, _, results = self._runner(config, interrupt).run()

        self.assertTrue(meta.interrupted)
        self.assertEqual(results, [])
        self.assertEqual(ResultStore(config.store_dir).list(), [])

    def test_pooled_runs_every_backend(self) -> None:
        config = make_config(
            self.tmpdir,
            backends=["a", "b", "c"],
            sizes=["small"],
            tasks=["objects"],
            repetitions=2,
            workers=3,
            devices=2,
        )
        for name in config.backends:
            config.backend_defs[name] = python_backend(name, OK_SCRIPT)
            install_models(config.model_dir, name, "small")

        meta, _, results = self._runner(config).run()

        self.assertEqual(sorted(r.descriptor.backend for r in results), ["a", "b", "c"])
        self.assertTrue(all(r.ok for r in results))
        self.assertEqual(len(ResultStore(config.store_dir).list()), 3)
        self.assertEqual(meta.runs_completed, 3)

    def test_pooled_timed_sections_respect_devices(self) -> None:
        spans = self.tmpdir / "spans.txt"
        script = (
            "import time\n"
            "s = time.time(); time.sleep(0.3); e = time.time()\n"
            f"open({str(spans)!r}, 'a').write(f'{{s}} {{e}}\\n')\n"
        )
        config = make_config(
            self.tmpdir,
            backends=["a", "b"],
            sizes=["small"],
            tasks=["objects"],
            repetitions=2,
            workers=2,
            devices=1,
        )
        for name in config.backends:
            config.backend_defs[name] = python_backend(name, script)
            install_models(config.model_dir, name, "small")

        self._runner(config).run()

        intervals = sorted(
            tuple(map(float, line.split())) for line in spans.read_text().splitlines()
        )
        self.assertEqual(len(intervals), 4)
        for (_, end), (start, _) in zip(intervals, intervals[1:]):
            self.assertLessEqual(end, start + 0.01)

    def test_pool_worker_count_bounded_by_devices(self) -> None:
        config = make_config(self.tmpdir, backends=["a", "b"], sizes=["small"], workers=8)
        for name in config.backends:
            config.backend_defs[name] = python_backend(name, OK_SCRIPT)
            install_models(config.model_dir, name, "small")

        seen_threads: set[int] = set()

        def track(progress: BenchProgress) -> None:
            seen_threads.add(threading.get_ident())

        self._runner(config, track).run()
        self.assertEqual(len(seen_threads), 1)


if __name__ == "__main__":
    unittest.main()
