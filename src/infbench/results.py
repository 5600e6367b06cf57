"""Run result data structures and the on-disk result store.

Hierarchy::

    BenchMeta (one orchestrator invocation)
      -> system: SystemProfile
      -> matrix, config, skips

    RunResult (one per backend/size/task key)
      -> descriptor: RunDescriptor
      -> repetitions: list[RepetitionRecord]

Files produced under the results directory::

    bench_meta.json               BenchMeta of the latest invocation
    runs/<backend>_<size>_<task>.json   one RunResult per key

A rerun of the same key replaces its file; records are never merged.
Writes go through a temporary file and ``os.replace`` so an interrupted
run leaves either the old record or the new one, never a torn file.
"""

from __future__ import annotations

import json
import math
import os
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from infbench.logging import get_logger
from infbench.planner import PlanSkip, RunDescriptor, RunKey
from infbench.system import SystemProfile

log = get_logger("results")

STATUS_SUCCESS = "success"
STATUS_FAILURE = "failure"

# Repetition statuses.
REP_OK = "ok"
REP_FAIL = "fail"  # non-zero exit
REP_TIMEOUT = "timeout"
REP_ERROR = "error"  # could not be started

REP_STATUSES = (REP_OK, REP_FAIL, REP_TIMEOUT, REP_ERROR)


# ---------------------------------------------------------------------------
# Repetition-level record
# ---------------------------------------------------------------------------


@dataclass
class RepetitionRecord:
    """Outcome of one timed invocation."""

    index: int  # 1-based
    wall_time_s: float
    exit_code: int
    status: str  # "ok", "fail", "timeout", "error"
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status == REP_OK

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "wall_time_s": round(self.wall_time_s, 6),
            "exit_code": self.exit_code,
            "status": self.status,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RepetitionRecord:
        """Deserialize from a dict, ignoring unknown fields.

        Raises:
            ValueError: If a field has the wrong type or value.
        """
        index = data.get("index")
        wall_time = data.get("wall_time_s")
        exit_code = data.get("exit_code")
        status = data.get("status")
        detail = data.get("detail", "")
        if not _is_int(index):
            raise ValueError(f"repetition index must be an integer, got {index!r}")
        if not _is_real(wall_time) or wall_time < 0:
            raise ValueError(f"repetition {index}: invalid wall_time_s {wall_time!r}")
        if not _is_int(exit_code):
            raise ValueError(f"repetition {index}: invalid exit_code {exit_code!r}")
        if status not in REP_STATUSES:
            raise ValueError(f"repetition {index}: unknown status {status!r}")
        if not isinstance(detail, str):
            raise ValueError(f"repetition {index}: detail must be a string")
        return cls(
            index=index,
            wall_time_s=float(wall_time),
            exit_code=exit_code,
            status=status,
            detail=detail,
        )


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_real(value: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and not isinstance(value, bool)
        and math.isfinite(value)
    )


# ---------------------------------------------------------------------------
# Run-level result
# ---------------------------------------------------------------------------


@dataclass
class RunResult:
    """Outcome of executing one RunDescriptor."""

    descriptor: RunDescriptor
    repetitions: list[RepetitionRecord] = field(default_factory=list)
    status: str = STATUS_SUCCESS
    reason: str = ""
    raw_output: Any = None
    started_at: str = ""
    finished_at: str = ""

    @property
    def key(self) -> RunKey:
        return self.descriptor.key

    @property
    def elapsed_seconds(self) -> list[float]:
        """Durations of successful repetitions only."""
        return [rep.wall_time_s for rep in self.repetitions if rep.ok]

    @property
    def attempted(self) -> int:
        return len(self.repetitions)

    @property
    def succeeded(self) -> int:
        return sum(1 for rep in self.repetitions if rep.ok)

    @property
    def ok(self) -> bool:
        return self.status == STATUS_SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "descriptor": self.descriptor.to_dict(),
            "status": self.status,
            "reason": self.reason,
            "elapsed_seconds": [round(s, 6) for s in self.elapsed_seconds],
            "repetitions": [rep.to_dict() for rep in self.repetitions],
            "raw_output": self.raw_output,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RunResult:
        """Deserialize from a dict.

        ``elapsed_seconds`` is recomputed from the repetition records
        rather than trusted from the file.

        Raises:
            KeyError, TypeError, ValueError: On a malformed record.
        """
        descriptor = RunDescriptor.from_dict(data["descriptor"])
        raw_reps = data.get("repetitions", [])
        if not isinstance(raw_reps, list):
            raise ValueError(f"{descriptor.label}: repetitions must be a list")
        repetitions = [RepetitionRecord.from_dict(r) for r in raw_reps]
        if len(repetitions) > descriptor.repetitions:
            raise ValueError(
                f"{descriptor.label}: {len(repetitions)} repetitions recorded, "
                f"{descriptor.repetitions} requested"
            )
        status = data.get("status", STATUS_SUCCESS)
        if status not in (STATUS_SUCCESS, STATUS_FAILURE):
            raise ValueError(f"{descriptor.label}: unknown status {status!r}")
        text: dict[str, str] = {}
        for name in ("reason", "started_at", "finished_at"):
            value = data.get(name, "")
            if not isinstance(value, str):
                raise ValueError(f"{descriptor.label}: {name} must be a string, got {value!r}")
            text[name] = value
        return cls(
            descriptor=descriptor,
            repetitions=repetitions,
            status=status,
            raw_output=data.get("raw_output"),
            **text,
        )


# ---------------------------------------------------------------------------
# Result store
# ---------------------------------------------------------------------------


class ResultStore:
    """One JSON record per (backend, size, task) key under *root*.

    ``persist`` is safe to call from several threads: writes to the
    same key are serialized, writes to distinct keys proceed
    independently.
    """

    def __init__(self, root: Path) -> None:
        self.root = root
        self._locks: dict[RunKey, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def path_for(self, key: RunKey) -> Path:
        return self.root / ("_".join(key) + ".json")

    def _lock_for(self, key: RunKey) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def persist(self, result: RunResult) -> Path:
        """Write *result*, replacing any record for the same key."""
        path = self.path_for(result.key)
        content = json.dumps(result.to_dict(), indent=2) + "\n"
        with self._lock_for(result.key):
            self.root.mkdir(parents=True, exist_ok=True)
            atomic_write(path, content)
        log.debug("Wrote %s", path)
        return path

    def load(self, key: RunKey) -> RunResult | None:
        """Load the record for *key*, or None if absent or unreadable."""
        path = self.path_for(key)
        if not path.exists():
            return None
        return _read_record(path)

    def list(self) -> list[RunResult]:
        """Load every readable record.

        Malformed or partially written files are skipped with a
        warning.  Each key appears at most once.
        """
        if not self.root.is_dir():
            return []

        by_key: dict[RunKey, RunResult] = {}
        for path in sorted(self.root.glob("*.json")):
            result = _read_record(path)
            if result is None:
                continue
            existing = by_key.get(result.key)
            if existing is not None:
                log.warning(
                    "Duplicate record for %s in %s; keeping the most recent",
                    result.descriptor.label,
                    path.name,
                )
                if existing.finished_at >= result.finished_at:
                    continue
            by_key[result.key] = result
        return list(by_key.values())


def _read_record(path: Path) -> RunResult | None:
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError("record is not a JSON object")
        return RunResult.from_dict(data)
    except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
        log.warning("Skipping unreadable result file %s: %s", path, exc)
        return None


def atomic_write(path: Path, content: str) -> None:
    """Write *content* to *path* via a temp file and os.replace."""
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


# ---------------------------------------------------------------------------
# Run-level metadata
# ---------------------------------------------------------------------------


@dataclass
class BenchMeta:
    """Metadata for one orchestrator invocation."""

    bench_id: str
    name: str = ""
    platform: str = ""
    accelerator: str = ""
    system: SystemProfile = field(default_factory=SystemProfile)
    matrix: dict[str, list[str]] = field(default_factory=dict)
    config: dict[str, Any] = field(default_factory=dict)
    skips: list[PlanSkip] = field(default_factory=list)
    cli_args: list[str] = field(default_factory=list)
    start_time: str = ""
    end_time: str = ""
    runs_planned: int = 0
    runs_completed: int = 0
    interrupted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "bench_id": self.bench_id,
            "name": self.name,
            "platform": self.platform,
            "accelerator": self.accelerator,
            "system": self.system.to_dict(),
            "matrix": self.matrix,
            "config": self.config,
            "skips": [skip.to_dict() for skip in self.skips],
            "cli_args": self.cli_args,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "runs_planned": self.runs_planned,
            "runs_completed": self.runs_completed,
            "interrupted": self.interrupted,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BenchMeta:
        meta = cls(bench_id=data["bench_id"])
        meta.name = data.get("name", "")
        meta.platform = data.get("platform", "")
        meta.accelerator = data.get("accelerator", "")
        meta.system = SystemProfile.from_dict(data.get("system", {}))
        meta.matrix = data.get("matrix", {})
        meta.config = data.get("config", {})
        meta.skips = [PlanSkip(**skip) for skip in data.get("skips", [])]
        meta.cli_args = data.get("cli_args", [])
        meta.start_time = data.get("start_time", "")
        meta.end_time = data.get("end_time", "")
        meta.runs_planned = data.get("runs_planned", 0)
        meta.runs_completed = data.get("runs_completed", 0)
        meta.interrupted = data.get("interrupted", False)
        return meta


META_FILENAME = "bench_meta.json"


def save_meta(results_dir: Path, meta: BenchMeta) -> Path:
    """Write ``bench_meta.json`` atomically."""
    results_dir.mkdir(parents=True, exist_ok=True)
    path = results_dir / META_FILENAME
    atomic_write(path, json.dumps(meta.to_dict(), indent=2) + "\n")
    return path


def load_meta(results_dir: Path) -> BenchMeta:
    """Load ``bench_meta.json``.

    Raises:
        FileNotFoundError: If the file is missing.
        ValueError: If it cannot be parsed.
    """
    path = results_dir / META_FILENAME
    if not path.exists():
        raise FileNotFoundError(f"No {META_FILENAME} in {results_dir}")
    try:
        return BenchMeta.from_dict(json.loads(path.read_text(encoding="utf-8")))
    except (KeyError, TypeError) as exc:
        raise ValueError(f"Malformed {path}: {exc}") from exc
