"""Benchmark configuration and backend definitions.

Handles:
- The built-in backend definitions and task prompts.
- Loading benchmark profiles from YAML files.
- Parsing inline backend definitions from CLI arguments.
- Merging CLI options with profile values.
- Validating the final configuration before anything is executed.
"""

from __future__ import annotations

import re
import shlex
import string
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# Backend, size and task names end up in file names and argv; keep them
# to a conservative alphabet.  No underscore: it separates key parts in
# result file names.
NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9.-]*$")

# Start of a new pair in an inline backend spec.
_PAIR_START = re.compile(r"^[a-z_]+=")

# Placeholders a backend argument template may reference.
ARG_PLACEHOLDERS = frozenset(
    {"image", "prompt", "model_path", "size", "backend", "task", "output", "runs", "warmup"}
)

DEFAULT_SIZES = ["small", "medium"]
DEFAULT_TASKS = ["objects", "description"]

DEFAULT_PROMPTS: dict[str, str] = {
    "objects": "What objects are in this image?",
    "description": "Describe this image in detail.",
}

# Arguments understood by the smolvlm_compare example.  Each invocation
# is a single run; repetitions and warmups are driven from here.
_SMOLVLM_ARGS = [
    "--image",
    "{image}",
    "--prompt",
    "{prompt}",
    "--model-path",
    "{model_path}",
    "--model-size",
    "{size}",
    "--backend",
    "{backend}",
    "--benchmark",
    "--runs",
    "{runs}",
    "--warmup",
    "{warmup}",
    "--output",
    "{output}",
]


# ---------------------------------------------------------------------------
# BackendDef
# ---------------------------------------------------------------------------


@dataclass
class BackendDef:
    """How to invoke one inference backend.

    The final argv is ``command + extra_flags + rendered args``, where
    ``extra_flags`` are the accelerator or fallback flags picked by the
    planner.  Nothing is ever passed through a shell.
    """

    name: str
    command: list[str] = field(default_factory=list)
    args: list[str] = field(default_factory=lambda: list(_SMOLVLM_ARGS))
    prepare: list[str] | None = None
    accelerator_flags: list[str] = field(default_factory=list)
    fallback_flags: list[str] = field(default_factory=list)
    required_env: list[str] = field(default_factory=list)
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict (sparse: omits empty fields)."""
        d: dict[str, Any] = {"name": self.name, "command": self.command, "args": self.args}
        if self.prepare:
            d["prepare"] = self.prepare
        if self.accelerator_flags:
            d["accelerator_flags"] = self.accelerator_flags
        if self.fallback_flags:
            d["fallback_flags"] = self.fallback_flags
        if self.required_env:
            d["required_env"] = self.required_env
        if self.description:
            d["description"] = self.description
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackendDef:
        """Deserialize from a dict (as found in a YAML profile)."""
        backend = cls(name=data["name"])
        backend.command = _as_argv(data.get("command", []), f"{backend.name}.command")
        if "args" in data:
            backend.args = _as_argv(data["args"], f"{backend.name}.args")
        if data.get("prepare"):
            backend.prepare = _as_argv(data["prepare"], f"{backend.name}.prepare")
        backend.accelerator_flags = _as_argv(
            data.get("accelerator_flags", []), f"{backend.name}.accelerator_flags"
        )
        backend.fallback_flags = _as_argv(
            data.get("fallback_flags", []), f"{backend.name}.fallback_flags"
        )
        backend.required_env = _as_names(
            data.get("required_env", []), f"{backend.name}.required_env"
        )
        backend.description = data.get("description", "")
        return backend


def _as_argv(value: Any, where: str) -> list[str]:
    """Accept either a list of strings or a command string."""
    if isinstance(value, str):
        return shlex.split(value)
    if isinstance(value, list) and all(isinstance(v, (str, int, float)) for v in value):
        return [str(v) for v in value]
    raise ValueError(f"'{where}' must be a string or a list of strings")


def _as_names(value: Any, where: str) -> list[str]:
    """Accept one name or a list of names."""
    if isinstance(value, str):
        return [value]
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return list(value)
    raise ValueError(f"'{where}' must be a string or a list of strings")


def _smolvlm_backend(name: str, feature: str) -> BackendDef:
    """Backend driven through the Rust ``smolvlm_compare`` example."""
    return BackendDef(
        name=name,
        command=["cargo", "run", "--example", "smolvlm_compare", "--release"],
        args=["--", *_SMOLVLM_ARGS],
        prepare=["cargo", "build", "--example", "smolvlm_compare", "--release"],
        accelerator_flags=["--features", f"kornia-models/{feature}-cuda,kornia-models/onnx"],
        fallback_flags=["--features", f"kornia-models/{feature},kornia-models/onnx"],
        description=f"SmolVLM via the {name} backend",
    )


def default_backends() -> dict[str, BackendDef]:
    """Return fresh copies of the built-in backend definitions."""
    candle = _smolvlm_backend("candle", "candle")
    # ONNX has no CUDA feature of its own; it rides along with candle's.
    onnx = _smolvlm_backend("onnx", "candle")
    return {"candle": candle, "onnx": onnx}


# ---------------------------------------------------------------------------
# BenchConfig
# ---------------------------------------------------------------------------


@dataclass
class BenchConfig:
    """Resolved configuration for a benchmark run."""

    bench_id: str = ""  # Auto-generated if empty
    name: str = ""

    # Matrix
    backends: list[str] = field(default_factory=lambda: ["candle", "onnx"])
    sizes: list[str] = field(default_factory=lambda: list(DEFAULT_SIZES))
    tasks: list[str] = field(default_factory=lambda: list(DEFAULT_TASKS))
    backend_defs: dict[str, BackendDef] = field(default_factory=default_backends)
    prompts: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_PROMPTS))

    # Iteration control
    repetitions: int = 3
    warmup: int = 1
    timeout: float = 600.0  # Per-repetition, seconds

    # Execution
    workers: int = 1
    devices: int = 1

    # Paths
    model_dir: Path = field(default_factory=lambda: Path("models"))
    results_dir: Path = field(default_factory=lambda: Path("benchmark_results"))
    input_path: Path = field(default_factory=lambda: Path("test_image.jpg"))

    # CLI provenance
    cli_args: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.bench_id:
            self.bench_id = f"bench_{time.strftime('%Y%m%d_%H%M%S')}"

    @property
    def timestamp(self) -> str:
        """Timestamp part of the bench id, used in log and summary names."""
        return self.bench_id.removeprefix("bench_")

    @property
    def store_dir(self) -> Path:
        """Directory holding one record per (backend, size, task)."""
        return self.results_dir / "runs"

    @property
    def raw_dir(self) -> Path:
        """Directory the backends write their own JSON output into."""
        return self.results_dir / "raw"

    @property
    def log_path(self) -> Path:
        return self.results_dir / f"benchmark_{self.timestamp}.log"

    @property
    def summary_path(self) -> Path:
        return self.results_dir / f"summary_{self.timestamp}.txt"

    def matrix(self) -> dict[str, list[str]]:
        """The requested matrix, as recorded in run metadata."""
        return {
            "backends": list(self.backends),
            "sizes": list(self.sizes),
            "tasks": list(self.tasks),
        }


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@dataclass
class ValidationError:
    """A single configuration validation error."""

    field: str
    message: str
    severity: str = "error"  # "error" or "warning"


def template_fields(template: str) -> set[str]:
    """Return the placeholder names used by an argument template."""
    names: set[str] = set()
    for _, name, _, _ in string.Formatter().parse(template):
        if name is not None:
            names.add(name)
    return names


def validate_config(config: BenchConfig) -> list[ValidationError]:
    """Validate a benchmark configuration.

    Returns a list of validation errors.  Empty list means valid.
    """
    errors: list[ValidationError] = []

    if not config.input_path.is_file():
        errors.append(
            ValidationError(
                field="input_path",
                message=(
                    f"Input file not found: {config.input_path}. "
                    f"Provide a sample input with --input."
                ),
            )
        )

    for attr in ("backends", "sizes", "tasks"):
        names = getattr(config, attr)
        if not names:
            errors.append(ValidationError(field=attr, message=f"No {attr} selected."))
        for name in names:
            if not NAME_PATTERN.match(name):
                errors.append(
                    ValidationError(
                        field=attr,
                        message=(
                            f"Invalid name '{name}': use letters, digits, '.' and '-' only."
                        ),
                    )
                )
        if len(set(names)) != len(names):
            errors.append(ValidationError(field=attr, message=f"Duplicate entries in {attr}."))

    for name in config.backends:
        backend = config.backend_defs.get(name)
        if backend is None:
            errors.append(
                ValidationError(
                    field=f"backends.{name}",
                    message=(
                        f"Unknown backend '{name}'. Known: "
                        f"{', '.join(sorted(config.backend_defs)) or '(none)'}. "
                        f"Define it in a profile or with --backend-def."
                    ),
                )
            )
            continue
        if not backend.command:
            errors.append(
                ValidationError(
                    field=f"backends.{name}.command",
                    message=f"Backend '{name}' has no command.",
                )
            )
        for template in backend.args:
            unknown = template_fields(template) - ARG_PLACEHOLDERS
            if unknown:
                errors.append(
                    ValidationError(
                        field=f"backends.{name}.args",
                        message=(
                            f"Unknown placeholder(s) {', '.join(sorted(unknown))} in "
                            f"'{template}'. Allowed: {', '.join(sorted(ARG_PLACEHOLDERS))}."
                        ),
                    )
                )

    for task in config.tasks:
        if task not in config.prompts:
            errors.append(
                ValidationError(
                    field=f"tasks.{task}",
                    message=f"No prompt defined for task '{task}'.",
                )
            )

    if config.repetitions < 1:
        errors.append(
            ValidationError(
                field="repetitions",
                message=f"Repetitions must be at least 1 (got {config.repetitions}).",
            )
        )
    if config.warmup < 0:
        errors.append(
            ValidationError(
                field="warmup",
                message=f"Warmup iterations cannot be negative (got {config.warmup}).",
            )
        )
    if config.timeout <= 0:
        errors.append(
            ValidationError(
                field="timeout",
                message=f"Timeout must be positive (got {config.timeout}).",
            )
        )
    if config.workers < 1:
        errors.append(
            ValidationError(field="workers", message=f"Workers must be >= 1 (got {config.workers}).")
        )
    if config.devices < 1:
        errors.append(
            ValidationError(field="devices", message=f"Devices must be >= 1 (got {config.devices}).")
        )

    if not config.model_dir.is_dir():
        errors.append(
            ValidationError(
                field="model_dir",
                message=(
                    f"Model directory does not exist: {config.model_dir}. "
                    f"Every combination will be skipped."
                ),
                severity="warning",
            )
        )

    return errors


# ---------------------------------------------------------------------------
# YAML profile loading
# ---------------------------------------------------------------------------


def load_profile(profile_path: Path) -> dict[str, Any]:
    """Load a benchmark profile from a YAML file.

    Profile format::

        name: "jetson vs desktop"
        repetitions: 3
        warmup: 1
        timeout: 600
        model_dir: models
        backends: [candle, onnx, python]
        sizes: [small, medium]
        tasks: [objects]

        prompts:
          objects: "What objects are in this image?"

        backend_defs:
          python:
            command: python3 benchmark.py
            args: ["-i", "{image}", "-b", "python", "-s", "{size}",
                   "-t", "{task}", "-r", "{runs}", "-o", "{output}"]
          python-hf:
            command: python3 benchmark.py --use-hf
            required_env: [HF_TOKEN]

    Entries under ``backend_defs`` replace built-ins of the same name.

    Returns:
        The parsed YAML as a dict.
    """
    import yaml

    if not profile_path.exists():
        raise FileNotFoundError(f"Profile not found: {profile_path}")

    data = yaml.safe_load(profile_path.read_text())
    if not isinstance(data, dict):
        raise ValueError(f"Profile must be a YAML mapping, got {type(data).__name__}")
    return data


def config_from_profile(
    profile_data: dict[str, Any],
    *,
    cli_overrides: dict[str, Any] | None = None,
) -> BenchConfig:
    """Build a BenchConfig from a parsed YAML profile.

    CLI overrides take precedence over profile values.  ``None`` (or an
    empty list) in *cli_overrides* means "not given on the command line".

    Args:
        profile_data: Parsed YAML profile dict.
        cli_overrides: Dict keyed by BenchConfig field names.
    """
    cli = {k: v for k, v in (cli_overrides or {}).items() if v is not None and v != []}

    def pick(key: str, default: Any) -> Any:
        if key in cli:
            return cli[key]
        return profile_data.get(key, default)

    config = BenchConfig(
        name=pick("name", ""),
        repetitions=int(pick("repetitions", 3)),
        warmup=int(pick("warmup", 1)),
        timeout=float(pick("timeout", 600)),
        workers=int(pick("workers", 1)),
        devices=int(pick("devices", 1)),
        model_dir=Path(pick("model_dir", "models")),
        results_dir=Path(pick("results_dir", "benchmark_results")),
        input_path=Path(pick("input_path", profile_data.get("input", "test_image.jpg"))),
    )

    for key in ("backends", "sizes", "tasks"):
        value = pick(key, getattr(config, key))
        if not isinstance(value, list):
            raise ValueError(f"Profile '{key}' must be a list")
        setattr(config, key, [str(v) for v in value])

    prompts = profile_data.get("prompts", {})
    if not isinstance(prompts, dict):
        raise ValueError("Profile 'prompts' must be a mapping of task -> prompt")
    config.prompts.update({str(k): str(v) for k, v in prompts.items()})

    defs = profile_data.get("backend_defs", {})
    if not isinstance(defs, dict):
        raise ValueError("Profile 'backend_defs' must be a mapping of backend name -> definition")
    for name, data in defs.items():
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError(f"Backend '{name}' must be a mapping, got {type(data).__name__}")
        config.backend_defs[name] = BackendDef.from_dict({**data, "name": name})

    return config


# ---------------------------------------------------------------------------
# Inline backend parsing
# ---------------------------------------------------------------------------


def parse_inline_backend(spec: str) -> BackendDef:
    """Parse an inline backend definition from the CLI.

    Format: ``"name:key=value,key=value,..."``.  Command-like values are
    split with shell rules (quoting only; nothing is executed by a shell).

    Supported keys:
      command, args, prepare, accelerator_flags, fallback_flags,
      required_env (``+``-separated), description

    Examples::

        "python:command=python3 benchmark.py"
        "python-hf:command=python3 benchmark.py --use-hf,required_env=HF_TOKEN"
    """
    if ":" not in spec:
        raise ValueError(f"Invalid backend spec: '{spec}'. Expected format: 'name:key=value,...'")

    name, rest = spec.split(":", 1)
    name = name.strip()
    if not name:
        raise ValueError("Backend name cannot be empty.")

    backend = BackendDef(name=name)
    for pair in _split_pairs(rest.strip()):
        if "=" not in pair:
            raise ValueError(f"Invalid key=value pair in backend '{name}': '{pair}'")
        key, value = pair.split("=", 1)
        key = key.strip()
        value = value.strip()

        if key == "command":
            backend.command = shlex.split(value)
        elif key == "args":
            backend.args = shlex.split(value)
        elif key == "prepare":
            backend.prepare = shlex.split(value) or None
        elif key == "accelerator_flags":
            backend.accelerator_flags = shlex.split(value)
        elif key == "fallback_flags":
            backend.fallback_flags = shlex.split(value)
        elif key == "required_env":
            backend.required_env = [v.strip() for v in value.split("+") if v.strip()]
        elif key == "description":
            backend.description = value
        else:
            raise ValueError(
                f"Unknown backend key '{key}' in backend '{name}'. "
                f"Valid keys: command, args, prepare, accelerator_flags, "
                f"fallback_flags, required_env, description"
            )

    return backend


def _split_pairs(text: str) -> list[str]:
    """Split key=value pairs on commas.

    Segments that do not start with ``key=`` are rejoined to the
    preceding value, so values may themselves contain commas.
    """
    pairs: list[str] = []
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        if _PAIR_START.match(part) or not pairs:
            pairs.append(part)
        else:
            pairs[-1] += "," + part
    return pairs
