"""Host characterization for the benchmark report header.

Captures CPU, memory, OS, accelerator and toolchain information so a
summary can be read without access to the machine that produced it.

Supports Linux and macOS.  Every probe is best-effort: a failing probe
leaves its field at the default instead of raising.
"""

from __future__ import annotations

import json
import logging
import os
import platform
import shutil
import subprocess
import sys
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from infbench.environment import PlatformClass, detect

log = logging.getLogger("infbench")

# Tools whose versions end up in the report: name -> argv.
TOOL_PROBES: dict[str, list[str]] = {
    "rustc": ["rustc", "--version"],
    "cargo": ["cargo", "--version"],
    "python3": ["python3", "--version"],
    "nvcc": ["nvcc", "--version"],
}


# ---------------------------------------------------------------------------
# SystemProfile
# ---------------------------------------------------------------------------


@dataclass
class SystemProfile:
    """Characterization of the host running a benchmark."""

    platform_class: str = PlatformClass.GENERIC_DESKTOP.value

    # CPU
    cpu_model: str = "unknown"
    cpu_cores_physical: int = 0
    cpu_cores_logical: int = 0
    cpu_architecture: str = ""

    # Memory
    ram_total_gb: float = 0.0
    ram_available_gb: float = 0.0

    # OS
    os_name: str = ""
    os_kernel_version: str = ""
    os_distro: str = ""

    # Accelerators, one summary line per device ("name, memory").
    accelerators: list[str] = field(default_factory=list)

    # Tool name -> version string; missing tools are absent.
    tool_versions: dict[str, str] = field(default_factory=dict)

    hostname: str = ""
    timestamp: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SystemProfile:
        """Deserialize from a dict, ignoring unknown fields."""
        known = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in data.items() if k in known}
        return cls(**filtered)

    def to_json(self, indent: int = 2) -> str:
        """Serialize to a JSON string."""
        return json.dumps(self.to_dict(), indent=indent)


# ---------------------------------------------------------------------------
# Small probe helpers
# ---------------------------------------------------------------------------


def _probe(argv: list[str], timeout: float = 5) -> str | None:
    """Run a short probe command; return stripped stdout or None."""
    if shutil.which(argv[0]) is None:
        return None
    try:
        proc = subprocess.run(
            argv,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except (subprocess.TimeoutExpired, OSError):
        return None
    if proc.returncode != 0:
        return None
    return proc.stdout.strip() or None


def _sysctl(key: str) -> str | None:
    """Read a macOS sysctl value."""
    return _probe(["sysctl", "-n", key])


# ---------------------------------------------------------------------------
# Capture
# ---------------------------------------------------------------------------


def capture_system_profile(
    platform_class: PlatformClass | None = None,
) -> SystemProfile:
    """Capture the host profile.

    Args:
        platform_class: Classification to record.  Defaults to the
            cached ``environment.detect()`` result.
    """
    if platform_class is None:
        platform_class = detect()

    profile = SystemProfile(
        platform_class=platform_class.value,
        timestamp=time.strftime("%Y-%m-%dT%H:%M:%S%z"),
        hostname=platform.node(),
        cpu_architecture=platform.machine(),
        os_name=platform.system(),
        os_kernel_version=platform.release(),
    )
    profile.cpu_cores_logical = os.cpu_count() or 0

    if sys.platform == "linux":
        _capture_cpu_info_linux(profile)
        _capture_memory_info_linux(profile)
        _capture_os_info_linux(profile)
    elif sys.platform == "darwin":
        _capture_cpu_info_darwin(profile)
        _capture_memory_info_darwin(profile)
        _capture_os_info_darwin(profile)
    else:
        log.debug("Host info capture not supported on %s", sys.platform)

    profile.accelerators = _capture_accelerators(platform_class)
    profile.tool_versions = capture_tool_versions()
    return profile


def _capture_cpu_info_linux(profile: SystemProfile) -> None:
    """Populate CPU model and physical core count from /proc/cpuinfo."""
    try:
        cpuinfo = Path("/proc/cpuinfo").read_text()
    except OSError:
        return

    cores: set[tuple[str, str]] = set()
    physical_id: str | None = None
    for line in cpuinfo.splitlines():
        key, _, value = line.partition(":")
        key = key.strip()
        value = value.strip()
        if key == "model name" and profile.cpu_model == "unknown":
            profile.cpu_model = value
        elif key == "Model" and profile.cpu_model == "unknown":
            # ARM boards (Raspberry Pi) report the board here instead.
            profile.cpu_model = value
        elif key == "physical id":
            physical_id = value
        elif key == "core id" and physical_id is not None:
            cores.add((physical_id, value))
            physical_id = None

    profile.cpu_cores_physical = len(cores) or profile.cpu_cores_logical


def _capture_memory_info_linux(profile: SystemProfile) -> None:
    """Populate memory totals from /proc/meminfo (values in kB)."""
    try:
        meminfo = Path("/proc/meminfo").read_text()
    except OSError:
        return
    mem: dict[str, int] = {}
    for line in meminfo.splitlines():
        parts = line.split()
        if len(parts) >= 2 and parts[1].isdigit():
            mem[parts[0].rstrip(":")] = int(parts[1])
    profile.ram_total_gb = round(mem.get("MemTotal", 0) / (1024 * 1024), 2)
    profile.ram_available_gb = round(mem.get("MemAvailable", 0) / (1024 * 1024), 2)


def _capture_os_info_linux(profile: SystemProfile) -> None:
    """Populate the distro name from /etc/os-release."""
    try:
        os_release = Path("/etc/os-release").read_text()
    except OSError:
        profile.os_distro = f"{platform.system()} {platform.release()}"
        return
    for line in os_release.splitlines():
        if line.startswith("PRETTY_NAME="):
            profile.os_distro = line.split("=", 1)[1].strip().strip('"')
            break


def _capture_cpu_info_darwin(profile: SystemProfile) -> None:
    """Populate CPU fields using sysctl on macOS."""
    model = _sysctl("machdep.cpu.brand_string")
    if model:
        profile.cpu_model = model
    phys = _sysctl("hw.physicalcpu")
    try:
        profile.cpu_cores_physical = int(phys) if phys else profile.cpu_cores_logical
    except ValueError:
        profile.cpu_cores_physical = profile.cpu_cores_logical


def _capture_memory_info_darwin(profile: SystemProfile) -> None:
    """Populate total memory using sysctl on macOS."""
    total = _sysctl("hw.memsize")
    if total and total.isdigit():
        profile.ram_total_gb = round(int(total) / (1024**3), 2)


def _capture_os_info_darwin(profile: SystemProfile) -> None:
    """Populate the OS name on macOS."""
    version = platform.mac_ver()[0]
    profile.os_distro = f"macOS {version}" if version else "macOS"


def _capture_accelerators(platform_class: PlatformClass) -> list[str]:
    """Summarize NVIDIA devices via nvidia-smi.

    On an embedded accelerator board without nvidia-smi the device is
    still reported, just without details.
    """
    out = _probe(
        ["nvidia-smi", "--query-gpu=name,memory.total", "--format=csv,noheader"],
        timeout=10,
    )
    if out:
        return [line.strip() for line in out.splitlines() if line.strip()]
    if platform_class is PlatformClass.EMBEDDED_ACCELERATOR:
        return ["NVIDIA GPU detected but nvidia-smi not available"]
    return []


def capture_tool_versions(
    probes: dict[str, list[str]] | None = None,
) -> dict[str, str]:
    """Return the first output line of each available tool's version probe."""
    versions: dict[str, str] = {}
    for name, argv in (probes if probes is not None else TOOL_PROBES).items():
        out = _probe(argv)
        if out:
            # nvcc prints a banner; the release line is the last one.
            lines = out.splitlines()
            versions[name] = lines[-1].strip() if name == "nvcc" else lines[0].strip()
    return versions


# ---------------------------------------------------------------------------
# Display
# ---------------------------------------------------------------------------


def format_system_profile(profile: SystemProfile) -> str:
    """Format a system profile for the report header."""
    lines = [
        "System Information",
        "─" * 18,
        f"Platform:     {profile.platform_class}",
        f"Kernel:       {profile.os_kernel_version}",
        f"Architecture: {profile.cpu_architecture}",
    ]
    if profile.os_distro:
        lines.append(f"OS:           {profile.os_distro}")

    cores = f"{profile.cpu_cores_physical} cores"
    if profile.cpu_cores_logical and profile.cpu_cores_logical != profile.cpu_cores_physical:
        cores += f" / {profile.cpu_cores_logical} threads"
    lines.append(f"CPU:          {profile.cpu_model} ({cores})")

    if profile.ram_total_gb:
        lines.append(f"Memory:       {profile.ram_total_gb:.1f} GB total")
    else:
        lines.append("Memory:       N/A")

    for accel in profile.accelerators:
        lines.append(f"Accelerator:  {accel}")

    for name, version in sorted(profile.tool_versions.items()):
        lines.append(f"{name + ':':<14s}{version}")

    if profile.hostname:
        lines.append(f"Hostname:     {profile.hostname}")
    return "\n".join(lines)
