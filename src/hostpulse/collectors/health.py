"""
Health Probe.

Kernel entropy pool, clock offset from chrony, battery state.
"""

import re
import shutil
import subprocess

import psutil

from ..models import SystemHealth
from .base import Probe, ProbeResult

ENTROPY_PATH = "/proc/sys/kernel/random/entropy_avail"

CHRONY_OFFSET = re.compile(r'System time\s*:\s*([\d.]+)\s+seconds\s+(fast|slow)')


def read_entropy(path: str = ENTROPY_PATH) -> int:
    try:
        with open(path) as f:
            return int(f.read().strip())
    except (OSError, ValueError):
        return 0


def parse_chrony_offset(output: str) -> float:
    """Offset in ms from `chronyc tracking`; positive when the clock is fast."""
    match = CHRONY_OFFSET.search(output)
    if not match:
        return 0.0
    offset_ms = float(match.group(1)) * 1000
    return offset_ms if match.group(2) == "fast" else -offset_ms


def read_ntp_offset() -> float:
    if not shutil.which("chronyc"):
        return 0.0
    try:
        result = subprocess.run(
            ["chronyc", "tracking"],
            capture_output=True, text=True, timeout=5,
        )
    except (subprocess.TimeoutExpired, OSError):
        return 0.0
    if result.returncode != 0:
        return 0.0
    return round(parse_chrony_offset(result.stdout), 3)


def battery_status() -> str:
    """E.g. 'charging 85%', 'discharging 40%', '' when there is no battery."""
    if not hasattr(psutil, "sensors_battery"):
        return ""
    battery = psutil.sensors_battery()
    if battery is None:
        return ""
    state = "charging" if battery.power_plugged else "discharging"
    return f"{state} {round(battery.percent)}%"


class HealthProbe(Probe):
    """Collects miscellaneous system health facts."""

    domain = "health"

    def sample(self) -> ProbeResult:
        stats = SystemHealth(
            entropy_avail=read_entropy(),
            ntp_offset_ms=read_ntp_offset(),
            battery_status=battery_status(),
        )
        return ProbeResult(stats=stats)

    def empty(self) -> SystemHealth:
        return SystemHealth()
