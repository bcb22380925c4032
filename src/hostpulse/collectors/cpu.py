"""
CPU Probe.

Usage, load, per-core usage and frequency, interrupt and context switch
rates, iowait share and core voltage.
"""

import glob
import os
from typing import Optional

import psutil

from ..errors import ProbeError
from ..models import CpuStats
from .base import CounterSample, Probe, ProbeResult, counter_delta

HWMON_GLOB = "/sys/class/hwmon/hwmon*"


def _clamp_pct(value: float) -> float:
    return min(100.0, max(0.0, float(value)))


def read_vcore(hwmon_glob: str = HWMON_GLOB) -> float:
    """Core voltage in volts from a hwmon input labelled Vcore. 0.0 if absent."""
    for hwmon in sorted(glob.glob(hwmon_glob)):
        for label_path in sorted(glob.glob(os.path.join(hwmon, "in*_label"))):
            try:
                with open(label_path) as f:
                    label = f.read().strip()
                if label.lower() != "vcore":
                    continue
                with open(label_path.replace("_label", "_input")) as f:
                    return int(f.read().strip()) / 1000.0
            except (OSError, ValueError):
                continue
    return 0.0


class CpuProbe(Probe):
    """Collects CPU metrics using psutil."""

    domain = "cpu"
    rate_fields = {
        "interrupts_sec": "interrupts",
        "context_switches_sec": "ctx_switches",
    }

    def sample(self) -> ProbeResult:
        per_core = psutil.cpu_percent(interval=self.config.cpu_sample_interval, percpu=True)
        core_count = psutil.cpu_count() or len(per_core)
        if not core_count:
            raise ProbeError(self.domain, "no CPU cores reported")

        threads_usage = self._fit([_clamp_pct(v) for v in per_core], core_count, 0.0)
        usage_total = _clamp_pct(sum(threads_usage) / core_count)

        try:
            load_avg = tuple(max(0.0, float(v)) for v in psutil.getloadavg())
        except (OSError, AttributeError):
            load_avg = (0.0, 0.0, 0.0)

        freqs = self._frequencies()
        # Some platforms only report one package-wide frequency
        if len(freqs) == 1:
            freqs = freqs * core_count
        threads_freq = self._fit(freqs, core_count, 0)

        times = psutil.cpu_times()
        counters = {
            "idle": float(times.idle),
            "iowait": float(getattr(times, "iowait", 0.0)),
            "total": float(sum(times)),
        }
        try:
            cpu_stats = psutil.cpu_stats()
            counters["interrupts"] = float(cpu_stats.interrupts)
            counters["ctx_switches"] = float(cpu_stats.ctx_switches)
        except (OSError, AttributeError):
            pass

        stats = CpuStats(
            usage_total_pct=usage_total,
            load_avg=load_avg,
            core_count=core_count,
            threads_usage=tuple(threads_usage),
            threads_freq_mhz=tuple(threads_freq),
            idle_time=int(times.idle),
            voltage_vcore=read_vcore(),
        )
        return ProbeResult(stats=stats, counters=counters)

    def empty(self) -> CpuStats:
        return CpuStats()

    def derive(
        self,
        stats: CpuStats,
        previous: Optional[CounterSample],
        current: CounterSample,
    ) -> CpuStats:
        stats = super().derive(stats, previous, current)

        total = counter_delta(previous, current, "total")
        io_wait = 0.0
        if total > 0:
            io_wait = _clamp_pct(counter_delta(previous, current, "iowait") / total * 100)
        return stats.model_copy(update={"io_wait_time": round(io_wait, 2)})

    @staticmethod
    def _frequencies() -> list[int]:
        try:
            freqs = psutil.cpu_freq(percpu=True) or []
        except (OSError, AttributeError, NotImplementedError):
            return []
        return [int(f.current) for f in freqs]

    @staticmethod
    def _fit(values: list, length: int, fill):
        """Pad or trim so there is exactly one entry per core."""
        if len(values) >= length:
            return values[:length]
        return values + [fill] * (length - len(values))
