"""
Memory Probe.

RAM and swap usage plus page fault rates.
"""

import psutil

from ..models import MemoryStats
from .base import Probe, ProbeResult

MEMINFO_PATH = "/proc/meminfo"
VMSTAT_PATH = "/proc/vmstat"


def read_buffers_cache(path: str = MEMINFO_PATH) -> int:
    """Buffers + Cached from /proc/meminfo, in bytes. 0 when unreadable."""
    values = {}
    try:
        with open(path) as f:
            for line in f:
                parts = line.split()
                if len(parts) >= 2:
                    try:
                        # Values in /proc/meminfo are in kB
                        values[parts[0].rstrip(':')] = int(parts[1]) * 1024
                    except ValueError:
                        continue
    except OSError:
        return 0
    return values.get("Buffers", 0) + values.get("Cached", 0)


def read_page_faults(path: str = VMSTAT_PATH) -> dict[str, float]:
    """Cumulative minor/major fault counters from /proc/vmstat."""
    raw = {}
    try:
        with open(path) as f:
            for line in f:
                key, _, value = line.partition(' ')
                if key in ("pgfault", "pgmajfault"):
                    raw[key] = float(value)
    except (OSError, ValueError):
        return {}

    if "pgfault" not in raw or "pgmajfault" not in raw:
        return {}
    # pgfault counts every fault, major ones included
    return {
        "minor_faults": raw["pgfault"] - raw["pgmajfault"],
        "major_faults": raw["pgmajfault"],
    }


class MemoryProbe(Probe):
    """Collects memory metrics using psutil."""

    domain = "memory"
    rate_fields = {
        "page_faults_minor_sec": "minor_faults",
        "page_faults_major_sec": "major_faults",
    }

    def sample(self) -> ProbeResult:
        mem = psutil.virtual_memory()
        swap = psutil.swap_memory()

        buffers_cache = getattr(mem, "buffers", 0) + getattr(mem, "cached", 0)
        if not buffers_cache:
            buffers_cache = read_buffers_cache()

        stats = MemoryStats(
            total_bytes=mem.total,
            used_bytes=mem.used,
            available_bytes=mem.available,
            buffers_cache_bytes=buffers_cache,
            swap_total_bytes=swap.total,
            swap_used_bytes=min(swap.used, swap.total),
        )
        return ProbeResult(stats=stats, counters=read_page_faults())

    def empty(self) -> MemoryStats:
        return MemoryStats()
