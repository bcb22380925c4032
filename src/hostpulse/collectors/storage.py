"""
Storage Probe.

Usage of every mounted real filesystem plus aggregate disk throughput,
IOPS and average latency.
"""

import logging
from typing import Optional

import psutil

from ..models import PartitionInfo, StorageStats
from .base import CounterSample, Probe, ProbeResult, counter_delta

logger = logging.getLogger(__name__)


class StorageProbe(Probe):
    """Collects disk metrics using psutil."""

    domain = "storage"
    rate_fields = {
        "total_read_bytes_sec": "read_bytes",
        "total_write_bytes_sec": "write_bytes",
        "total_read_iops": "read_count",
        "total_write_iops": "write_count",
    }

    def sample(self) -> ProbeResult:
        partitions = []
        seen = set()

        for part in psutil.disk_partitions(all=False):
            # Skip special filesystems
            if part.fstype in self.config.exclude_fstypes or not part.fstype:
                continue
            if part.mountpoint in seen:
                continue

            try:
                usage = psutil.disk_usage(part.mountpoint)
            except (PermissionError, OSError):
                continue

            seen.add(part.mountpoint)
            partitions.append(PartitionInfo(
                mount_point=part.mountpoint,
                device=part.device,
                fstype=part.fstype,
                usage_pct=min(100.0, max(0.0, float(usage.percent))),
                free_bytes=usage.free,
                used_bytes=usage.used,
                total_bytes=usage.total,
            ))

        counters = {}
        try:
            io = psutil.disk_io_counters(perdisk=False)
        except (OSError, RuntimeError) as e:
            logger.debug(f"Disk I/O counters unavailable: {e}")
            io = None
        if io is not None:
            counters = {
                "read_bytes": float(io.read_bytes),
                "write_bytes": float(io.write_bytes),
                "read_count": float(io.read_count),
                "write_count": float(io.write_count),
                "io_time_ms": float(io.read_time + io.write_time),
            }

        stats = StorageStats(partitions=tuple(partitions))
        return ProbeResult(stats=stats, counters=counters)

    def empty(self) -> StorageStats:
        return StorageStats()

    def derive(
        self,
        stats: StorageStats,
        previous: Optional[CounterSample],
        current: CounterSample,
    ) -> StorageStats:
        stats = super().derive(stats, previous, current)

        ops = (counter_delta(previous, current, "read_count")
               + counter_delta(previous, current, "write_count"))
        latency = 0.0
        if ops > 0:
            latency = counter_delta(previous, current, "io_time_ms") / ops
        return stats.model_copy(update={"io_latency_ms": round(latency, 3)})
