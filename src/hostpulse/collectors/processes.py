"""
Process Probe.

Census of the process table and the top consumers of CPU and memory.
"""

import psutil

from ..errors import ProbeError
from ..models import ProcessInfo, ProcessStats
from ..ranking import top_by_cpu, top_by_memory
from .base import Probe, ProbeResult

ATTRS = ['pid', 'name', 'username', 'status', 'cpu_percent', 'memory_info']

SLEEPING_STATES = (psutil.STATUS_SLEEPING, psutil.STATUS_DISK_SLEEP)


class ProcessProbe(Probe):
    """Walks the process table with psutil.process_iter."""

    domain = "processes"

    def sample(self) -> ProbeResult:
        rows = []
        running = sleeping = zombie = 0

        try:
            procs = list(psutil.process_iter(ATTRS))
        except (psutil.Error, OSError) as e:
            raise ProbeError(self.domain, f"cannot enumerate processes: {e}") from e

        for proc in procs:
            info = proc.info
            status = info.get('status')
            if status == psutil.STATUS_RUNNING:
                running += 1
            elif status in SLEEPING_STATES:
                sleeping += 1
            elif status == psutil.STATUS_ZOMBIE:
                zombie += 1

            mem = info.get('memory_info')
            rows.append(ProcessInfo(
                pid=info['pid'],
                name=info.get('name') or "",
                user=info.get('username') or "",
                cpu_usage=round(float(info.get('cpu_percent') or 0.0), 2),
                mem_usage_mb=round(mem.rss / (1024 * 1024), 2) if mem else 0.0,
            ))

        top_n = self.config.top_n
        stats = ProcessStats(
            total_count=len(rows),
            running_count=running,
            sleeping_count=sleeping,
            zombie_count=zombie,
            top_cpu=top_by_cpu(rows, top_n),
            top_memory=top_by_memory(rows, top_n),
        )
        return ProbeResult(stats=stats)

    def empty(self) -> ProcessStats:
        return ProcessStats()
