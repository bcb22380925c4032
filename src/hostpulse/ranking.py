"""Top-N selection over process rows."""

import heapq
from typing import Iterable

from .models import ProcessInfo


def top_by_cpu(rows: Iterable[ProcessInfo], n: int) -> tuple[ProcessInfo, ...]:
    """Highest cpu_usage first, ties broken by ascending pid."""
    if n <= 0:
        return ()
    return tuple(heapq.nsmallest(n, rows, key=lambda p: (-p.cpu_usage, p.pid)))


def top_by_memory(rows: Iterable[ProcessInfo], n: int) -> tuple[ProcessInfo, ...]:
    """Highest mem_usage_mb first, ties broken by ascending pid."""
    if n <= 0:
        return ()
    return tuple(heapq.nsmallest(n, rows, key=lambda p: (-p.mem_usage_mb, p.pid)))
