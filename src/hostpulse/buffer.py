"""
Report Buffer.

Bounded in-memory channel between the sampling loop and the sending loop.
When full, the oldest report is evicted: stale telemetry is worth less than
fresh telemetry, and memory stays bounded during long outages.
"""

import asyncio
from collections import deque
from typing import Optional

from .models import MachineReport


class ReportBuffer:
    """
    FIFO of reports in capture order with drop-oldest eviction.

    Single event loop only; producers call offer(), the consumer awaits get()
    and hands a report back with requeue() when it could not be delivered.
    """

    def __init__(self, capacity: int = 10):
        if capacity < 1:
            raise ValueError(f"capacity must be at least 1, got {capacity}")
        self.capacity = capacity
        self._items: deque[MachineReport] = deque()
        self._not_empty = asyncio.Event()

        self.evicted = 0
        self.accepted = 0

    def __len__(self) -> int:
        return len(self._items)

    def offer(self, report: MachineReport) -> Optional[MachineReport]:
        """Append a report. Returns the evicted report when the buffer was full."""
        evicted = None
        if len(self._items) >= self.capacity:
            evicted = self._items.popleft()
            self.evicted += 1

        self._items.append(report)
        self.accepted += 1
        self._not_empty.set()
        return evicted

    def requeue(self, report: MachineReport) -> bool:
        """
        Put an undelivered report back at the head.

        Returns False (report dropped) when newer reports already fill the
        buffer, which is what drop-oldest eviction would do anyway.
        """
        if len(self._items) >= self.capacity:
            self.evicted += 1
            return False
        self._items.appendleft(report)
        self._not_empty.set()
        return True

    async def get(self) -> MachineReport:
        """Wait for and remove the oldest report."""
        while not self._items:
            self._not_empty.clear()
            await self._not_empty.wait()
        report = self._items.popleft()
        if not self._items:
            self._not_empty.clear()
        return report

    def get_nowait(self) -> Optional[MachineReport]:
        if not self._items:
            return None
        report = self._items.popleft()
        if not self._items:
            self._not_empty.clear()
        return report

    def snapshot(self) -> list[MachineReport]:
        """Buffered reports, oldest first, without removing them."""
        return list(self._items)

    def get_stats(self) -> dict:
        """Get buffer statistics."""
        return {
            'buffered': len(self._items),
            'capacity': self.capacity,
            'accepted': self.accepted,
            'evicted': self.evicted,
            'oldest_timestamp': self._items[0].timestamp if self._items else None,
        }
