"""
Snapshot Aggregator.

Runs every probe for a tick on a bounded thread pool, substitutes empty
sections for probes that fail or time out, turns cumulative counters into
rates and assembles one immutable MachineReport.
"""

import asyncio
import logging
import math
import time
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Iterable, Optional

from pydantic import BaseModel

from .collectors.base import CounterSample, Probe, ProbeResult
from .config import ProbeConfig
from .metadata import StaticMetadataCache
from .models import (
    CpuStats,
    MachineReport,
    MemoryStats,
    NetworkStats,
    PhysicalSensors,
    ProcessStats,
    SecurityStats,
    StorageStats,
    SystemHealth,
)

logger = logging.getLogger(__name__)

# Report section -> model. Also the set of domains a probe may claim.
SECTIONS: dict[str, type[BaseModel]] = {
    "cpu": CpuStats,
    "memory": MemoryStats,
    "processes": ProcessStats,
    "network": NetworkStats,
    "storage": StorageStats,
    "sensors": PhysicalSensors,
    "security": SecurityStats,
    "health": SystemHealth,
}


def _consume_result(future: asyncio.Future) -> None:
    # A timed-out sample may finish (or fail) after nobody awaits it
    if not future.cancelled():
        future.exception()


class SnapshotAggregator:
    """
    Produces one MachineReport per call to collect().

    Probe failures never abort a tick: the failing section gets the probe's
    empty value and the failure is counted in `failures`.
    """

    def __init__(
        self,
        metadata: StaticMetadataCache,
        probes: Iterable[Probe],
        config: Optional[ProbeConfig] = None,
        wall_clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.config = config or ProbeConfig()
        self._metadata = metadata
        self._wall_clock = wall_clock
        self._monotonic = monotonic

        self._probes: dict[str, Probe] = {}
        for probe in probes:
            if probe.domain not in SECTIONS:
                raise ValueError(f"Unknown probe domain: {probe.domain}")
            if probe.domain in self._probes:
                raise ValueError(f"Duplicate probe for domain: {probe.domain}")
            self._probes[probe.domain] = probe

        # Probes queued behind a full pool get this long to reach a worker
        waves = math.ceil(len(self._probes) / self.config.max_concurrency) or 1
        self.queue_timeout = self.config.timeout * waves

        self._executor = ThreadPoolExecutor(
            max_workers=self.config.max_concurrency,
            thread_name_prefix="probe",
        )
        self._previous: dict[str, CounterSample] = {}
        self._inflight: dict[str, Future] = {}
        self._last_timestamp = 0

        self.failures: Counter = Counter()
        self.ticks = 0

    async def collect(self) -> MachineReport:
        """Sample every domain once and assemble the report."""
        # One instant per tick, shared by the timestamp and every rate
        wall = self._wall_clock()
        instant = self._monotonic()
        timestamp = max(int(wall * 1000), self._last_timestamp + 1)
        self._last_timestamp = timestamp

        loop = asyncio.get_running_loop()
        # Default executor: metadata never takes a probe worker
        metadata_future = loop.run_in_executor(None, self._metadata.get)

        domains = list(self._probes)
        results = await asyncio.gather(*(
            self._run_probe(loop, self._probes[domain], instant) for domain in domains
        ))
        metadata = await metadata_future

        sections = {domain: model() for domain, model in SECTIONS.items()}
        sections.update(zip(domains, results))

        self.ticks += 1
        return MachineReport(metadata=metadata, timestamp=timestamp, **sections)

    async def _run_probe(
        self,
        loop: asyncio.AbstractEventLoop,
        probe: Probe,
        instant: float,
    ) -> BaseModel:
        domain = probe.domain

        pending = self._inflight.get(domain)
        if pending is not None and not pending.done():
            return self._failed(probe, "previous sample still running")

        started = asyncio.Event()

        def sample() -> ProbeResult:
            loop.call_soon_threadsafe(started.set)
            return probe.sample()

        job = self._executor.submit(sample)
        self._inflight[domain] = job
        future = asyncio.wrap_future(job, loop=loop)
        future.add_done_callback(_consume_result)

        # The timeout covers the sample itself, not the time spent queued
        # behind other probes for a worker
        waiter = asyncio.ensure_future(started.wait())
        try:
            await asyncio.wait(
                {waiter, future},
                timeout=self.queue_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            waiter.cancel()
        if not started.is_set() and not future.done() and job.cancel():
            return self._failed(probe, f"no free worker within {self.queue_timeout:.1f}s")

        try:
            # shield: a timed-out sample keeps running on its thread
            result = await asyncio.wait_for(asyncio.shield(future), timeout=self.config.timeout)
        except asyncio.TimeoutError:
            return self._failed(probe, f"timed out after {self.config.timeout}s")
        except Exception as e:
            return self._failed(probe, str(e) or type(e).__name__)

        if not isinstance(result, ProbeResult) or not isinstance(result.stats, SECTIONS[domain]):
            return self._failed(probe, f"returned {type(result).__name__}, not {SECTIONS[domain].__name__}")

        current = CounterSample(values=dict(result.counters), instant=instant)
        try:
            stats = probe.derive(result.stats, self._previous.get(domain), current)
        except Exception as e:
            return self._failed(probe, f"rate computation failed: {e}")

        if result.counters:
            self._previous[domain] = current
        return stats

    def _failed(self, probe: Probe, reason: str) -> BaseModel:
        self.failures[probe.domain] += 1
        logger.warning(f"Probe [{probe.domain}] failed: {reason}")
        return probe.empty()

    @property
    def total_failures(self) -> int:
        return sum(self.failures.values())

    def close(self) -> None:
        """Release the worker threads. Running samples finish on their own, queued ones are dropped."""
        self._executor.shutdown(wait=False, cancel_futures=True)
