"""Tests for hostpulse.aggregator."""

from __future__ import annotations

import threading
import time

import pytest

from conftest import FailingProbe, StaticProbe, static_probes, wait_until
from hostpulse.aggregator import SnapshotAggregator
from hostpulse.collectors.base import ProbeResult
from hostpulse.config import ProbeConfig
from hostpulse.errors import ProbeError
from hostpulse.models import (
    CpuStats,
    MemoryStats,
    NetworkStats,
    PhysicalSensors,
    StorageStats,
    SystemHealth,
)


class CountingNetworkProbe(StaticProbe):
    """Network probe whose byte counter grows by `step` every sample."""

    rate_fields = {"aggregate_rx_bytes_sec": "bytes_recv"}

    def __init__(self, step: float):
        super().__init__("network", NetworkStats(aggregate_rx_packets=1))
        self.step = step
        self.total = 0.0

    def sample(self) -> ProbeResult:
        self.calls += 1
        self.total += self.step
        return ProbeResult(stats=self._stats, counters={"bytes_recv": self.total})


class BlockingSensorsProbe(StaticProbe):
    """Blocks its worker thread until released."""

    def __init__(self):
        super().__init__("sensors", PhysicalSensors(cpu_temp=40.0))
        self.release = threading.Event()

    def sample(self) -> ProbeResult:
        self.calls += 1
        self.release.wait(5)
        return ProbeResult(stats=self._stats)


class SlowProbe(StaticProbe):
    def __init__(self, domain: str, stats, delay: float):
        super().__init__(domain, stats)
        self.delay = delay

    def sample(self) -> ProbeResult:
        time.sleep(self.delay)
        return super().sample()


class WrongTypeProbe(StaticProbe):
    def sample(self) -> ProbeResult:
        self.calls += 1
        return ProbeResult(stats=CpuStats())


class Clock:
    def __init__(self, *values: float):
        self.values = list(values)

    def __call__(self) -> float:
        return self.values.pop(0) if len(self.values) > 1 else self.values[0]


@pytest.fixture
def make_aggregator(metadata_cache):
    created = []

    def factory(probes, **kwargs):
        agg = SnapshotAggregator(metadata_cache, probes, **kwargs)
        created.append(agg)
        return agg

    yield factory
    for agg in created:
        agg.close()


# ── assembly ────────────────────────────────────────────


class TestCollect:
    @pytest.mark.asyncio
    async def test_all_sections_present(self, make_aggregator):
        agg = make_aggregator(static_probes())
        report = await agg.collect()

        assert report.metadata.hostname == "test-host"
        assert report.cpu.core_count == 2
        assert report.memory.total_bytes == 1000
        assert report.sensors.cpu_temp == 50.0
        assert report.health.entropy_avail == 256
        assert agg.ticks == 1
        assert agg.total_failures == 0

    @pytest.mark.asyncio
    async def test_missing_probe_gets_empty_section(self, make_aggregator):
        probes = [p for p in static_probes() if p.domain != "sensors"]
        report = await make_aggregator(probes).collect()
        assert report.sensors == PhysicalSensors()

    def test_rejects_unknown_domain(self, metadata_cache):
        with pytest.raises(ValueError, match="Unknown probe domain"):
            SnapshotAggregator(metadata_cache, [StaticProbe("gpu", CpuStats())])

    def test_rejects_duplicate_domain(self, metadata_cache):
        probes = [StaticProbe("cpu", CpuStats()), StaticProbe("cpu", CpuStats())]
        with pytest.raises(ValueError, match="Duplicate"):
            SnapshotAggregator(metadata_cache, probes)

    @pytest.mark.asyncio
    async def test_timestamps_strictly_increase(self, make_aggregator):
        agg = make_aggregator(static_probes(), wall_clock=lambda: 1000.0)
        stamps = [(await agg.collect()).timestamp for _ in range(3)]
        assert stamps == [1_000_000, 1_000_001, 1_000_002]


# ── rates ───────────────────────────────────────────────


class TestRates:
    @pytest.mark.asyncio
    async def test_first_tick_rates_are_zero(self, make_aggregator):
        agg = make_aggregator(static_probes(network=CountingNetworkProbe(step=500)))
        report = await agg.collect()
        assert report.network.aggregate_rx_bytes_sec == 0
        assert report.network.aggregate_rx_packets == 1

    @pytest.mark.asyncio
    async def test_rate_uses_tick_instants(self, make_aggregator):
        agg = make_aggregator(
            static_probes(network=CountingNetworkProbe(step=500)),
            monotonic=Clock(100.0, 102.0),
        )
        await agg.collect()
        report = await agg.collect()
        assert report.network.aggregate_rx_bytes_sec == 250

    @pytest.mark.asyncio
    async def test_failed_tick_keeps_previous_counters(self, make_aggregator):
        probe = CountingNetworkProbe(step=100)
        agg = make_aggregator(static_probes(network=probe), monotonic=Clock(10.0, 11.0, 12.0))

        await agg.collect()

        def down():
            raise ProbeError("network", "down")

        probe.sample = down
        failed = await agg.collect()
        del probe.sample
        report = await agg.collect()

        assert failed.network == NetworkStats()
        # 100 bytes over the 2s since the last good sample
        assert report.network.aggregate_rx_bytes_sec == 50


# ── failures ────────────────────────────────────────────


class TestProbeFailures:
    @pytest.mark.asyncio
    async def test_failure_isolated_to_its_section(self, make_aggregator):
        failing = FailingProbe("storage", StorageStats, ProbeError("storage", "disk gone"))
        agg = make_aggregator(static_probes(storage=failing))
        report = await agg.collect()

        assert report.storage == StorageStats()
        assert report.cpu.core_count == 2
        assert report.memory.total_bytes == 1000
        assert agg.failures["storage"] == 1
        assert agg.total_failures == 1

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_a_failure(self, make_aggregator):
        failing = FailingProbe("memory", MemoryStats, RuntimeError("boom"))
        agg = make_aggregator(static_probes(memory=failing))
        report = await agg.collect()
        assert report.memory == MemoryStats()
        assert agg.failures["memory"] == 1

    @pytest.mark.asyncio
    async def test_wrong_stats_type_is_a_failure(self, make_aggregator):
        probe = WrongTypeProbe("memory", MemoryStats(total_bytes=5))
        agg = make_aggregator(static_probes(memory=probe))
        report = await agg.collect()
        assert report.memory == MemoryStats()
        assert agg.failures["memory"] == 1

    @pytest.mark.asyncio
    async def test_timeout_and_busy_probe_not_restarted(self, make_aggregator):
        blocking = BlockingSensorsProbe()
        agg = make_aggregator(
            static_probes(sensors=blocking),
            config=ProbeConfig(timeout=0.05),
        )
        try:
            first = await agg.collect()
            assert first.sensors == PhysicalSensors()
            assert first.cpu.core_count == 2
            assert agg.failures["sensors"] == 1

            second = await agg.collect()
            assert second.sensors == PhysicalSensors()
            assert agg.failures["sensors"] == 2
            assert blocking.calls == 1
        finally:
            blocking.release.set()

        await wait_until(lambda: agg._inflight["sensors"].done())
        third = await agg.collect()
        assert third.sensors.cpu_temp == 40.0
        assert blocking.calls == 2

    @pytest.mark.asyncio
    async def test_timeout_starts_when_probe_gets_a_worker(self, make_aggregator):
        probes = [SlowProbe(p.domain, p._stats, delay=0.1) for p in static_probes()]
        agg = make_aggregator(probes, config=ProbeConfig(timeout=0.25, max_concurrency=2))

        # Four waves of 0.1s: later probes wait longer than the timeout in the queue
        report = await agg.collect()

        assert agg.total_failures == 0
        assert report.health.entropy_avail == 256
        assert all(p.calls == 1 for p in probes)

    @pytest.mark.asyncio
    async def test_probe_that_never_gets_a_worker_is_dropped(self, make_aggregator):
        blocking = BlockingSensorsProbe()
        health = StaticProbe("health", SystemHealth(entropy_avail=256))
        agg = make_aggregator(
            [blocking, health],
            config=ProbeConfig(timeout=0.05, max_concurrency=1),
        )
        try:
            first = await agg.collect()
            assert first.health == SystemHealth()
            assert agg.failures["sensors"] == 1
            assert agg.failures["health"] == 1
            assert health.calls == 0
        finally:
            blocking.release.set()

        await wait_until(lambda: agg._inflight["sensors"].done())
        second = await agg.collect()
        assert second.health.entropy_avail == 256
        assert second.sensors.cpu_temp == 40.0
        assert health.calls == 1
