from __future__ import annotations

import asyncio
import time
from types import SimpleNamespace
from typing import Callable

import aiohttp
import pytest

from hostpulse.collectors.base import Probe, ProbeResult
from hostpulse.config import BackoffConfig, TransportConfig
from hostpulse.errors import ConnectionLostError
from hostpulse.metadata import StaticMetadataCache
from hostpulse.models import (
    CpuStats,
    MachineReport,
    MemoryStats,
    Metadata,
    NetworkStats,
    PhysicalSensors,
    ProcessStats,
    SecurityStats,
    StorageStats,
    SystemHealth,
)


# ── reports ─────────────────────────────────────────────


def make_report(timestamp: int = 1_700_000_000_000, hostname: str = "test-host") -> MachineReport:
    """A small but fully populated report."""
    return MachineReport(
        metadata=Metadata(machine_id="abc123", hostname=hostname, os_distro="TestOS 1"),
        cpu=CpuStats(usage_total_pct=12.5, core_count=2, threads_usage=(10.0, 15.0),
                     threads_freq_mhz=(2400, 2400)),
        memory=MemoryStats(total_bytes=8 * 1024 ** 3, used_bytes=2 * 1024 ** 3,
                           available_bytes=6 * 1024 ** 3),
        processes=ProcessStats(total_count=3, running_count=1, sleeping_count=2),
        network=NetworkStats(interface_ips={"eth0": ("10.0.0.5",)}, listening_ports=(22, 80)),
        storage=StorageStats(),
        sensors=PhysicalSensors(),
        security=SecurityStats(active_users=1),
        health=SystemHealth(entropy_avail=256),
        timestamp=timestamp,
    )


# ── probes ──────────────────────────────────────────────


class StaticProbe(Probe):
    """Probe that returns fixed stats for its domain."""

    def __init__(self, domain: str, stats, counters: dict | None = None):
        super().__init__()
        self.domain = domain
        self._stats = stats
        self._counters = counters or {}
        self.calls = 0

    def sample(self) -> ProbeResult:
        self.calls += 1
        return ProbeResult(stats=self._stats, counters=dict(self._counters))

    def empty(self):
        return type(self._stats)()


class FailingProbe(StaticProbe):
    """Probe whose sample() always raises."""

    def __init__(self, domain: str, model, error: Exception):
        super().__init__(domain, model())
        self._error = error

    def sample(self) -> ProbeResult:
        self.calls += 1
        raise self._error


def static_probes(**overrides: Probe) -> list[Probe]:
    """One healthy probe per section; pass domain=probe to replace one."""
    probes = {
        "cpu": StaticProbe("cpu", CpuStats(usage_total_pct=12.5, core_count=2,
                                           threads_usage=(10.0, 15.0),
                                           threads_freq_mhz=(2400, 2400))),
        "memory": StaticProbe("memory", MemoryStats(total_bytes=1000, used_bytes=400,
                                                    available_bytes=600)),
        "processes": StaticProbe("processes", ProcessStats(total_count=3, running_count=1)),
        "network": StaticProbe("network", NetworkStats(aggregate_rx_packets=10)),
        "storage": StaticProbe("storage", StorageStats()),
        "sensors": StaticProbe("sensors", PhysicalSensors(cpu_temp=50.0)),
        "security": StaticProbe("security", SecurityStats(active_users=2)),
        "health": StaticProbe("health", SystemHealth(entropy_avail=256)),
    }
    probes.update(overrides)
    return list(probes.values())


@pytest.fixture
def metadata_cache(tmp_path) -> StaticMetadataCache:
    machine_id = tmp_path / "machine-id"
    machine_id.write_text("abc123\n")
    dmi = tmp_path / "dmi"
    dmi.mkdir()
    (dmi / "sys_vendor").write_text("QEMU\n")
    timezone = tmp_path / "timezone"
    timezone.write_text("Europe/Lisbon\n")

    return StaticMetadataCache(
        machine_id_paths=[str(machine_id)],
        dmi_dir=str(dmi),
        timezone_file=str(timezone),
        localtime_link=str(tmp_path / "missing-localtime"),
        hostname_fn=lambda: "test-host",
        distro_fn=lambda: "TestOS 1",
    )


# ── transport fakes ─────────────────────────────────────


class FakeWebSocket:
    """Enough of aiohttp.ClientWebSocketResponse for the transport client."""

    def __init__(self, fail_send: bool = False):
        self.sent: list = []
        self.closed = False
        self.fail_send = fail_send
        self._incoming: asyncio.Queue = asyncio.Queue()

    async def send_str(self, data: str) -> None:
        if self.closed or self.fail_send:
            raise ConnectionResetError("Cannot write to closing transport")
        self.sent.append(data)

    async def send_bytes(self, data: bytes) -> None:
        if self.closed or self.fail_send:
            raise ConnectionResetError("Cannot write to closing transport")
        self.sent.append(data)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._incoming.put_nowait(None)

    def exception(self):
        return None

    def feed_text(self, data: str) -> None:
        self._incoming.put_nowait(SimpleNamespace(type=aiohttp.WSMsgType.TEXT, data=data))

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if item is None:
            raise StopAsyncIteration
        return item


def fast_config(url: str = "ws://collector.test/stream", **backoff) -> TransportConfig:
    settings = dict(transient_base_delay=0.01, transient_max_delay=0.05,
                    server_base_delay=0.01, server_max_delay=0.05, jitter=0.0)
    settings.update(backoff)
    return TransportConfig(
        endpoint_url=url,
        connect_timeout=2.0,
        heartbeat=None,
        backoff=BackoffConfig(**settings),
    )


class ScriptedConnector:
    """Connector that replays a script of exceptions and sockets."""

    def __init__(self, *steps):
        self.steps = list(steps)
        self.calls = 0

    async def __call__(self, url: str):
        self.calls += 1
        step = self.steps.pop(0) if len(self.steps) > 1 else self.steps[0]
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            return await step()
        return step


class FakeTransport:
    """Stands in for TransportClient in scheduler tests."""

    def __init__(self, connected: bool = False):
        self.up = asyncio.Event()
        if connected:
            self.up.set()
        self.sent: list[MachineReport] = []
        self.refresh_requested = False
        self.fail_sends = 0
        self.send_error: Exception | None = None
        self.connect_error: Exception | None = None
        self.connects = 0
        self.attempts = 0
        self.shut_down = False
        self.state = SimpleNamespace(value="FAKE")

    @property
    def is_connected(self) -> bool:
        return self.up.is_set()

    async def connect(self) -> bool:
        self.attempts += 1
        if self.connect_error is not None:
            raise self.connect_error
        await self.up.wait()
        self.connects += 1
        self.refresh_requested = False
        return True

    async def refresh_connection(self) -> bool:
        self.refresh_requested = False
        return await self.connect()

    async def send(self, report: MachineReport) -> None:
        if not self.is_connected:
            raise ConnectionLostError("Not connected")
        if self.send_error is not None:
            raise self.send_error
        if self.fail_sends:
            self.fail_sends -= 1
            self.up.clear()
            raise ConnectionLostError("Send failed: reset")
        self.sent.append(report)

    async def shutdown(self) -> None:
        self.shut_down = True


class FakeAggregator:
    """Produces reports with timestamps 1, 2, 3, ..."""

    def __init__(self):
        self.ticks = 0
        self.failures: dict = {}

    async def collect(self) -> MachineReport:
        self.ticks += 1
        return make_report(timestamp=self.ticks)


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until predicate() is true or fail the test."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)
