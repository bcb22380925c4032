"""
Report Data Model.

Immutable snapshot of a machine at one instant. Every section has a
documented empty value so that a failed probe degrades only its own part
of the report.
"""

from types import MappingProxyType
from typing import Mapping

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class Metadata(_Frozen):
    """Identity facts. Static for the process lifetime except uptime/boot_time."""
    machine_id: str = ""
    hostname: str = ""
    os_distro: str = "unknown"
    kernel_version: str = ""
    virtualization: str = "Physical"
    timezone: str = "Unknown"
    bios_vendor: str = ""
    bios_version: str = ""
    bios_serial: str = ""
    uptime: int = 0  # seconds
    boot_time: int = 0  # unix seconds


class CpuStats(_Frozen):
    """CPU statistics."""
    usage_total_pct: float = Field(default=0.0, ge=0.0, le=100.0)
    load_avg: tuple[float, float, float] = (0.0, 0.0, 0.0)
    core_count: int = 0
    threads_usage: tuple[float, ...] = ()
    threads_freq_mhz: tuple[int, ...] = ()
    interrupts_sec: int = 0
    context_switches_sec: int = 0
    io_wait_time: float = 0.0  # percent of CPU time between two ticks
    idle_time: int = 0  # cumulative idle seconds
    voltage_vcore: float = 0.0


class MemoryStats(_Frozen):
    """Memory statistics, in bytes."""
    total_bytes: int = 0
    used_bytes: int = 0
    available_bytes: int = 0
    buffers_cache_bytes: int = 0
    swap_total_bytes: int = 0
    swap_used_bytes: int = 0
    page_faults_minor_sec: int = 0
    page_faults_major_sec: int = 0


class ProcessInfo(_Frozen):
    """One row of the process table, valid only for the tick that produced it."""
    pid: int
    name: str = ""
    user: str = ""
    cpu_usage: float = 0.0
    mem_usage_mb: float = 0.0


class ProcessStats(_Frozen):
    """Census of the process table plus the heaviest consumers."""
    total_count: int = 0
    running_count: int = 0
    sleeping_count: int = 0
    zombie_count: int = 0
    top_cpu: tuple[ProcessInfo, ...] = ()
    top_memory: tuple[ProcessInfo, ...] = ()


class NetworkStats(_Frozen):
    """Network statistics aggregated over physical interfaces."""
    aggregate_rx_bytes_sec: int = 0
    aggregate_tx_bytes_sec: int = 0
    aggregate_rx_packets: int = 0
    aggregate_tx_packets: int = 0
    total_errors: int = 0
    total_drops: int = 0
    interface_ips: Mapping[str, tuple[str, ...]] = Field(default_factory=lambda: MappingProxyType({}))
    tcp_active_connections: int = 0
    tcp_time_wait_connections: int = 0
    listening_ports: tuple[int, ...] = ()

    @field_validator("interface_ips")
    @classmethod
    def freeze_interface_ips(cls, value: Mapping[str, tuple[str, ...]]) -> Mapping[str, tuple[str, ...]]:
        # frozen=True does not reach inside containers
        return MappingProxyType(dict(value))

    @field_serializer("interface_ips")
    def dump_interface_ips(self, value: Mapping[str, tuple[str, ...]]) -> dict[str, tuple[str, ...]]:
        return dict(value)


class PartitionInfo(_Frozen):
    """One mounted real filesystem."""
    mount_point: str
    device: str = ""
    fstype: str = ""
    usage_pct: float = Field(default=0.0, ge=0.0, le=100.0)
    free_bytes: int = 0
    used_bytes: int = 0
    total_bytes: int = 0


class StorageStats(_Frozen):
    """Storage statistics."""
    partitions: tuple[PartitionInfo, ...] = ()
    total_read_bytes_sec: int = 0
    total_write_bytes_sec: int = 0
    total_read_iops: int = 0
    total_write_iops: int = 0
    io_latency_ms: float = 0.0


class PhysicalSensors(_Frozen):
    """Hardware sensors, mostly empty on virtual machines."""
    cpu_temp: float = 0.0
    core_temps: tuple[float, ...] = ()
    storage_temps: tuple[float, ...] = ()
    fan_speeds: tuple[int, ...] = ()


class SecurityStats(_Frozen):
    """Security posture."""
    last_login: str = ""
    firewall_active: bool = False
    active_users: int = 0
    sudo_failures: int = 0


class SystemHealth(_Frozen):
    """Miscellaneous health facts."""
    entropy_avail: int = 0
    ntp_offset_ms: float = 0.0
    battery_status: str = ""


class MachineReport(_Frozen):
    """Complete point-in-time report for one tick."""
    metadata: Metadata
    cpu: CpuStats
    memory: MemoryStats
    processes: ProcessStats
    network: NetworkStats
    storage: StorageStats
    sensors: PhysicalSensors
    security: SecurityStats
    health: SystemHealth
    timestamp: int  # unix epoch, milliseconds
