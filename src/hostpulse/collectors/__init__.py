"""
Source Probes.

Each probe reads one domain of host state for the aggregator.
"""

from typing import Optional

from ..config import ProbeConfig
from .base import CounterSample, Probe, ProbeResult
from .cpu import CpuProbe
from .health import HealthProbe
from .memory import MemoryProbe
from .network import NetworkProbe
from .processes import ProcessProbe
from .security import SecurityProbe
from .sensors import SensorsProbe
from .storage import StorageProbe

__all__ = [
    "CounterSample",
    "Probe",
    "ProbeResult",
    "CpuProbe",
    "MemoryProbe",
    "ProcessProbe",
    "NetworkProbe",
    "StorageProbe",
    "SensorsProbe",
    "SecurityProbe",
    "HealthProbe",
    "default_probes",
]


def default_probes(config: Optional[ProbeConfig] = None) -> list[Probe]:
    """One probe per report section, in report order."""
    return [
        CpuProbe(config),
        MemoryProbe(config),
        ProcessProbe(config),
        NetworkProbe(config),
        StorageProbe(config),
        SensorsProbe(config),
        SecurityProbe(config),
        HealthProbe(config),
    ]
