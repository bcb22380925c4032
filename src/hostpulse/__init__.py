"""
Hostpulse - host telemetry agent.

Samples CPU, memory, processes, network, storage, sensors, security and
health into one report per tick and streams the reports to a remote
collector over a persistent WebSocket connection.
"""

from .agent import TelemetryAgent
from .aggregator import SnapshotAggregator
from .buffer import ReportBuffer
from .config import AgentConfig
from .metadata import StaticMetadataCache
from .models import MachineReport
from .scheduler import Scheduler
from .transport import ConnectionState, TransportClient

__version__ = "1.0.0"

__all__ = [
    "TelemetryAgent",
    "SnapshotAggregator",
    "ReportBuffer",
    "AgentConfig",
    "StaticMetadataCache",
    "MachineReport",
    "Scheduler",
    "ConnectionState",
    "TransportClient",
]
