"""
Agent Configuration.

Dataclass tree with YAML and environment loaders.
"""

import dataclasses
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict

from .errors import ConfigError


class Settings(BaseSettings):
    """Overrides read from HOSTPULSE_* environment variables or a .env file."""

    model_config = SettingsConfigDict(
        env_prefix="HOSTPULSE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    agent_id: Optional[str] = None
    endpoint_url: Optional[str] = None
    api_key: Optional[str] = None
    sampling_interval: Optional[float] = None
    top_n: Optional[int] = None
    buffer_capacity: Optional[int] = None
    log_level: Optional[str] = None
    log_file: Optional[Path] = None


@dataclass
class ProbeConfig:
    """Source probe settings."""
    timeout: float = 5.0  # seconds per probe
    max_concurrency: int = 8
    top_n: int = 5
    cpu_sample_interval: float = 0.1
    auth_log_path: str = "/var/log/auth.log"
    exclude_fstypes: list[str] = field(default_factory=lambda: [
        "squashfs", "tmpfs", "devtmpfs", "overlay", "proc", "sysfs",
        "cgroup", "cgroup2", "devpts", "autofs", "fuse.lxcfs", "nsfs",
    ])
    exclude_interfaces: list[str] = field(default_factory=lambda: [
        "lo", "veth", "docker", "br-", "virbr",
    ])


@dataclass
class BackoffConfig:
    """Reconnect delays per failure class."""
    transient_base_delay: float = 1.0
    transient_max_delay: float = 30.0
    server_base_delay: float = 5.0
    server_max_delay: float = 120.0
    multiplier: float = 2.0
    jitter: float = 0.1  # fraction of the delay, only ever added


@dataclass
class TransportConfig:
    """Collector connection settings."""
    endpoint_url: str = "ws://127.0.0.1:8200/api/v1/stream"
    api_key: Optional[str] = None
    connect_timeout: float = 10.0
    heartbeat: Optional[float] = 30.0
    compress: bool = False
    backoff: BackoffConfig = field(default_factory=BackoffConfig)


@dataclass
class BufferConfig:
    """Bounded report buffer used while the link is down."""
    capacity: int = 10


@dataclass
class AgentConfig:
    """Main agent configuration."""
    agent_id: str = field(default_factory=lambda: socket.gethostname())
    agent_version: str = "1.0.0"

    sampling_interval: float = 10.0  # seconds
    max_serialization_failures: int = 5

    probes: ProbeConfig = field(default_factory=ProbeConfig)
    transport: TransportConfig = field(default_factory=TransportConfig)
    buffer: BufferConfig = field(default_factory=BufferConfig)

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @classmethod
    def from_yaml(cls, path: str) -> "AgentConfig":
        """Load configuration from YAML file."""
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
        config = cls._from_dict(data)
        config.validate()
        return config

    @classmethod
    def from_env(cls, base: Optional["AgentConfig"] = None) -> "AgentConfig":
        """Apply HOSTPULSE_* environment overrides on top of base (or defaults)."""
        config = base or cls()
        settings = Settings()

        if settings.agent_id:
            config.agent_id = settings.agent_id
        if settings.endpoint_url:
            config.transport.endpoint_url = settings.endpoint_url
        if settings.api_key:
            config.transport.api_key = settings.api_key
        if settings.sampling_interval is not None:
            config.sampling_interval = settings.sampling_interval
        if settings.top_n is not None:
            config.probes.top_n = settings.top_n
        if settings.buffer_capacity is not None:
            config.buffer.capacity = settings.buffer_capacity
        if settings.log_level:
            config.log_level = settings.log_level
        if settings.log_file:
            config.log_file = str(settings.log_file)

        config.validate()
        return config

    @classmethod
    def _from_dict(cls, data: dict) -> "AgentConfig":
        """Create config from dictionary."""
        config = cls()

        for key in ["agent_id", "sampling_interval", "max_serialization_failures",
                    "log_level", "log_file"]:
            if key in data:
                setattr(config, key, data[key])

        if "probes" in data:
            config.probes = ProbeConfig(**data["probes"])

        if "transport" in data:
            transport = dict(data["transport"])
            backoff = transport.pop("backoff", None)
            config.transport = TransportConfig(**transport)
            if backoff:
                config.transport.backoff = BackoffConfig(**backoff)

        if "buffer" in data:
            config.buffer = BufferConfig(**data["buffer"])

        return config

    def validate(self) -> None:
        """Reject values the agent cannot run with."""
        if self.sampling_interval <= 0:
            raise ConfigError(f"sampling_interval must be positive, got {self.sampling_interval}")
        if self.buffer.capacity < 1:
            raise ConfigError(f"buffer.capacity must be at least 1, got {self.buffer.capacity}")
        if self.probes.top_n < 0:
            raise ConfigError(f"probes.top_n must not be negative, got {self.probes.top_n}")
        if self.probes.timeout <= 0:
            raise ConfigError(f"probes.timeout must be positive, got {self.probes.timeout}")
        if self.probes.max_concurrency < 1:
            raise ConfigError("probes.max_concurrency must be at least 1")
        if not self.transport.endpoint_url:
            raise ConfigError("transport.endpoint_url is required")

        backoff = self.transport.backoff
        if backoff.transient_base_delay < 0 or backoff.server_base_delay < 0:
            raise ConfigError("backoff base delays must not be negative")
        if backoff.multiplier < 1:
            raise ConfigError("backoff.multiplier must be at least 1")

    def to_yaml(self, path: str) -> None:
        """Save configuration to YAML file."""
        with open(path, 'w') as f:
            yaml.safe_dump(dataclasses.asdict(self), f, default_flow_style=False, sort_keys=False)
