"""
Agent Errors.

Exception hierarchy shared by the probes, the aggregator and the transport.
"""

from typing import Optional


class AgentError(Exception):
    """Base class for all hostpulse errors."""


class ConfigError(AgentError):
    """Configuration value is missing or impossible."""


class ProbeError(AgentError):
    """One domain's data is unavailable this tick."""

    def __init__(self, domain: str, message: str):
        super().__init__(f"{domain}: {message}")
        self.domain = domain


class MetadataError(AgentError):
    """Identity facts that the agent cannot run without are unavailable."""


class SerializationError(AgentError):
    """A report could not be encoded or decoded."""


class TransportError(AgentError):
    """Base class for connection failures."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TransientConnectionError(TransportError):
    """Local I/O failure (DNS, refused, reset, timeout). Retried quickly."""


class ConnectionLostError(TransientConnectionError):
    """The active connection dropped, or there is none."""


class ServerConnectionError(TransportError):
    """The collector rejected the handshake with a server error."""


class FatalConnectionError(TransportError):
    """Protocol, auth or compatibility failure. Never retried."""
