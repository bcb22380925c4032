"""
Probe Base Class.

A probe reads one domain of host state. sample() blocks (psutil, /proc,
subprocess) and is run on a worker thread by the aggregator.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional

from pydantic import BaseModel

from ..config import ProbeConfig


@dataclass
class CounterSample:
    """Cumulative counters captured at a tick instant (monotonic seconds)."""
    values: dict[str, float]
    instant: float


@dataclass
class ProbeResult:
    """What sample() returns: finished stats plus raw counters for rates."""
    stats: BaseModel
    counters: dict[str, float] = field(default_factory=dict)


def per_second(
    previous: Optional[CounterSample],
    current: CounterSample,
    counter: str,
) -> float:
    """Delta of a cumulative counter divided by elapsed time. 0 without history."""
    if previous is None:
        return 0.0
    elapsed = current.instant - previous.instant
    if elapsed <= 0:
        return 0.0
    if counter not in previous.values or counter not in current.values:
        return 0.0
    delta = current.values[counter] - previous.values[counter]
    # Counter reset or wrap
    if delta < 0:
        return 0.0
    return delta / elapsed


def counter_delta(
    previous: Optional[CounterSample],
    current: CounterSample,
    counter: str,
) -> float:
    """Non-negative delta of a cumulative counter between two samples."""
    if previous is None:
        return 0.0
    if counter not in previous.values or counter not in current.values:
        return 0.0
    return max(0.0, current.values[counter] - previous.values[counter])


class Probe(ABC):
    """Abstract base for all domain probes."""

    domain: str = "base"

    # Output field -> counter name. Filled with a per-second rate by derive().
    rate_fields: dict[str, str] = {}

    def __init__(self, config: Optional[ProbeConfig] = None):
        self.config = config or ProbeConfig()

    @abstractmethod
    def sample(self) -> ProbeResult:
        """Read the domain. Raise ProbeError (or any exception) on failure."""

    @abstractmethod
    def empty(self) -> BaseModel:
        """Documented empty value used when the probe fails."""

    def derive(
        self,
        stats: BaseModel,
        previous: Optional[CounterSample],
        current: CounterSample,
    ) -> BaseModel:
        """Fill rate fields from two consecutive counter samples."""
        if not self.rate_fields:
            return stats
        update = {
            name: int(round(per_second(previous, current, counter)))
            for name, counter in self.rate_fields.items()
        }
        return stats.model_copy(update=update)
