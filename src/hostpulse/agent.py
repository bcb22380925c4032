"""
Hostpulse Agent - Main Daemon.

Wires the metadata cache, probes, aggregator, transport and scheduler
together and runs them until a signal or a fatal error stops the agent.
"""

import asyncio
import logging
import signal
from typing import Optional

from .aggregator import SnapshotAggregator
from .buffer import ReportBuffer
from .collectors import default_probes
from .config import AgentConfig
from .metadata import StaticMetadataCache
from .models import MachineReport
from .scheduler import Scheduler
from .transport import TransportClient
from .utils import setup_logging

logger = logging.getLogger(__name__)


class TelemetryAgent:
    """
    Main agent daemon.

    Samples the host every `sampling_interval` seconds and streams each
    report to the collector.
    """

    def __init__(self, config: Optional[AgentConfig] = None):
        """Initialize the agent."""
        self.config = config or AgentConfig.from_env()

        self.metadata = StaticMetadataCache()
        self.aggregator = SnapshotAggregator(
            self.metadata,
            default_probes(self.config.probes),
            self.config.probes,
        )
        self.transport = TransportClient(
            self.config.transport,
            agent_id=self.config.agent_id,
        )
        self.buffer = ReportBuffer(self.config.buffer.capacity)
        self.scheduler = Scheduler(
            self.aggregator,
            self.transport,
            self.buffer,
            interval=self.config.sampling_interval,
            max_serialization_failures=self.config.max_serialization_failures,
        )

        self._stop_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        """
        Run until stopped.

        Raises MetadataError when the hostname cannot be read and
        FatalConnectionError when the collector refuses the agent.
        """
        loop = asyncio.get_running_loop()

        # Hostname failure must abort here, before any tick
        facts = await loop.run_in_executor(None, self.metadata.static)
        logger.info(f"Starting hostpulse agent {self.config.agent_id} on {facts.hostname}")
        logger.info(f"Collector URL: {self.config.transport.endpoint_url}")

        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(sig, self._request_stop)
            except (NotImplementedError, RuntimeError):
                # Not supported on this platform or outside the main thread
                pass

        try:
            await self.scheduler.run()
        finally:
            await self.transport.shutdown()
            self.aggregator.close()
            logger.info(f"Agent stopped: {self.scheduler.get_stats()}")

    def _request_stop(self) -> None:
        if self._stop_task is None:
            self._stop_task = asyncio.create_task(self.stop())

    async def stop(self) -> None:
        """Stop the agent."""
        logger.info("Stopping agent...")
        await self.scheduler.stop()

    async def snapshot(self) -> MachineReport:
        """Collect a single report without connecting anywhere."""
        try:
            return await self.aggregator.collect()
        finally:
            self.aggregator.close()


def run_agent(config: Optional[AgentConfig] = None) -> None:
    """Run the agent in the foreground."""
    config = config or AgentConfig.from_env()
    setup_logging(config.log_level, config.log_file)

    agent = TelemetryAgent(config)
    try:
        asyncio.run(agent.start())
    except KeyboardInterrupt:
        pass
