"""
Scheduler.

Two concurrent activities joined by the bounded ReportBuffer: the sampling
loop produces one report per interval, the sending loop keeps the link up
and delivers buffered reports oldest first. A slow or dead link never
delays sampling.
"""

import asyncio
import logging
from typing import Optional

from .aggregator import SnapshotAggregator
from .buffer import ReportBuffer
from .errors import ConnectionLostError, SerializationError
from .models import MachineReport
from .transport import TransportClient

logger = logging.getLogger(__name__)


class Scheduler:
    """Drives periodic sampling and applies backpressure while disconnected."""

    def __init__(
        self,
        aggregator: SnapshotAggregator,
        transport: TransportClient,
        buffer: ReportBuffer,
        interval: float = 10.0,
        max_serialization_failures: int = 5,
    ):
        self.aggregator = aggregator
        self.transport = transport
        self.buffer = buffer
        self.interval = interval
        self.max_serialization_failures = max_serialization_failures

        self._stop = asyncio.Event()
        self._serialization_streak = 0

        self.sent = 0
        self.dropped = 0  # reports that could not be serialized

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def run(self) -> None:
        """
        Run until stop() is called.

        Raises FatalConnectionError from the transport, or SerializationError
        after too many consecutive reports failed to encode.
        """
        sampler = asyncio.create_task(self.sample_loop(), name="hostpulse-sampler")
        sender = asyncio.create_task(self.send_loop(), name="hostpulse-sender")
        stopper = asyncio.create_task(self._stop.wait())

        try:
            done, _ = await asyncio.wait(
                {sampler, sender, stopper},
                return_when=asyncio.FIRST_COMPLETED,
            )
            for task in done:
                if task is not stopper and not task.cancelled() and task.exception():
                    raise task.exception()
        finally:
            self._stop.set()
            stopper.cancel()
            sender.cancel()
            # The sampler leaves at the next tick boundary; in-flight probes
            # finish or time out on their own
            await asyncio.gather(sampler, sender, stopper, return_exceptions=True)

    async def stop(self) -> None:
        """Stop issuing ticks and close the link."""
        if not self._stop.is_set():
            logger.info("Scheduler stopping")
        self._stop.set()
        await self.transport.shutdown()

    # --------------------------------------------------------
    # SAMPLING
    # --------------------------------------------------------

    async def sample_once(self) -> MachineReport:
        """Collect one report and hand it to the buffer."""
        report = await self.aggregator.collect()
        evicted = self.buffer.offer(report)
        if evicted is not None:
            logger.warning(
                f"Report buffer full ({self.buffer.capacity}), dropped oldest report "
                f"from {evicted.timestamp}"
            )
        return report

    async def sample_loop(self) -> None:
        """Tick at a fixed cadence; missed ticks are skipped, not bunched up."""
        loop = asyncio.get_running_loop()
        next_tick = loop.time()

        while not self._stop.is_set():
            try:
                await self.sample_once()
            except Exception as e:
                logger.error(f"Sampling error: {e}")

            next_tick += self.interval
            delay = next_tick - loop.time()
            if delay < 0:
                logger.warning(f"Tick took longer than the {self.interval}s interval")
                next_tick = loop.time()
                delay = 0
            if await self._wait_stop(delay):
                break

    async def _wait_stop(self, delay: float) -> bool:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    # --------------------------------------------------------
    # SENDING
    # --------------------------------------------------------

    async def send_loop(self) -> None:
        """Keep the link up and deliver buffered reports in capture order."""
        while not self._stop.is_set():
            if self.transport.refresh_requested and self.transport.is_connected:
                await self.transport.refresh_connection()

            if not self.transport.is_connected:
                if not await self.transport.connect():
                    break
                if len(self.buffer):
                    logger.info(f"Flushing {len(self.buffer)} buffered reports")

            report = await self.buffer.get()

            # The link may have been refreshed or lost while waiting for a report.
            # Nothing ran since get() returned, so the head slot is still free.
            if self.transport.refresh_requested or not self.transport.is_connected:
                self.buffer.requeue(report)
                continue

            await self._deliver(report)

    async def _deliver(self, report: MachineReport) -> None:
        try:
            await self.transport.send(report)
        except SerializationError as e:
            self.dropped += 1
            self._serialization_streak += 1
            logger.error(f"Dropping report {report.timestamp}: {e}")
            if self._serialization_streak >= self.max_serialization_failures:
                raise
            return
        except ConnectionLostError as e:
            if self.buffer.requeue(report):
                logger.warning(f"{e}; report {report.timestamp} kept for retry")
            else:
                logger.warning(f"{e}; buffer full, report {report.timestamp} dropped")
            return

        self._serialization_streak = 0
        self.sent += 1

    def get_stats(self) -> dict:
        """Scheduler statistics."""
        return {
            'ticks': self.aggregator.ticks,
            'probe_failures': dict(self.aggregator.failures),
            'sent': self.sent,
            'dropped_serialization': self.dropped,
            'buffer': self.buffer.get_stats(),
            'connection': self.transport.state.value,
            'connect_attempts': self.transport.attempts,
        }
