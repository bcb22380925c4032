"""
Transport Client.

Owns the WebSocket connection to the collector: connects with per-class
backoff, sends one message per report, reads server frames on a single
reader task and shuts down cooperatively.
"""

import asyncio
import json
import logging
import random
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import aiohttp

from .codec import encode_report
from .config import BackoffConfig, TransportConfig
from .errors import (
    ConnectionLostError,
    FatalConnectionError,
    ServerConnectionError,
    TransientConnectionError,
    TransportError,
)
from .models import MachineReport

logger = logging.getLogger(__name__)

USER_AGENT = "hostpulse/1.0"


class ConnectionState(Enum):
    """Connection states."""
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"


@dataclass
class Backoff:
    """Exponential delay with additive jitter. Never shorter than base_delay."""
    base_delay: float
    max_delay: float
    multiplier: float = 2.0
    jitter: float = 0.0

    def delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        ceiling = max(self.max_delay, self.base_delay)
        delay = min(self.base_delay * (self.multiplier ** max(0, attempt - 1)), ceiling)
        if self.jitter > 0:
            delay += random.uniform(0, delay * self.jitter)
        return delay


def backoff_policies(config: BackoffConfig) -> tuple[Backoff, Backoff]:
    """(transient, server) policies from configuration."""
    transient = Backoff(
        base_delay=config.transient_base_delay,
        max_delay=config.transient_max_delay,
        multiplier=config.multiplier,
        jitter=config.jitter,
    )
    server = Backoff(
        base_delay=config.server_base_delay,
        max_delay=config.server_max_delay,
        multiplier=config.multiplier,
        jitter=config.jitter,
    )
    return transient, server


def _status_error(status: int, message: str) -> TransportError:
    if status >= 500:
        return ServerConnectionError(f"Server error {status}: {message}", status=status)
    return FatalConnectionError(f"Handshake rejected with {status}: {message}", status=status)


def classify_error(exc: BaseException) -> TransportError:
    """Map a raw connect failure onto Transient / Server / Fatal."""
    if isinstance(exc, TransportError):
        return exc
    if isinstance(exc, aiohttp.ClientResponseError):
        # Includes WSServerHandshakeError
        return _status_error(exc.status, exc.message)
    if isinstance(exc, aiohttp.InvalidURL):
        return FatalConnectionError(f"Invalid endpoint URL: {exc}")
    if isinstance(exc, aiohttp.ClientConnectorCertificateError):
        return FatalConnectionError(f"Certificate verification failed: {exc}")
    if isinstance(exc, (aiohttp.ClientError, OSError, asyncio.TimeoutError)):
        return TransientConnectionError(str(exc) or type(exc).__name__)
    return FatalConnectionError(f"Unexpected connection error: {exc!r}")


class TransportClient:
    """
    Persistent, message-oriented connection to the remote collector.

    All writes go through send() under one lock and all reads happen on one
    reader task; callers never touch the socket. Nothing is queued here: a
    send while disconnected raises ConnectionLostError and the caller decides
    what to do with the report.
    """

    def __init__(
        self,
        config: Optional[TransportConfig] = None,
        agent_id: str = "",
        connector: Optional[Callable[[str], Awaitable[Any]]] = None,
    ):
        self.config = config or TransportConfig()
        self.agent_id = agent_id
        self._connector = connector

        self._transient, self._server = backoff_policies(self.config.backoff)

        self._state = ConnectionState.DISCONNECTED
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws = None
        self._reader_task: Optional[asyncio.Task] = None

        self._write_lock = asyncio.Lock()
        self._connect_lock = asyncio.Lock()
        self._closing = asyncio.Event()

        self.refresh_requested = False
        self.attempts = 0
        self.connects = 0
        self.sent = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return (
            self._state == ConnectionState.CONNECTED
            and self._ws is not None
            and not self._ws.closed
        )

    @property
    def closed(self) -> bool:
        """True once shutdown() has been requested."""
        return self._closing.is_set()

    # --------------------------------------------------------
    # CONNECTION
    # --------------------------------------------------------

    async def connect(self) -> bool:
        """
        Connect, retrying transient and server failures indefinitely.

        Returns True once connected, False if shutdown interrupted the
        attempt or the wait. Raises FatalConnectionError without retrying.
        """
        async with self._connect_lock:
            if self.is_connected:
                return True

            failures = 0
            while not self._closing.is_set():
                self._state = ConnectionState.CONNECTING
                self.attempts += 1

                try:
                    ws = await self._attempt()
                except asyncio.CancelledError:
                    self._state = ConnectionState.DISCONNECTED
                    raise
                except Exception as e:
                    self._state = ConnectionState.DISCONNECTED
                    error = classify_error(e)
                    if isinstance(error, FatalConnectionError):
                        logger.error(f"Fatal connection error, not retrying: {error}")
                        if error is e:
                            raise
                        raise error from e

                    failures += 1
                    policy = self._server if isinstance(error, ServerConnectionError) else self._transient
                    delay = policy.delay(failures)
                    logger.warning(
                        f"Connect to {self.config.endpoint_url} failed "
                        f"({type(error).__name__}: {error}); retrying in {delay:.1f}s "
                        f"(attempt {failures})"
                    )
                    if await self._wait_closing(delay):
                        break
                    continue

                if ws is None:
                    break

                self._ws = ws
                self._state = ConnectionState.CONNECTED
                self.connects += 1
                self.refresh_requested = False
                self._reader_task = asyncio.create_task(self._receive_loop(ws))
                logger.info(f"Connected to collector: {self.config.endpoint_url}")
                return True

            self._state = ConnectionState.DISCONNECTED
            return False

    async def refresh_connection(self) -> bool:
        """Drop the current session and connect again."""
        async with self._write_lock:
            ws = self._ws
            if ws is not None:
                await self._drop(ws, "refreshing session")
        return await self.connect()

    async def shutdown(self) -> None:
        """Close the connection and make pending connects and waits return."""
        self._closing.set()

        ws = self._ws
        if ws is not None:
            await self._drop(ws, "shutdown")

        if self._reader_task and not self._reader_task.done():
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._reader_task = None

        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
        self._state = ConnectionState.DISCONNECTED

    async def _attempt(self):
        """One connect attempt raced against shutdown. None if shutdown won."""
        open_task = asyncio.ensure_future(
            asyncio.wait_for(self._open(), timeout=self.config.connect_timeout)
        )
        closing_task = asyncio.ensure_future(self._closing.wait())
        try:
            done, _ = await asyncio.wait(
                {open_task, closing_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            closing_task.cancel()
            if not open_task.done():
                open_task.cancel()

        if open_task in done:
            ws = open_task.result()
            if self._closing.is_set():
                await ws.close()
                return None
            return ws

        try:
            await open_task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.debug(f"Connect attempt abandoned on shutdown: {e}")
        return None

    async def _open(self):
        if self._connector is not None:
            return await self._connector(self.config.endpoint_url)

        session = await self._get_session()
        return await session.ws_connect(
            self.config.endpoint_url,
            headers=self._get_headers(),
            heartbeat=self.config.heartbeat,
        )

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    def _get_headers(self) -> dict:
        """Get handshake headers."""
        headers = {'User-Agent': USER_AGENT}
        if self.agent_id:
            headers['X-Agent-Id'] = self.agent_id
        if self.config.api_key:
            headers['Authorization'] = f'Bearer {self.config.api_key}'
        return headers

    async def _wait_closing(self, delay: float) -> bool:
        """Sleep for delay. True if shutdown cut the wait short."""
        try:
            await asyncio.wait_for(self._closing.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    async def _drop(self, ws, reason: str) -> None:
        """Forget the connection (if still current) and close it."""
        if self._ws is ws:
            self._ws = None
            self._state = ConnectionState.DISCONNECTED
            logger.info(f"Connection closed: {reason}")

            task = self._reader_task
            if task and task is not asyncio.current_task() and not task.done():
                task.cancel()

        if not ws.closed:
            try:
                await ws.close()
            except (aiohttp.ClientError, OSError, RuntimeError) as e:
                logger.debug(f"Error closing connection: {e}")

    # --------------------------------------------------------
    # MESSAGES
    # --------------------------------------------------------

    async def send(self, report: MachineReport) -> None:
        """
        Serialize and send one report.

        Raises SerializationError if the report cannot be encoded (the link is
        untouched) and ConnectionLostError if there is no usable connection.
        """
        payload = encode_report(report, agent_id=self.agent_id, compress=self.config.compress)

        async with self._write_lock:
            ws = self._ws
            if ws is None or ws.closed or self._state != ConnectionState.CONNECTED:
                raise ConnectionLostError("Not connected")

            try:
                if isinstance(payload, bytes):
                    await ws.send_bytes(payload)
                else:
                    await ws.send_str(payload)
            except (aiohttp.ClientError, OSError, RuntimeError) as e:
                await self._drop(ws, f"send failed: {e}")
                raise ConnectionLostError(f"Send failed: {e}") from e

        self.sent += 1

    async def _receive_loop(self, ws) -> None:
        """Single reader: watches for close, errors and refresh requests."""
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._handle_text(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning(f"WebSocket error: {ws.exception()}")
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Error in receive loop: {e}")

        if self._ws is ws:
            await self._drop(ws, "closed by peer")

    def _handle_text(self, data: str) -> None:
        try:
            message = json.loads(data)
        except json.JSONDecodeError:
            logger.debug(f"Ignoring non-JSON frame: {data[:100]}")
            return

        if isinstance(message, dict) and message.get("type") == "refresh":
            logger.info("Collector requested a fresh session")
            self.refresh_requested = True
