"""
Persistent serial connection to the cash drawer's printer.

The port is opened once and kept open for the life of the process. When
the link errors or closes unexpectedly, a single reconnect is scheduled
after a fixed delay, indefinitely.
"""

import asyncio
import enum
import logging
from typing import Callable

from .transport import SerialTransport, TransportError

logger = logging.getLogger('drawer.bridge.connection')

DEFAULT_RECONNECT_DELAY = 5.0


class ConnectionState(str, enum.Enum):
    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    OPEN = 'open'
    ERROR = 'error'


class ConnectionNotReady(TransportError):
    """Raised when writing while the connection is not open."""


class ConnectionManager:
    """Owns the one serial transport and its reconnect schedule."""

    def __init__(
        self,
        port: str,
        baudrate: int = 9600,
        reconnect_delay: float = DEFAULT_RECONNECT_DELAY,
        transport_factory: Callable[..., SerialTransport] = SerialTransport,
    ):
        self.port = port
        self.baudrate = baudrate
        self.reconnect_delay = reconnect_delay
        self._factory = transport_factory
        self._state = ConnectionState.DISCONNECTED
        self._transport: SerialTransport | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._opened = asyncio.Event()
        self._closing = False
        self.last_error: Exception | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state is ConnectionState.OPEN

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    def _set_state(self, state: ConnectionState):
        if state is not self._state:
            logger.debug(f"{self.port}: {self._state.value} -> {state.value}")
        self._state = state
        if state is ConnectionState.OPEN:
            self._opened.set()
        else:
            self._opened.clear()

    async def connect(self):
        """Open the port unless it is already open or being opened."""
        if self._state in (ConnectionState.OPEN, ConnectionState.CONNECTING):
            return
        self._closing = False
        self._set_state(ConnectionState.CONNECTING)
        await self._discard_transport()

        transport = self._factory(self.port, self.baudrate)
        transport.on('open', lambda: self._on_open(transport))
        transport.on('error', lambda error: self._on_error(transport, error))
        transport.on('close', lambda: self._on_close(transport))
        self._transport = transport

        logger.info(f"Opening serial port {self.port} @ {self.baudrate}")
        await transport.open()

        # Closed or replaced while the open was in flight
        if transport is not self._transport:
            transport.remove_all_listeners()
            await transport.close()

    async def wait_until_open(self, timeout: float) -> bool:
        """Wait up to `timeout` seconds for the link; True if it is open."""
        if self.is_open:
            return True
        try:
            await asyncio.wait_for(self._opened.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return self.is_open

    async def write(self, data: bytes):
        """Write and wait for the flush acknowledgement."""
        transport = self._transport
        if not self.is_open or transport is None:
            raise ConnectionNotReady(f"Serial port {self.port} is {self._state.value}")
        await transport.write(data)
        await transport.drain()

    async def close(self):
        """Stop reconnecting and release the port."""
        self._closing = True
        self._cancel_reconnect()
        await self._discard_transport()
        self._set_state(ConnectionState.DISCONNECTED)
        logger.info(f"Serial port {self.port} closed")

    # ─── Transport events ────────────────────────────────────────────────

    def _on_open(self, transport):
        if transport is not self._transport:
            return
        self.last_error = None
        self._set_state(ConnectionState.OPEN)
        logger.info(f"Serial port {self.port} open")

    def _on_error(self, transport, error: Exception):
        if transport is not self._transport:
            return
        self.last_error = error
        if self._state is ConnectionState.CONNECTING:
            logger.error(f"Could not open {self.port}: {error}")
        else:
            logger.error(f"Serial port {self.port} error: {error}")
        self._set_state(ConnectionState.ERROR)
        self._schedule_reconnect()

    def _on_close(self, transport):
        if transport is not self._transport or self._closing:
            return
        logger.warning(f"Serial port {self.port} closed unexpectedly")
        self._set_state(ConnectionState.ERROR)
        self._schedule_reconnect()

    # ─── Reconnect ───────────────────────────────────────────────────────

    def _schedule_reconnect(self):
        if self._closing or self._reconnect_handle is not None:
            return
        loop = asyncio.get_running_loop()
        logger.info(f"Reconnecting to {self.port} in {self.reconnect_delay:.1f}s")
        self._reconnect_handle = loop.call_later(self.reconnect_delay, self._fire_reconnect)

    def _fire_reconnect(self):
        self._reconnect_handle = None
        if self._closing:
            return
        self._reconnect_task = asyncio.ensure_future(self.connect())

    def _cancel_reconnect(self):
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._reconnect_task = None

    async def _discard_transport(self):
        """Detach listeners first so the old port cannot call back into us."""
        old, self._transport = self._transport, None
        if old is None:
            return
        old.remove_all_listeners()
        try:
            await old.close()
        except Exception as e:
            logger.debug(f"Ignoring error closing stale transport: {e}")
