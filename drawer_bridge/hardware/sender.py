"""
Drawer command delivery.

Bytes go out on the first viable path, in order:

1. the persistent serial connection, when configured and ready;
2. the OS print spooler, when a printer name is configured;
3. a throw-away serial connection, when only the port is configured.

Writes on the persistent link are serialized through a WriteLock.
"""

import asyncio
import logging
from typing import Awaitable, Callable

from .connection import ConnectionManager
from .spooler import PrinterSpooler
from .transport import write_once

logger = logging.getLogger('drawer.bridge.sender')

DEFAULT_READY_TIMEOUT = 3.0
DEFAULT_LOCK_TIMEOUT = 5.0

PATH_SERIAL = 'serial'
PATH_SPOOLER = 'spooler'
PATH_ONE_SHOT = 'one-shot'


class DeliveryError(Exception):
    """Raised when no delivery path is configured or the chosen path failed."""


class WriteLock:
    """Single-writer flag with a bounded acquire."""

    def __init__(self):
        self._held = False
        self._cond = asyncio.Condition()

    @property
    def locked(self) -> bool:
        return self._held

    async def acquire(self, timeout: float) -> bool:
        """Take the lock, waiting at most `timeout` seconds. False on timeout."""
        async with self._cond:
            try:
                await asyncio.wait_for(self._cond.wait_for(lambda: not self._held), timeout)
            except asyncio.TimeoutError:
                return False
            self._held = True
            return True

    async def release(self):
        async with self._cond:
            self._held = False
            self._cond.notify_all()


class CommandSender:
    """Sends raw command bytes to the drawer's printer."""

    def __init__(
        self,
        connection: ConnectionManager | None = None,
        spooler: PrinterSpooler | None = None,
        printer_name: str = '',
        ready_timeout: float = DEFAULT_READY_TIMEOUT,
        lock_timeout: float = DEFAULT_LOCK_TIMEOUT,
        one_shot: Callable[[str, int, bytes], Awaitable[None]] = write_once,
    ):
        if spooler is not None and not printer_name:
            raise ValueError('A spooler needs a printer name')
        self.connection = connection
        self.spooler = spooler
        self.printer_name = printer_name
        self.ready_timeout = ready_timeout
        self.lock_timeout = lock_timeout
        self._one_shot = one_shot
        self._lock = WriteLock()

    @property
    def configured(self) -> bool:
        return self.connection is not None or self.spooler is not None

    async def send(self, data: bytes) -> str:
        """Deliver `data`; returns the path used, raises DeliveryError on failure."""
        if not self.configured:
            raise DeliveryError('No serial port or printer name configured')

        if self.connection is not None:
            ready = self.connection.is_open or await self.connection.wait_until_open(self.ready_timeout)
            if ready:
                await self._send_persistent(data)
                return PATH_SERIAL
            logger.warning(
                f"Serial port {self.connection.port} not ready "
                f"({self.connection.state.value}) after {self.ready_timeout:.1f}s"
            )

        if self.spooler is not None:
            try:
                await self.spooler.deliver(data, self.printer_name)
            except Exception as e:
                raise DeliveryError(f"Spooler ({self.spooler.name}) failed: {e}") from e
            return PATH_SPOOLER

        port = self.connection.port
        logger.info(f"Falling back to a one-shot connection on {port}")
        try:
            await self._one_shot(port, self.connection.baudrate, data)
        except Exception as e:
            raise DeliveryError(f"One-shot write on {port} failed: {e}") from e
        return PATH_ONE_SHOT

    async def _send_persistent(self, data: bytes):
        acquired = await self._lock.acquire(self.lock_timeout)
        if not acquired:
            logger.warning(
                f"Write lock still held after {self.lock_timeout:.1f}s, writing anyway"
            )
        try:
            await self.connection.write(data)
        except Exception as e:
            raise DeliveryError(f"Serial write on {self.connection.port} failed: {e}") from e
        finally:
            if acquired:
                await self._lock.release()
