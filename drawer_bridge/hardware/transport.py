"""
Serial transport for the receipt printer's DK port.

pyserial is blocking, so every call runs in the default thread pool. The
transport reports its lifecycle as 'open', 'error' and 'close' events so
the connection manager can react to drops it did not cause.
"""

import asyncio
import logging
from typing import Callable

import serial

logger = logging.getLogger('drawer.bridge.transport')

EVENTS = ('open', 'error', 'close')

# How often an open port is probed for unplug/driver errors
DEFAULT_WATCH_INTERVAL = 1.0
DEFAULT_WRITE_TIMEOUT = 2.0


class TransportError(Exception):
    """Raised when a write is attempted on a port that is not open."""


class SerialTransport:
    """One pyserial port with listener-style lifecycle events."""

    def __init__(
        self,
        port: str,
        baudrate: int = 9600,
        write_timeout: float = DEFAULT_WRITE_TIMEOUT,
        watch_interval: float = DEFAULT_WATCH_INTERVAL,
    ):
        self.port = port
        self.baudrate = baudrate
        self.write_timeout = write_timeout
        self.watch_interval = watch_interval
        self._serial: serial.Serial | None = None
        self._listeners: dict[str, list[Callable]] = {name: [] for name in EVENTS}
        self._watch_task: asyncio.Task | None = None
        self._closing = False

    # ─── Listeners ───────────────────────────────────────────────────────

    def on(self, event: str, callback: Callable):
        if event not in self._listeners:
            raise ValueError(f"Unknown transport event: {event}")
        self._listeners[event].append(callback)

    def remove_all_listeners(self):
        for callbacks in self._listeners.values():
            callbacks.clear()

    def _emit(self, event: str, *args):
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception:
                logger.exception(f"Listener for '{event}' on {self.port} failed")

    # ─── Lifecycle ───────────────────────────────────────────────────────

    @property
    def is_open(self) -> bool:
        return self._serial is not None and self._serial.is_open

    async def open(self):
        """Open the port; the outcome is reported as an 'open' or 'error' event."""
        loop = asyncio.get_running_loop()
        try:
            self._serial = await loop.run_in_executor(None, self._open_blocking)
        except (serial.SerialException, OSError, ValueError) as e:
            self._serial = None
            self._emit('error', e)
            return
        self._closing = False
        self._watch_task = asyncio.ensure_future(self._watch())
        self._emit('open')

    def _open_blocking(self) -> serial.Serial:
        return serial.Serial(
            self.port,
            self.baudrate,
            timeout=0,
            write_timeout=self.write_timeout,
        )

    async def close(self):
        """Close the port; emits 'close' once it is released."""
        self._closing = True
        if self._watch_task is not None:
            self._watch_task.cancel()
            self._watch_task = None
        ser, self._serial = self._serial, None
        if ser is None:
            return
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, ser.close)
        except (serial.SerialException, OSError) as e:
            logger.warning(f"Error closing {self.port}: {e}")
        self._emit('close')

    # ─── I/O ─────────────────────────────────────────────────────────────

    async def write(self, data: bytes):
        ser = self._require_open()
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, ser.write, data)
        except (serial.SerialException, OSError) as e:
            self._fail(e)
            raise

    async def drain(self):
        """Wait until the OS reports the written bytes flushed to the device."""
        ser = self._require_open()
        loop = asyncio.get_running_loop()
        try:
            await asyncio.wait_for(
                loop.run_in_executor(None, ser.flush), self.write_timeout,
            )
        except asyncio.TimeoutError:
            e = serial.SerialTimeoutException(f"Flush timed out on {self.port}")
            self._fail(e)
            raise e
        except (serial.SerialException, OSError) as e:
            self._fail(e)
            raise

    def _require_open(self) -> serial.Serial:
        if self._serial is None or not self._serial.is_open:
            raise TransportError(f"Port {self.port} is not open")
        return self._serial

    def _fail(self, error: Exception):
        """Drop a broken port and report it."""
        ser, self._serial = self._serial, None
        if self._watch_task is not None:
            self._watch_task.cancel()
            self._watch_task = None
        if ser is not None:
            try:
                ser.close()
            except (serial.SerialException, OSError):
                pass
        self._emit('error', error)

    async def _watch(self):
        """Probe the open port so an unplugged cable surfaces as an error."""
        loop = asyncio.get_running_loop()
        while not self._closing:
            await asyncio.sleep(self.watch_interval)
            ser = self._serial
            if ser is None:
                return
            if not ser.is_open:
                self._serial = None
                self._watch_task = None
                self._emit('close')
                return
            try:
                await loop.run_in_executor(None, lambda: ser.in_waiting)
            except (serial.SerialException, OSError) as e:
                self._watch_task = None
                self._fail(e)
                return


async def write_once(port: str, baudrate: int, data: bytes, timeout: float = DEFAULT_WRITE_TIMEOUT):
    """Open a throw-away connection, write, flush and close it."""
    def _send():
        with serial.Serial(port, baudrate, write_timeout=timeout) as ser:
            ser.write(data)
            ser.flush()

    loop = asyncio.get_running_loop()
    await asyncio.wait_for(loop.run_in_executor(None, _send), timeout + 1.0)
