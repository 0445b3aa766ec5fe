import asyncio
from typing import Dict, List

import pytest

from drawer_bridge.config import DrawerConfig
from drawer_bridge.hardware.transport import TransportError
from drawer_bridge.protocol import DrawerJob


class FakeTransport:
    """
    In-memory stand-in for SerialTransport with the same event contract.
    """

    def __init__(self, port: str, baudrate: int, fail_open: bool = False):
        self.port = port
        self.baudrate = baudrate
        self.fail_open = fail_open
        self.fail_write = False
        self.is_open = False
        self.closed = False
        self.writes: List[bytes] = []
        self.drains = 0
        self.write_delay = 0.0
        self.active_writes = 0
        self.max_active_writes = 0
        self._listeners: Dict[str, list] = {'open': [], 'error': [], 'close': []}

    def on(self, event, callback):
        self._listeners[event].append(callback)

    def remove_all_listeners(self):
        for callbacks in self._listeners.values():
            callbacks.clear()

    def listener_count(self) -> int:
        return sum(len(c) for c in self._listeners.values())

    def _emit(self, event, *args):
        for callback in list(self._listeners[event]):
            callback(*args)

    async def open(self):
        await asyncio.sleep(0)
        if self.fail_open:
            self._emit('error', OSError(f"could not open port {self.port}"))
            return
        self.is_open = True
        self._emit('open')

    async def write(self, data: bytes):
        if not self.is_open:
            raise TransportError('not open')
        if self.fail_write:
            error = OSError('write failed')
            self.is_open = False
            self._emit('error', error)
            raise error
        self.active_writes += 1
        self.max_active_writes = max(self.max_active_writes, self.active_writes)
        try:
            await asyncio.sleep(self.write_delay)
            self.writes.append(data)
        finally:
            self.active_writes -= 1

    async def drain(self):
        self.drains += 1

    async def close(self):
        self.is_open = False
        self.closed = True
        self._emit('close')

    def unplug(self):
        self.is_open = False
        self._emit('close')


class TransportFactory:
    """Hands out FakeTransports; the first `failures` of them fail to open."""

    def __init__(self, failures: int = 0):
        self.failures = failures
        self.created: List[FakeTransport] = []

    def __call__(self, port, baudrate):
        transport = FakeTransport(port, baudrate, fail_open=len(self.created) < self.failures)
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.created[-1]


class RecordingSpooler:
    name = 'fake'

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.deliveries: List[tuple] = []

    async def deliver(self, data: bytes, printer_name: str):
        self.deliveries.append((data, printer_name))
        if self.fail:
            raise OSError('spooler rejected job')


class ScriptedSender:
    """
    Sender whose outcomes are scripted per call: None succeeds, an exception
    instance is raised. Once the script runs out, `default` applies.
    """

    def __init__(self, outcomes=None, default=None):
        self.outcomes = list(outcomes or [])
        self.default = default
        self.sent: List[bytes] = []

    async def send(self, data: bytes) -> str:
        self.sent.append(data)
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if outcome is not None:
            raise outcome
        return 'serial'


class FakeQueue:
    def __init__(self, jobs=None):
        self.pending = [DrawerJob(id=i) for i in (jobs or [])]
        self.fetch_error = None
        self.mark_error = None
        self.marked: List[list] = []
        self.fetches = 0
        self.closed = False

    async def fetch_pending(self, limit=10):
        self.fetches += 1
        if self.fetch_error is not None:
            raise self.fetch_error
        jobs, self.pending = self.pending[:limit], self.pending[limit:]
        return jobs

    async def mark_printed(self, ids):
        if self.mark_error is not None:
            raise self.mark_error
        self.marked.append(list(ids))

    async def enqueue(self):
        job = DrawerJob(id=f"job-{len(self.pending) + 1}")
        self.pending.append(job)
        return job

    async def aclose(self):
        self.closed = True


@pytest.fixture()
def transport_factory():
    return TransportFactory()


@pytest.fixture()
def spooler():
    return RecordingSpooler()


@pytest.fixture()
def env():
    return {
        'SUPABASE_URL': 'https://demo.supabase.co',
        'SUPABASE_SERVICE_ROLE_KEY': 'service-key',
        'CASH_DRAWER_COM_PORT': 'COM3',
    }


@pytest.fixture()
def config(tmp_path, env):
    return DrawerConfig(path=tmp_path / 'drawer_config.json', environ=env)
