import asyncio
import logging

from conftest import FakeQueue, RecordingSpooler, TransportFactory
from drawer_bridge.config import DrawerConfig
from drawer_bridge.controller import DrawerController
from drawer_bridge.hardware.connection import ConnectionManager, ConnectionState
from drawer_bridge.hardware.spooler import LpSpooler, PowerShellSpooler
from drawer_bridge.protocol import KICK_PIN0


def _config(tmp_path, env, **extra):
    return DrawerConfig(
        path=tmp_path / 'c.json',
        environ={**env, 'POLL_INTERVAL_MS': '10', 'CASH_DRAWER_HEALTH_INTERVAL_MS': '20', **extra},
    )


def test_components_follow_config(tmp_path, env):
    config = _config(tmp_path, env, CASH_DRAWER_PRINTER_NAME='POS-80C', CASH_DRAWER_SPOOLER='lp')
    controller = DrawerController(config, queue=FakeQueue())
    assert controller.connection.port == 'COM3'
    assert isinstance(controller.sender.spooler, LpSpooler)
    assert controller.sender.printer_name == 'POS-80C'
    assert controller.poller.interval == 0.01

    env = {k: v for k, v in env.items() if k != 'CASH_DRAWER_COM_PORT'}
    config = _config(tmp_path, env, CASH_DRAWER_PRINTER_NAME='POS-80C', CASH_DRAWER_SPOOLER='powershell')
    controller = DrawerController(config, queue=FakeQueue())
    assert controller.connection is None
    assert isinstance(controller.sender.spooler, PowerShellSpooler)
    assert controller.connection_status() == 'spooler-only'


def test_queued_job_opens_drawer_end_to_end(tmp_path, env, caplog):
    factory = TransportFactory()

    async def scenario():
        config = _config(tmp_path, env)
        connection = ConnectionManager('COM3', 9600, reconnect_delay=0.01, transport_factory=factory)
        queue = FakeQueue(jobs=['job-1'])
        controller = DrawerController(config, queue=queue, connection=connection)
        with caplog.at_level(logging.INFO, logger='drawer.bridge'):
            await controller.start()
            assert controller.running
            await asyncio.sleep(0.1)
            status = controller.status()
            await controller.stop()
        return controller, queue, status

    controller, queue, status = asyncio.run(scenario())
    assert queue.marked == [['job-1']]
    assert factory.last.writes == [KICK_PIN0]
    assert status['connection'] == 'open'
    assert status['jobs_processed'] == 1
    assert status['drawer_opens'] == 1
    assert status['last_success'] is not None
    assert status['connection_error'] is None
    assert 'Health: connection=open' in caplog.text
    assert controller.connection.state is ConnectionState.DISCONNECTED
    assert factory.last.closed
    assert queue.closed
    assert not controller.running


def test_spooler_fallback_when_port_never_opens(tmp_path, env):
    factory = TransportFactory(failures=1000)
    spooler = RecordingSpooler()

    async def scenario():
        config = _config(
            tmp_path, env,
            CASH_DRAWER_PRINTER_NAME='POS-80C',
            CASH_DRAWER_READY_TIMEOUT_MS='20',
            CASH_DRAWER_RECONNECT_DELAY_MS='1000',
        )
        connection = ConnectionManager('COM3', 9600, reconnect_delay=1.0, transport_factory=factory)
        controller = DrawerController(
            config, queue=FakeQueue(jobs=['job-1']), connection=connection, spooler=spooler,
        )
        await controller.start()
        await asyncio.sleep(0.15)
        await controller.stop()

    asyncio.run(scenario())
    assert spooler.deliveries == [(KICK_PIN0, 'POS-80C')]


def test_status_reports_connection_error(tmp_path, env):
    factory = TransportFactory(failures=1000)

    async def scenario():
        connection = ConnectionManager('COM3', 9600, reconnect_delay=1.0, transport_factory=factory)
        controller = DrawerController(_config(tmp_path, env), queue=FakeQueue(), connection=connection)
        await connection.connect()
        status = controller.status()
        await connection.close()
        return status

    status = asyncio.run(scenario())
    assert status['connection'] == 'error'
    assert 'could not open port COM3' in status['connection_error']
    assert status['last_success'] is None
