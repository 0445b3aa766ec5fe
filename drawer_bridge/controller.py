"""
Drawer-open controller.

Builds the poller, connection, sender and opener from a DrawerConfig and
runs them on the current event loop.
"""

import asyncio
import logging
from datetime import datetime, timezone

from . import __version__
from .config import DrawerConfig, mask_url
from .hardware.connection import ConnectionManager
from .hardware.drawer import DrawerOpener
from .hardware.sender import CommandSender
from .hardware.spooler import PrinterSpooler, make_spooler
from .jobqueue import PrintQueueClient
from .poller import JobPoller

logger = logging.getLogger('drawer.bridge')


class DrawerController:
    """Owns every component; start() and stop() bracket the process lifetime."""

    def __init__(
        self,
        config: DrawerConfig,
        queue: PrintQueueClient | None = None,
        connection: ConnectionManager | None = None,
        spooler: PrinterSpooler | None = None,
    ):
        self.config = config

        if connection is None and config.com_port:
            connection = ConnectionManager(
                config.com_port,
                baudrate=config.baud_rate,
                reconnect_delay=config.reconnect_delay,
            )
        if spooler is None and config.printer_name:
            spooler = make_spooler(
                config.spooler,
                timeout=config.spooler_timeout,
                predelay=config.spooler_predelay,
            )

        self.connection = connection
        self.sender = CommandSender(
            connection=connection,
            spooler=spooler,
            printer_name=config.printer_name,
            ready_timeout=config.ready_timeout,
            lock_timeout=config.lock_timeout,
        )
        self.opener = DrawerOpener(
            self.sender,
            pin_mode=config.pin_mode,
            max_retries=config.max_retries,
            retry_delay=config.retry_delay,
            dedup_window=config.dedup_window,
            double_pulse=config.double_pulse,
        )
        self.queue = queue or PrintQueueClient(
            config.supabase_url,
            config.supabase_key,
            table=config.queue_table,
        )
        self.poller = JobPoller(
            self.queue,
            self.opener,
            interval=config.poll_interval,
            batch_size=config.batch_size,
        )
        self._tasks: list[asyncio.Task] = []
        self.started_at: datetime | None = None

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self):
        """Open the serial link and start the poll and health timers."""
        if self._tasks:
            return
        logger.info(f"Drawer Bridge v{__version__} | {self.config.describe_target()} | Poll: {self.config.poll_interval:.1f}s")
        logger.info(f"Queue: {mask_url(self.config.supabase_url)}")
        self.started_at = datetime.now(timezone.utc)

        if self.connection is not None:
            await self.connection.connect()

        self._tasks = [
            asyncio.ensure_future(self.poller.run()),
            asyncio.ensure_future(self._health_loop()),
        ]

    async def stop(self):
        """Stop timers, close the port and the queue client."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        if self.connection is not None:
            await self.connection.close()
        await self.queue.aclose()
        logger.info("Drawer Bridge stopped")

    def connection_status(self) -> str:
        if self.connection is None:
            return 'spooler-only'
        return self.connection.state.value

    def connection_error(self) -> str | None:
        if self.connection is None or self.connection.last_error is None:
            return None
        return str(self.connection.last_error)

    def status(self) -> dict:
        opener = self.opener
        return {
            'version': __version__,
            'running': self.running,
            'target': self.config.describe_target(),
            'connection': self.connection_status(),
            'connection_error': self.connection_error(),
            'jobs_processed': self.poller.jobs_processed,
            'drawer_opens': opener.opens,
            'last_success': opener.last_success_at.isoformat() if opener.last_success_at else None,
            'last_error': str(opener.last_error) if opener.last_error else None,
            'started_at': self.started_at.isoformat() if self.started_at else None,
        }

    async def _health_loop(self):
        while True:
            await asyncio.sleep(self.config.health_interval)
            logger.info(
                f"Health: connection={self.connection_status()} "
                f"jobs_processed={self.poller.jobs_processed} "
                f"drawer_opens={self.opener.opens}"
            )
