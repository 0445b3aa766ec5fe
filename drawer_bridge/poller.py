"""
Print-queue poller.

Every interval the pending drawer jobs are fetched, claimed (marked printed)
and then one drawer open is attempted for the whole batch. Claiming first
means a failed open is not retried by a later poll; a duplicate open is
worse than a missed one being reported in the log.
"""

import asyncio
import logging

from .hardware.drawer import DrawerOpener
from .jobqueue import PrintQueueClient, QueueError

logger = logging.getLogger('drawer.bridge.poller')

DEFAULT_INTERVAL = 2.0
DEFAULT_BATCH_SIZE = 10


class JobPoller:
    """Claims queued drawer jobs and triggers the opener."""

    def __init__(
        self,
        queue: PrintQueueClient,
        opener: DrawerOpener,
        interval: float = DEFAULT_INTERVAL,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        self.queue = queue
        self.opener = opener
        self.interval = interval
        self.batch_size = batch_size
        self.jobs_processed = 0
        self._busy = False
        self._last_error: str | None = None
        self._tasks: set[asyncio.Task] = set()

    @property
    def busy(self) -> bool:
        return self._busy

    async def poll_once(self) -> list:
        """Run one cycle; returns the ids claimed (empty if skipped or idle)."""
        if self._busy:
            logger.debug("Previous poll still running, skipping")
            return []

        self._busy = True
        try:
            return await self._cycle()
        except Exception:
            logger.exception("Poll cycle failed")
            return []
        finally:
            self._busy = False

    async def _cycle(self) -> list:
        try:
            jobs = await self.queue.fetch_pending(self.batch_size)
        except QueueError as e:
            self._log_queue_error('Polling failed', e)
            return []
        self._last_error = None

        if not jobs:
            return []

        ids = [job.id for job in jobs]
        logger.info(f"Pending cash_drawer jobs: {ids}")

        try:
            await self.queue.mark_printed(ids)
            logger.info(f"Claimed jobs: {ids}")
        except QueueError as e:
            # Open anyway, a duplicate open beats a missed one
            self._log_queue_error('Could not mark jobs printed', e)

        self.jobs_processed += len(ids)
        if not await self.opener.open(reason=f"jobs {ids}"):
            logger.error(f"Jobs {ids} claimed but the drawer did not open")
        return ids

    def _log_queue_error(self, message: str, error: Exception):
        text = f"{message}: {error}"
        if text == self._last_error:
            logger.debug(f"(repeated) {text}")
            return
        self._last_error = text
        logger.error(text)

    async def run(self):
        """Fire a cycle every interval until cancelled; overlapping cycles are skipped."""
        logger.info(f"Polling every {self.interval:.1f}s (batch {self.batch_size})")
        try:
            while True:
                task = asyncio.ensure_future(self.poll_once())
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
                await asyncio.sleep(self.interval)
        finally:
            tasks = list(self._tasks)
            for task in tasks:
                task.cancel()
            # Cancelled cycles finish unwinding before run() returns
            await asyncio.gather(*tasks, return_exceptions=True)
