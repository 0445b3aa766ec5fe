"""
Cash drawer control via ESC/POS kick commands.

Cash drawers are typically connected to the printer's DK port (pins 2 or 5).
An open request pulses the configured pin and falls back to the other one;
a full cycle is retried a bounded number of times. Requests arriving shortly
after a successful open are treated as already satisfied.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable

from ..protocol import kick_sequence
from .sender import CommandSender

logger = logging.getLogger('drawer.bridge.drawer')

DEFAULT_MAX_RETRIES = 10
DEFAULT_RETRY_DELAY = 2.0
DEFAULT_DEDUP_WINDOW = 3.0
PIN_SWITCH_DELAY = 0.2
DOUBLE_PULSE_GAP = 0.15


class DrawerOpener:
    """Dedup and retry policy around CommandSender."""

    def __init__(
        self,
        sender: CommandSender,
        pin_mode: str = '0',
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        dedup_window: float = DEFAULT_DEDUP_WINDOW,
        double_pulse: bool = False,
        pin_switch_delay: float = PIN_SWITCH_DELAY,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.sender = sender
        self.commands = kick_sequence(pin_mode)
        self.max_retries = max(1, max_retries)
        self.retry_delay = retry_delay
        self.dedup_window = dedup_window
        self.double_pulse = double_pulse
        self.pin_switch_delay = pin_switch_delay
        self._clock = clock
        self._cycle = asyncio.Lock()
        self.last_success: float | None = None
        self.last_success_at: datetime | None = None
        self.last_error: Exception | None = None
        self.opens = 0

    def within_dedup_window(self) -> bool:
        if self.last_success is None:
            return False
        return self._clock() - self.last_success < self.dedup_window

    async def open(self, reason: str = '') -> bool:
        """
        Open the drawer. Returns True on success or dedup, False once every
        attempt with every pin has failed.
        """
        suffix = f" ({reason})" if reason else ''

        # Concurrent requests queue here so the dedup check sees the earlier result
        async with self._cycle:
            if self.within_dedup_window():
                elapsed = self._clock() - self.last_success
                logger.info(
                    f"Drawer opened {elapsed * 1000:.0f}ms ago, skipping duplicate open{suffix}"
                )
                return True
            return await self._open_with_retries(suffix)

    async def _open_with_retries(self, suffix: str) -> bool:
        last_error = None
        for attempt in range(1, self.max_retries + 1):
            for index, (label, command) in enumerate(self.commands):
                try:
                    path = await self._pulse(command)
                except Exception as e:
                    last_error = e
                    logger.warning(
                        f"{label} failed (attempt {attempt}/{self.max_retries}): {e}"
                    )
                    if index < len(self.commands) - 1:
                        await asyncio.sleep(self.pin_switch_delay)
                    continue

                self.last_success = self._clock()
                self.last_success_at = datetime.now(timezone.utc)
                self.last_error = None
                self.opens += 1
                if index > 0:
                    logger.info(f"Drawer opened, success with {label} via {path} (attempt {attempt}){suffix}")
                else:
                    logger.info(f"Drawer opened with {label} via {path}{suffix}")
                return True

            if attempt < self.max_retries:
                logger.info(
                    f"Attempt {attempt}/{self.max_retries} failed, retrying in {self.retry_delay:.1f}s"
                )
                await asyncio.sleep(self.retry_delay)

        self.last_error = last_error
        logger.error(
            f"Drawer did not open after {self.max_retries} attempts{suffix}: {last_error}"
        )
        return False

    async def _pulse(self, command: bytes) -> str:
        path = await self.sender.send(command)
        if self.double_pulse:
            await asyncio.sleep(DOUBLE_PULSE_GAP)
            await self.sender.send(command)
        return path
