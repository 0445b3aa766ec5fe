"""
ESC/POS drawer-kick commands and queue row definitions.

Cash drawers hang off the printer's DK port (RJ11). The drawer solenoid
is pulsed with `ESC p <pin> <on-time> <off-time>`; which pin it is wired
to depends on the drawer, so both are tried.
"""

from dataclasses import dataclass
from typing import Any


# ─── Kick commands ──────────────────────────────────────────────────────────

# ESC p 0: connector pin 2, the common wiring
KICK_PIN0 = bytes([0x1b, 0x70, 0x00, 0x19, 0xfa])
# ESC p 1: connector pin 5
KICK_PIN1 = bytes([0x1b, 0x70, 0x01, 0x19, 0xfa])
# Longer pulse on pin 2, for sluggish solenoids
KICK_PIN0_LONG = bytes([0x1b, 0x70, 0x00, 0x1e, 0xff])

# Variants exercised by the `pins` diagnostic
DIAGNOSTIC_COMMANDS = {
    'pin0': KICK_PIN0,
    'pin1': KICK_PIN1,
    'pin0_long': KICK_PIN0_LONG,
    'pin0_alt': bytes([0x1b, 0x70, 0x00, 0x32, 0xc8]),
    'dle': bytes([0x10, 0x14, 0x01, 0x00, 0x05]),  # DLE DC4, older Epson
}


def kick_sequence(pin_mode: str = '0') -> list[tuple[str, bytes]]:
    """
    Return the labelled commands tried, in order, within one open cycle.

    The configured pin comes first and the other pin is always the fallback;
    'both' appends the long-pulse variant.
    """
    if pin_mode == '1':
        return [('PIN1', KICK_PIN1), ('PIN0', KICK_PIN0)]
    if pin_mode == 'both':
        return [('PIN0', KICK_PIN0), ('PIN1', KICK_PIN1), ('PIN0_LONG', KICK_PIN0_LONG)]
    if pin_mode == '0':
        return [('PIN0', KICK_PIN0), ('PIN1', KICK_PIN1)]
    raise ValueError(f"Unknown pin mode: {pin_mode}")


# ─── Queue rows ─────────────────────────────────────────────────────────────

CASH_DRAWER_JOB_TYPE = 'cash_drawer'


@dataclass
class DrawerJob:
    """A `print_queue` row asking for the drawer to be opened."""

    id: Any
    type: str = CASH_DRAWER_JOB_TYPE
    created_at: str | None = None
    printed_at: str | None = None

    @classmethod
    def from_row(cls, row: dict) -> 'DrawerJob':
        if not isinstance(row, dict) or 'id' not in row:
            raise ValueError(f"Queue row without id: {row!r}")
        return cls(
            id=row['id'],
            type=row.get('type') or CASH_DRAWER_JOB_TYPE,
            created_at=row.get('created_at'),
            printed_at=row.get('printed_at'),
        )

    @property
    def is_pending(self) -> bool:
        return self.printed_at is None
