"""
Drawer bridge configuration management.

Settings are layered: built-in defaults, an optional JSON file in the user's
app data directory, then environment variables (a `.env` file is honoured
by the entry point), then command-line overrides.
"""

import json
import os
import platform
import re
from pathlib import Path
from typing import Mapping


# Default local HTTP port
DEFAULT_PORT = 12322

# Config filename
CONFIG_FILENAME = 'drawer_config.json'

PIN_MODES = ('0', '1', 'both')
SPOOLER_KINDS = ('powershell', 'win32raw', 'lp')
LOG_LEVELS = ('debug', 'info', 'warning', 'error')


class ConfigError(Exception):
    """Raised when required settings are missing or malformed."""


def get_config_dir() -> Path:
    """Get the platform-specific config directory for the drawer bridge."""
    system = platform.system()

    if system == 'Darwin':
        base = Path.home() / 'Library' / 'Application Support'
    elif system == 'Windows':
        base = Path(os.environ.get('APPDATA', Path.home() / 'AppData' / 'Roaming'))
    else:
        base = Path(os.environ.get('XDG_CONFIG_HOME', Path.home() / '.config'))

    config_dir = base / 'DrawerBridge'
    config_dir.mkdir(parents=True, exist_ok=True)
    return config_dir


def get_config_path() -> Path:
    """Get the full path to the config file."""
    return get_config_dir() / CONFIG_FILENAME


def get_log_dir() -> Path:
    """Get the log directory."""
    log_dir = get_config_dir() / 'logs'
    log_dir.mkdir(exist_ok=True)
    return log_dir


def default_spooler() -> str:
    return 'powershell' if platform.system() == 'Windows' else 'lp'


# Default configuration
DEFAULT_CONFIG = {
    'supabase_url': '',
    'supabase_key': '',
    'queue_table': 'print_queue',
    'com_port': '',
    'baud_rate': 9600,
    'printer_name': '',
    'spooler': None,  # resolved per platform
    'pin_mode': '0',
    'double_pulse': False,
    'poll_interval_ms': 2000,
    'batch_size': 10,
    'max_retries': 10,
    'retry_delay_ms': 2000,
    'dedup_window_ms': 3000,
    'reconnect_delay_ms': 5000,
    'ready_timeout_ms': 3000,
    'lock_timeout_ms': 5000,
    'spooler_timeout_ms': 15000,
    'spooler_predelay_ms': 800,
    'health_interval_ms': 60000,
    'log_level': 'info',
    'host': '127.0.0.1',
    'port': DEFAULT_PORT,
}

# Config key -> environment variables, first non-empty wins
ENV_KEYS = {
    'supabase_url': ('SUPABASE_URL', 'NEXT_PUBLIC_SUPABASE_URL'),
    'supabase_key': (
        'SUPABASE_SERVICE_ROLE_KEY',
        'SUPABASE_KEY',
        'SUPABASE_ANON_KEY',
        'NEXT_PUBLIC_SUPABASE_ANON_KEY',
    ),
    'com_port': ('CASH_DRAWER_COM_PORT',),
    'baud_rate': ('CASH_DRAWER_BAUD_RATE',),
    'printer_name': ('CASH_DRAWER_PRINTER_NAME', 'PRINTER_NAME'),
    'spooler': ('CASH_DRAWER_SPOOLER',),
    'pin_mode': ('CASH_DRAWER_PIN',),
    'double_pulse': ('CASH_DRAWER_DOUBLE_PULSE',),
    'poll_interval_ms': ('POLL_INTERVAL_MS',),
    'batch_size': ('CASH_DRAWER_BATCH_SIZE',),
    'max_retries': ('CASH_DRAWER_MAX_RETRIES',),
    'retry_delay_ms': ('CASH_DRAWER_RETRY_DELAY_MS',),
    'dedup_window_ms': ('CASH_DRAWER_DEDUP_WINDOW_MS',),
    'reconnect_delay_ms': ('CASH_DRAWER_RECONNECT_DELAY_MS',),
    'ready_timeout_ms': ('CASH_DRAWER_READY_TIMEOUT_MS',),
    'lock_timeout_ms': ('CASH_DRAWER_LOCK_TIMEOUT_MS',),
    'spooler_timeout_ms': ('CASH_DRAWER_SPOOLER_TIMEOUT_MS',),
    'spooler_predelay_ms': ('CASH_DRAWER_SPOOLER_PREDELAY_MS',),
    'health_interval_ms': ('CASH_DRAWER_HEALTH_INTERVAL_MS',),
    'log_level': ('LOG_LEVEL',),
    'host': ('DRAWER_BRIDGE_HOST',),
    'port': ('DRAWER_BRIDGE_PORT',),
}

INT_KEYS = {
    'baud_rate', 'poll_interval_ms', 'batch_size', 'max_retries',
    'retry_delay_ms', 'dedup_window_ms', 'reconnect_delay_ms',
    'ready_timeout_ms', 'lock_timeout_ms', 'spooler_timeout_ms',
    'spooler_predelay_ms', 'health_interval_ms', 'port',
}

# May legitimately be zero
NON_NEGATIVE_KEYS = {'retry_delay_ms', 'dedup_window_ms', 'spooler_predelay_ms'}

_TRUTHY = {'1', 'true', 'yes', 'on'}


def mask_url(url: str) -> str:
    """Hide credentials embedded in a URL (`//user:pass@host`)."""
    if not url:
        return '(not configured)'
    return re.sub(r'//([^:/@]+):([^@]+)@', '//***:***@', url)


class DrawerConfig:
    """Drawer bridge configuration with file and environment layers."""

    def __init__(self, path: Path | None = None, environ: Mapping[str, str] | None = None):
        self._path = path if path is not None else get_config_path()
        self._data = dict(DEFAULT_CONFIG)
        self._errors: list[str] = []
        self.load()
        self.apply_env(os.environ if environ is None else environ)

    def load(self):
        """Load config from file if it exists."""
        if not self._path.exists():
            return
        try:
            with open(self._path, 'r') as f:
                saved = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            self._errors.append(f"Unreadable config file {self._path}: {e}")
            return
        if isinstance(saved, dict):
            for key, value in saved.items():
                if key in DEFAULT_CONFIG:
                    self._set(key, value)

    def apply_env(self, environ: Mapping[str, str]):
        """Overlay values found in the environment."""
        for key, names in ENV_KEYS.items():
            for name in names:
                value = environ.get(name)
                if value not in (None, ''):
                    self._set(key, value)
                    break

    def apply_overrides(self, **overrides):
        """Overlay command-line values; `None` means not given."""
        for key, value in overrides.items():
            if value is not None:
                self._set(key, value)

    def _set(self, key: str, value):
        if key in INT_KEYS:
            try:
                value = int(value)
            except (TypeError, ValueError):
                self._errors.append(f"{key} must be an integer, got {value!r}")
                return
        elif key == 'double_pulse' and isinstance(value, str):
            value = value.strip().lower() in _TRUTHY
        elif key in ('pin_mode', 'spooler', 'log_level') and value is not None:
            value = str(value).strip().lower()
        elif isinstance(value, str):
            value = value.strip()
        self._data[key] = value

    def validate(self, require_queue: bool = True, require_target: bool = True):
        """Check startup requirements, raising ConfigError on the first problem."""
        if self._errors:
            raise ConfigError(self._errors[0])
        if require_queue and (not self.supabase_url or not self.supabase_key):
            raise ConfigError(
                'Missing queue credentials: set SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY'
            )
        if require_target and not self.com_port and not self.printer_name:
            raise ConfigError(
                'Set CASH_DRAWER_COM_PORT (e.g. COM3) or CASH_DRAWER_PRINTER_NAME'
            )
        if self.pin_mode not in PIN_MODES:
            raise ConfigError(f"CASH_DRAWER_PIN must be one of {', '.join(PIN_MODES)}")
        if self.spooler not in SPOOLER_KINDS:
            raise ConfigError(f"CASH_DRAWER_SPOOLER must be one of {', '.join(SPOOLER_KINDS)}")
        if self.log_level not in LOG_LEVELS:
            raise ConfigError(f"LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}")
        for key in INT_KEYS:
            value = self._data[key]
            if value < 0 or (value == 0 and key not in NON_NEGATIVE_KEYS):
                raise ConfigError(f"{key} must be a positive number, got {value}")

    # ─── Queue ───────────────────────────────────────────────────────────

    @property
    def supabase_url(self) -> str:
        return (self._data.get('supabase_url') or '').rstrip('/')

    @property
    def supabase_key(self) -> str:
        return self._data.get('supabase_key') or ''

    @property
    def queue_table(self) -> str:
        return self._data.get('queue_table') or 'print_queue'

    @property
    def batch_size(self) -> int:
        return self._data['batch_size']

    # ─── Device ──────────────────────────────────────────────────────────

    @property
    def com_port(self) -> str:
        return self._data.get('com_port') or ''

    @property
    def baud_rate(self) -> int:
        return self._data['baud_rate']

    @property
    def printer_name(self) -> str:
        return self._data.get('printer_name') or ''

    @property
    def spooler(self) -> str:
        return self._data.get('spooler') or default_spooler()

    @property
    def pin_mode(self) -> str:
        return self._data.get('pin_mode') or '0'

    @property
    def double_pulse(self) -> bool:
        return bool(self._data.get('double_pulse'))

    # ─── Timing (seconds) ────────────────────────────────────────────────

    def seconds(self, key: str) -> float:
        """Return a `*_ms` setting converted to seconds."""
        return self._data[key] / 1000.0

    @property
    def poll_interval(self) -> float:
        return self.seconds('poll_interval_ms')

    @property
    def max_retries(self) -> int:
        return self._data['max_retries']

    @property
    def retry_delay(self) -> float:
        return self.seconds('retry_delay_ms')

    @property
    def dedup_window(self) -> float:
        return self.seconds('dedup_window_ms')

    @property
    def reconnect_delay(self) -> float:
        return self.seconds('reconnect_delay_ms')

    @property
    def ready_timeout(self) -> float:
        return self.seconds('ready_timeout_ms')

    @property
    def lock_timeout(self) -> float:
        return self.seconds('lock_timeout_ms')

    @property
    def spooler_timeout(self) -> float:
        return self.seconds('spooler_timeout_ms')

    @property
    def spooler_predelay(self) -> float:
        return self.seconds('spooler_predelay_ms')

    @property
    def health_interval(self) -> float:
        return self.seconds('health_interval_ms')

    # ─── Process ─────────────────────────────────────────────────────────

    @property
    def log_level(self) -> str:
        return self._data.get('log_level') or 'info'

    @property
    def host(self) -> str:
        return self._data.get('host') or '127.0.0.1'

    @property
    def port(self) -> int:
        return self._data['port']

    @property
    def path(self) -> Path:
        return self._path

    def describe_target(self) -> str:
        """One-line summary of where drawer commands go."""
        parts = []
        if self.com_port:
            parts.append(f"COM: {self.com_port} @ {self.baud_rate}")
        if self.printer_name:
            parts.append(f"Printer: {self.printer_name} ({self.spooler})")
        return ' | '.join(parts) or '(no target)'

    def __repr__(self):
        safe = dict(self._data)
        if safe.get('supabase_key'):
            safe['supabase_key'] = '***'
        return f"DrawerConfig({safe})"
