"""
Operating-system print spooler fallback.

When the serial link is not available, the same kick bytes are handed to
the OS print queue for the named printer. Each platform gets its own
`PrinterSpooler`; the command sender only sees `deliver()`.
"""

import asyncio
import base64
import logging
import platform
import subprocess
import time
from pathlib import Path

logger = logging.getLogger('drawer.bridge.spooler')

RAW_PRINTER_SCRIPT = Path(__file__).with_name('send_raw_printer.ps1')

DEFAULT_TIMEOUT = 15.0
DEFAULT_PREDELAY = 0.8


class SpoolerError(Exception):
    """Raised when the spooler did not accept the job."""


class PrinterSpooler:
    """Delivers raw bytes to a printer through the OS."""

    name = 'spooler'
    timeout = DEFAULT_TIMEOUT
    predelay = 0.0

    async def deliver(self, data: bytes, printer_name: str):
        """Queue `data` on `printer_name`; raises SpoolerError on failure or timeout."""
        loop = asyncio.get_running_loop()
        limit = self.timeout + self.predelay
        try:
            await asyncio.wait_for(
                loop.run_in_executor(None, self._deliver_blocking, data, printer_name),
                limit,
            )
        except asyncio.TimeoutError as e:
            # The worker thread cannot be interrupted; it is abandoned
            raise SpoolerError(f"{self.name} job on {printer_name} timed out after {limit:.1f}s") from e

    def _deliver_blocking(self, data: bytes, printer_name: str):
        raise NotImplementedError


def _run(cmd: list[str], timeout: float, stdin: bytes | None = None) -> subprocess.CompletedProcess:
    """Run a spooler utility, normalising failures to SpoolerError."""
    try:
        return subprocess.run(
            cmd,
            input=stdin,
            capture_output=True,
            timeout=timeout,
            check=True,
            **_hidden_window(),
        )
    except FileNotFoundError as e:
        raise SpoolerError(f"{cmd[0]} not found") from e
    except subprocess.TimeoutExpired as e:
        raise SpoolerError(f"{cmd[0]} timed out after {timeout:.0f}s") from e
    except subprocess.CalledProcessError as e:
        detail = (e.stderr or e.stdout or b'').decode(errors='replace').strip()
        raise SpoolerError(f"{cmd[0]} exited with {e.returncode}: {detail[:300]}") from e


def _hidden_window() -> dict:
    if platform.system() == 'Windows':
        return {'creationflags': getattr(subprocess, 'CREATE_NO_WINDOW', 0)}
    return {}


class PowerShellSpooler(PrinterSpooler):
    """Windows: RAW job through winspool, driven by a PowerShell helper."""

    name = 'powershell'

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT,
        predelay: float = DEFAULT_PREDELAY,
        script: Path = RAW_PRINTER_SCRIPT,
        executable: str = 'powershell',
    ):
        self.timeout = timeout
        self.predelay = predelay
        self.script = script
        self.executable = executable

    def build_command(self, data: bytes, printer_name: str) -> list[str]:
        return [
            self.executable,
            '-NoProfile',
            '-NonInteractive',
            '-ExecutionPolicy', 'Bypass',
            '-File', str(self.script),
            '-PrinterName', printer_name,
            '-Base64Bytes', base64.b64encode(data).decode('ascii'),
            '-PreDelayMs', str(int(self.predelay * 1000)),
        ]

    def _deliver_blocking(self, data: bytes, printer_name: str):
        # The helper sleeps for the pre-delay itself
        _run(self.build_command(data, printer_name), self.timeout + self.predelay)
        logger.debug(f"PowerShell spooler accepted {len(data)} bytes for {printer_name}")


class Win32RawSpooler(PrinterSpooler):
    """Windows: RAW job through python-escpos' Win32Raw (needs pywin32)."""

    name = 'win32raw'

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, predelay: float = DEFAULT_PREDELAY):
        self.timeout = timeout
        self.predelay = predelay

    def _deliver_blocking(self, data: bytes, printer_name: str):
        try:
            from escpos.printer import Win32Raw
        except ImportError as e:
            raise SpoolerError('Win32Raw printing requires python-escpos and pywin32') from e

        if self.predelay:
            time.sleep(self.predelay)

        printer = Win32Raw(printer_name)
        try:
            printer.open()
            printer._raw(data)
        except Exception as e:
            raise SpoolerError(f"Win32Raw job on {printer_name} failed: {e}") from e
        finally:
            try:
                printer.close()
            except Exception:
                pass


class LpSpooler(PrinterSpooler):
    """CUPS: `lp -o raw`, payload on stdin."""

    name = 'lp'

    def __init__(self, timeout: float = DEFAULT_TIMEOUT, executable: str = 'lp'):
        self.timeout = timeout
        self.executable = executable

    def build_command(self, printer_name: str) -> list[str]:
        return [self.executable, '-d', printer_name, '-o', 'raw']

    def _deliver_blocking(self, data: bytes, printer_name: str):
        _run(self.build_command(printer_name), self.timeout, stdin=data)


def make_spooler(kind: str, timeout: float = DEFAULT_TIMEOUT, predelay: float = DEFAULT_PREDELAY) -> PrinterSpooler:
    """Build the spooler for a CASH_DRAWER_SPOOLER value."""
    if kind == 'powershell':
        return PowerShellSpooler(timeout=timeout, predelay=predelay)
    if kind == 'win32raw':
        return Win32RawSpooler(timeout=timeout, predelay=predelay)
    if kind == 'lp':
        return LpSpooler(timeout=timeout)
    raise ValueError(f"Unknown spooler: {kind}")


# ─── Printer listing ────────────────────────────────────────────────────────

_LIST_PRINTERS_PS = (
    'Get-CimInstance Win32_Printer | ForEach-Object { $_.Name }; '
    '$d = Get-CimInstance Win32_Printer | Where-Object { $_.Default }; '
    'if ($d) { "---DEFAULT---" + $d.Name }'
)


def list_printers(timeout: float = DEFAULT_TIMEOUT) -> tuple[list[str], str | None]:
    """Return (printer names, default printer name) known to the OS."""
    if platform.system() == 'Windows':
        result = _run(
            ['powershell', '-NoProfile', '-ExecutionPolicy', 'Bypass', '-Command', _LIST_PRINTERS_PS],
            timeout,
        )
        return parse_windows_listing(result.stdout.decode(errors='replace'))

    result = _run(['lpstat', '-e'], timeout)
    printers = [line.strip() for line in result.stdout.decode(errors='replace').splitlines() if line.strip()]
    default = None
    try:
        out = _run(['lpstat', '-d'], timeout).stdout.decode(errors='replace')
        if ':' in out:
            default = out.split(':', 1)[1].strip() or None
    except SpoolerError:
        pass
    return printers, default


def parse_windows_listing(output: str) -> tuple[list[str], str | None]:
    lines = [line.strip() for line in output.splitlines() if line.strip()]
    default = None
    printers = []
    for line in lines:
        if line.startswith('---DEFAULT---'):
            default = line[len('---DEFAULT---'):] or None
        else:
            printers.append(line)
    return printers, default
