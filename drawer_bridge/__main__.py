"""
Entry point for Drawer Bridge.

Usage:
    python -m drawer_bridge                  run the queue poller + local HTTP status
    python -m drawer_bridge --no-http        run headless
    python -m drawer_bridge test             open the drawer once, no queue
    python -m drawer_bridge pins             send every kick variant once
    python -m drawer_bridge enqueue          insert a cash_drawer job
    python -m drawer_bridge list-printers    show OS printer names
    drawer-bridge  (if installed via pip)
"""

import argparse
import asyncio
import logging
import signal
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

from . import __version__
from .config import ConfigError, DrawerConfig, get_log_dir
from .controller import DrawerController
from .hardware.spooler import SpoolerError, list_printers
from .jobqueue import QueueError
from .protocol import DIAGNOSTIC_COMMANDS

logger = logging.getLogger('drawer.bridge')

COMMANDS = ('run', 'test', 'pins', 'enqueue', 'list-printers')

LOG_FORMAT = '%(asctime)s [%(name)s] %(levelname)s: %(message)s'


def setup_logging(level: str = 'info', log_file: Path | None = None):
    """Configure logging for the bridge."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        level=numeric_level,
        format=LOG_FORMAT,
        datefmt='%Y-%m-%d %H:%M:%S',
    )

    if log_file is not None:
        handler = RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=5, encoding='utf-8')
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logging.getLogger().addHandler(handler)

    # Quiet down noisy loggers
    logging.getLogger('uvicorn.access').setLevel(logging.WARNING)
    logging.getLogger('httpx').setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=f'Drawer Bridge v{__version__}: cash drawer opener for the POS print queue',
    )
    parser.add_argument('command', nargs='?', default='run', choices=COMMANDS)
    parser.add_argument('--config', type=Path, default=None, help='JSON config file')
    parser.add_argument('--com-port', help='Serial port of the drawer printer (e.g. COM3)')
    parser.add_argument('--baud-rate', type=int, default=None)
    parser.add_argument('--printer-name', help='OS printer name for the spooler fallback')
    parser.add_argument('--spooler', choices=['powershell', 'win32raw', 'lp'], default=None)
    parser.add_argument('--pin', dest='pin_mode', choices=['0', '1', 'both'], default=None)
    parser.add_argument('--host', type=str, default=None, help='HTTP bind address (default: 127.0.0.1)')
    parser.add_argument('--port', '-p', type=int, default=None, help='HTTP port')
    parser.add_argument('--no-http', action='store_true', help='Run without the local HTTP server')
    parser.add_argument('--no-log-file', action='store_true', help='Log to the console only')
    parser.add_argument(
        '--log-level',
        choices=['debug', 'info', 'warning', 'error'],
        default=None,
        help='Logging level',
    )
    parser.add_argument(
        '--version', '-v',
        action='version',
        version=f'drawer-bridge {__version__}',
    )
    return parser


def load_config(args: argparse.Namespace) -> DrawerConfig:
    config = DrawerConfig(path=args.config)
    config.apply_overrides(
        com_port=args.com_port,
        baud_rate=args.baud_rate,
        printer_name=args.printer_name,
        spooler=args.spooler,
        pin_mode=args.pin_mode,
        host=args.host,
        port=args.port,
        log_level=args.log_level,
    )
    return config


# ─── Run modes ───────────────────────────────────────────────────────────────

async def run_headless(controller: DrawerController):
    """Run until SIGINT/SIGTERM, then shut down cleanly."""
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows: KeyboardInterrupt cancels asyncio.run instead
            pass

    await controller.start()
    try:
        await stop.wait()
    finally:
        logger.info("Shutting down...")
        await controller.stop()


def run_with_http(controller: DrawerController, config: DrawerConfig):
    from .server import create_app

    logger.info(f"Starting HTTP status server on {config.host}:{config.port}")
    uvicorn.run(
        create_app(controller),
        host=config.host,
        port=config.port,
        log_level=config.log_level,
    )


# ─── Diagnostics ─────────────────────────────────────────────────────────────

async def _with_link(controller: DrawerController, action):
    if controller.connection is not None:
        await controller.connection.connect()
    try:
        return await action()
    finally:
        if controller.connection is not None:
            await controller.connection.close()
        await controller.queue.aclose()


async def diagnose_open(controller: DrawerController) -> int:
    opened = await _with_link(controller, lambda: controller.opener.open(reason='diagnostic'))
    if opened:
        print('OK - command sent. Did the drawer open?')
        return 0
    print(f'Error: {controller.opener.last_error}', file=sys.stderr)
    return 1


async def diagnose_pins(controller: DrawerController) -> int:
    async def _send_all():
        failures = 0
        for name, command in DIAGNOSTIC_COMMANDS.items():
            print(f'Trying {name} ({command.hex(" ")})...')
            try:
                path = await controller.sender.send(command)
            except Exception as e:
                failures += 1
                print(f'  failed: {e}')
            else:
                print(f'  sent via {path} - did the drawer open with {name}?')
            await asyncio.sleep(1.0)
        return failures

    failures = await _with_link(controller, _send_all)
    return 0 if failures < len(DIAGNOSTIC_COMMANDS) else 1


async def diagnose_enqueue(controller: DrawerController) -> int:
    try:
        job = await controller.queue.enqueue()
    except QueueError as e:
        print(f'Error inserting job: {e}', file=sys.stderr)
        print('Does print_queue exist and accept type cash_drawer?', file=sys.stderr)
        return 1
    finally:
        await controller.queue.aclose()
    print(f'OK - job created: {job.id}')
    print('A running bridge should open the drawer within one poll interval.')
    return 0


def show_printers() -> int:
    try:
        printers, default = list_printers()
    except SpoolerError as e:
        print(f'Error: {e}', file=sys.stderr)
        return 1
    if not printers:
        print('No printers found.')
        return 1
    print('Available printers:\n')
    for name in printers:
        mark = ' (default)' if name == default else ''
        print(f'  "{name}"{mark}')
    print('\nCopy the exact name into CASH_DRAWER_PRINTER_NAME')
    return 0


def main() -> int:
    load_dotenv()
    args = build_parser().parse_args()
    config = load_config(args)

    log_file = None
    if args.command == 'run' and not args.no_log_file:
        log_file = get_log_dir() / 'drawer-bridge.log'
    setup_logging(config.log_level, log_file)

    if args.command == 'list-printers':
        return show_printers()

    try:
        config.validate(
            require_queue=args.command in ('run', 'enqueue'),
            require_target=args.command != 'enqueue',
        )
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    controller = DrawerController(config)

    if args.command == 'test':
        return asyncio.run(diagnose_open(controller))
    if args.command == 'pins':
        return asyncio.run(diagnose_pins(controller))
    if args.command == 'enqueue':
        return asyncio.run(diagnose_enqueue(controller))

    try:
        if args.no_http:
            asyncio.run(run_headless(controller))
        else:
            run_with_http(controller, config)
    except KeyboardInterrupt:
        pass
    except Exception:
        logger.exception("Fatal error")
        return 1
    return 0


if __name__ == '__main__':
    sys.exit(main())
