import sys

import pytest

import drawer_bridge.__main__ as cli
from drawer_bridge.config import ENV_KEYS


@pytest.fixture(autouse=True)
def isolated(monkeypatch, tmp_path):
    for names in ENV_KEYS.values():
        for name in names:
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv('XDG_CONFIG_HOME', str(tmp_path))
    monkeypatch.setenv('APPDATA', str(tmp_path))
    monkeypatch.setattr(cli, 'load_dotenv', lambda: None)
    monkeypatch.setattr(cli, 'setup_logging', lambda *a, **k: None)


def test_missing_credentials_exit_with_failure(monkeypatch):
    monkeypatch.setenv('CASH_DRAWER_COM_PORT', 'COM3')
    monkeypatch.setattr(sys, 'argv', ['drawer-bridge', '--no-http'])
    assert cli.main() == 1


def test_missing_target_exit_with_failure(monkeypatch):
    monkeypatch.setenv('SUPABASE_URL', 'https://demo.supabase.co')
    monkeypatch.setenv('SUPABASE_SERVICE_ROLE_KEY', 'key')
    monkeypatch.setattr(sys, 'argv', ['drawer-bridge', '--no-http'])
    assert cli.main() == 1


def test_cli_overrides_reach_config(monkeypatch):
    args = cli.build_parser().parse_args(
        ['test', '--com-port', 'COM7', '--baud-rate', '19200', '--pin', 'both'],
    )
    config = cli.load_config(args)
    assert args.command == 'test'
    assert config.com_port == 'COM7'
    assert config.baud_rate == 19200
    assert config.pin_mode == 'both'


def test_valid_config_starts_headless(monkeypatch):
    monkeypatch.setenv('SUPABASE_URL', 'https://demo.supabase.co')
    monkeypatch.setenv('SUPABASE_SERVICE_ROLE_KEY', 'key')
    monkeypatch.setenv('CASH_DRAWER_PRINTER_NAME', 'POS-80C')
    started = []

    async def fake_headless(controller):
        started.append(controller)

    monkeypatch.setattr(cli, 'run_headless', fake_headless)
    monkeypatch.setattr(sys, 'argv', ['drawer-bridge', '--no-http'])
    assert cli.main() == 0
    assert started and started[0].config.printer_name == 'POS-80C'
