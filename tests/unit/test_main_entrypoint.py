import asyncio
import logging
from unittest.mock import MagicMock

import pytest

from approver import main as main_module
from approver.config import Settings
from approver.infra.kv.backend import InMemoryKVBackend, RedisKVBackend


def test_create_backend_selects_implementation():
    assert isinstance(main_module.create_backend(Settings()), InMemoryKVBackend)

    backend = main_module.create_backend(
        Settings(kv_backend="redis", redis_url="redis://cache:6379/2", redis_key_prefix="a:")
    )
    assert isinstance(backend, RedisKVBackend)
    assert backend.redis_url == "redis://cache:6379/2"
    assert backend.key_prefix == "a:"


@pytest.mark.asyncio
async def test_run_until_shutdown():
    settings = Settings(timeout_check_interval_seconds=60)
    shutdown = main_module.GracefulShutdown()

    task = asyncio.create_task(main_module.run(settings, shutdown))
    await asyncio.sleep(0.01)
    assert not task.done()

    shutdown.request_shutdown()
    await asyncio.wait_for(task, timeout=5)


@pytest.mark.asyncio
async def test_application_without_sweeper():
    app = main_module.Application(Settings(timeout_sweeper_enabled=False))

    await app.start()
    assert not app.scheduler.running
    await app.stop()


@pytest.mark.asyncio
async def test_application_serves_metrics_when_configured(monkeypatch):
    server = MagicMock()
    start_metrics_server = MagicMock(return_value=server)
    monkeypatch.setattr(main_module, "start_metrics_server", start_metrics_server)
    app = main_module.Application(
        Settings(timeout_sweeper_enabled=False, metrics_port=9108, metrics_host="0.0.0.0")
    )

    await app.start()
    start_metrics_server.assert_called_once_with(9108, "0.0.0.0")

    await app.stop()
    server.shutdown.assert_called_once()
    server.server_close.assert_called_once()
    assert app.metrics_server is None


@pytest.mark.asyncio
async def test_application_without_metrics_port(monkeypatch):
    start_metrics_server = MagicMock()
    monkeypatch.setattr(main_module, "start_metrics_server", start_metrics_server)
    app = main_module.Application(Settings(timeout_sweeper_enabled=False))

    await app.start()
    await app.stop()

    start_metrics_server.assert_not_called()


def test_signal_handler_sets_event(caplog):
    shutdown = main_module.GracefulShutdown()

    with caplog.at_level(logging.INFO):
        shutdown._handle_signal(15)

    assert shutdown._shutdown_event.is_set()
    assert "SIGTERM" in caplog.text


def test_main_runs_and_exits(monkeypatch):
    settings = Settings()
    calls = {}

    async def fake_run(passed_settings, shutdown):
        calls["settings"] = passed_settings

    monkeypatch.setattr(main_module, "load_config_from_cli", lambda: settings)
    monkeypatch.setattr(main_module, "set_settings", lambda s: None)
    monkeypatch.setattr(main_module, "setup_logging", lambda **kwargs: None)
    monkeypatch.setattr(main_module, "run", fake_run)
    monkeypatch.setattr(main_module.GracefulShutdown, "register_handlers", lambda self: None)

    assert main_module.main() == 0
    assert calls["settings"] is settings


def test_main_reports_config_errors(monkeypatch, capsys):
    def broken_config():
        raise ValueError("bad config")

    monkeypatch.setattr(main_module, "load_config_from_cli", broken_config)

    assert main_module.main() == 1
    assert "bad config" in capsys.readouterr().err
