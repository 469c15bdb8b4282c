"""Unit tests for the service entry point and the platform network monitor."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from _pytest.logging import LogCaptureFixture
from _pytest.monkeypatch import MonkeyPatch

from smarthome_sync import const
from smarthome_sync.config import AppConfig
from smarthome_sync.controller import SmartHomeController
from smarthome_sync.devices.persistence import KeyValueStore
from smarthome_sync.exceptions import SmartHomeSyncError
from smarthome_sync.main import SyncService, main, parse_cli
from smarthome_sync.network.platform import PlatformNetworkMonitor
from smarthome_sync.structs import ConnectivitySignal
from tests.helpers.fakes import FakeSessionFactory
from tests.unit.conftest import CAFE_WIFI, HOME_WIFI, OFFLINE, make_config


@pytest.fixture
def no_default_file(monkeypatch: MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setattr(const, "CONFIG_FILE_PATH", str(tmp_path / "absent.yaml"))


def closing(exc: BaseException):
    """uvloop.run stand-in that discards the coroutine and raises *exc*."""

    def run(coro: Coroutine[Any, Any, None]) -> None:
        coro.close()
        raise exc

    return run


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.01)


class TestParseCli:
    def test_defaults(self):
        args = parse_cli([])
        assert args.config is None
        assert args.env is None
        assert args.debug is False

    def test_flags(self):
        args = parse_cli(["-c", "/etc/sync.yaml", "--env", "~/.env", "-D"])
        assert args.config == Path("/etc/sync.yaml")
        assert args.env == Path("~/.env")
        assert args.debug is True


class TestMain:
    def test_invalid_config_exits_2(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        _ = path.write_text("policy:\n  failure_threshold: 0\n", encoding="utf-8")
        assert main(["-c", str(path)]) == 2

    @pytest.mark.usefixtures("no_default_file")
    def test_keyboard_interrupt_is_a_clean_exit(self):
        with patch("smarthome_sync.main.uvloop.run", side_effect=closing(KeyboardInterrupt())):
            assert main([]) == 0

    @pytest.mark.usefixtures("no_default_file")
    def test_fatal_error_exits_1(self, caplog: LogCaptureFixture):
        with patch("smarthome_sync.main.uvloop.run", side_effect=closing(SmartHomeSyncError("boom"))):
            assert main([]) == 1
        assert "Fatal error" in caplog.text

    @pytest.mark.usefixtures("no_default_file")
    def test_missing_env_file_is_logged(self, tmp_path: Path, caplog: LogCaptureFixture):
        with patch("smarthome_sync.main.uvloop.run", side_effect=closing(KeyboardInterrupt())):
            assert main(["--env", str(tmp_path / "missing.env")]) == 0
        assert "Environment file not found" in caplog.text


class TestReload:
    def test_reload_applies_new_config(self, tmp_path: Path):
        path = tmp_path / "config.yaml"
        _ = path.write_text("storage_key: reloaded\n", encoding="utf-8")
        service = SyncService(make_config(), path)
        service.controller = MagicMock()

        service.reload()

        service.controller.reload_config.assert_called_once()
        assert service.config.storage_key == "reloaded"

    def test_invalid_config_keeps_current(self, tmp_path: Path, caplog: LogCaptureFixture):
        path = tmp_path / "config.yaml"
        _ = path.write_text("local_broker:\n  port: 0\n", encoding="utf-8")
        original = make_config()
        service = SyncService(original, path)
        service.controller = MagicMock()

        service.reload()

        service.controller.reload_config.assert_not_called()
        assert service.config is original
        assert "keeping current configuration" in caplog.text

    def test_reload_before_start_is_ignored(self):
        SyncService(make_config()).reload()


class TestPlatformNetworkMonitor:
    def test_signal_from_route_and_env(self, monkeypatch: MonkeyPatch):
        monkeypatch.setattr(PlatformNetworkMonitor, "local_ip", staticmethod(lambda: "192.168.1.23"))
        monkeypatch.setenv("SMARTHOME_SSID", "HomeNet")

        signal = PlatformNetworkMonitor().read_signal()

        assert signal == ConnectivitySignal(
            is_connected=True,
            ssid="HomeNet",
            ip_address="192.168.1.23",
            network_type="wifi",
        )

    def test_no_route_means_offline(self, monkeypatch: MonkeyPatch):
        monkeypatch.setattr(PlatformNetworkMonitor, "local_ip", staticmethod(lambda: None))
        monkeypatch.delenv("SMARTHOME_SSID", raising=False)

        signal = PlatformNetworkMonitor().read_signal()

        assert signal.is_connected is False
        assert signal.network_type == "ethernet"

    @pytest.mark.asyncio
    async def test_run_emits_only_changes(self, monkeypatch: MonkeyPatch):
        monitor = PlatformNetworkMonitor()
        readings = iter([HOME_WIFI, HOME_WIFI, CAFE_WIFI])
        monkeypatch.setattr(monitor, "read_signal", lambda: next(readings))
        stop = asyncio.Event()
        received: list[ConnectivitySignal] = []

        def on_signal(signal: ConnectivitySignal) -> None:
            received.append(signal)
            if len(received) == 2:
                stop.set()

        await asyncio.wait_for(monitor.run(on_signal, 0.001, stop), timeout=2.0)

        assert received == [HOME_WIFI, CAFE_WIFI]


class TestRun:
    @pytest.mark.asyncio
    async def test_unreadable_device_store_starts_empty(
        self,
        monkeypatch: MonkeyPatch,
        tmp_path: Path,
        caplog: LogCaptureFixture,
        sessions: FakeSessionFactory,
    ):
        blob = tmp_path / "configuredDevices.json"
        _ = blob.write_text("{not json", encoding="utf-8")
        monkeypatch.setattr(const, "PERSISTENT_BASE_DIR", str(tmp_path))
        monkeypatch.setattr(const, "ENABLE_METRICS", False)

        def controller_factory(config: AppConfig, kv_store: KeyValueStore) -> SmartHomeController:
            return SmartHomeController(config, kv_store=kv_store, session_factory=sessions)

        monkeypatch.setattr("smarthome_sync.main.SmartHomeController", controller_factory)
        service = SyncService(make_config())
        monkeypatch.setattr(service, "_install_signal_handlers", lambda _loop: None)
        monkeypatch.setattr(service.monitor, "read_signal", lambda: OFFLINE)

        task = asyncio.create_task(service.run())
        await wait_until(lambda: service.controller is not None and service.controller.connection.is_connected)

        assert service.controller is not None
        assert service.controller.store.devices() == []
        assert "stored device set is unreadable" in caplog.text
        assert blob.read_text(encoding="utf-8") == "{not json"

        service.stop_event.set()
        await asyncio.wait_for(task, timeout=2.0)
