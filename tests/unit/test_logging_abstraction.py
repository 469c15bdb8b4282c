"""Unit tests for the structured logging layer."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from pathlib import Path

import pytest
from _pytest.logging import LogCaptureFixture
from _pytest.monkeypatch import MonkeyPatch

from smarthome_sync import const
from smarthome_sync.correlation import correlation_context
from smarthome_sync.logging_abstraction import (
    HumanReadableFormatter,
    JSONFormatter,
    SyncLogger,
    get_logger,
    subsystem_of,
)


@pytest.fixture
def fresh_name(request: pytest.FixtureRequest) -> Iterator[str]:
    name = f"smarthome_sync.tests.{request.node.name}"
    yield name
    stdlib_logger = logging.getLogger(name)
    for handler in list(stdlib_logger.handlers):
        handler.close()
        stdlib_logger.removeHandler(handler)


def make_record(msg: str = "hello %s", args: tuple[object, ...] = ("world",), **attrs: object) -> logging.LogRecord:
    record = logging.LogRecord("smarthome_sync.x", logging.INFO, __file__, 10, msg, args, None)
    for key, value in attrs.items():
        setattr(record, key, value)
    return record


@pytest.mark.parametrize(
    ("name", "subsystem"),
    [
        ("smarthome_sync.mqtt.router", "mqtt"),
        ("smarthome_sync.transport.connection_manager", "mqtt"),
        ("smarthome_sync.network.detector", "network"),
        ("smarthome_sync.controller", None),
    ],
)
def test_subsystem_of(name: str, subsystem: str | None):
    assert subsystem_of(name) == subsystem


class TestFormatters:
    def test_json_includes_correlation_and_context(self):
        record = make_record(extra_data={"role": "cloud"})
        with correlation_context("0123456789abcdef"):
            data = json.loads(JSONFormatter().format(record))

        assert data["message"] == "hello world"
        assert data["level"] == "INFO"
        assert data["correlation_id"] == "0123456789abcdef"
        assert data["context"] == {"role": "cloud"}

    def test_human_shows_short_correlation_and_context(self):
        record = make_record(extra_data={"attempt": 2})
        with correlation_context("0123456789abcdef"):
            line = HumanReadableFormatter().format(record)

        assert "[01234567]" in line
        assert "hello world" in line
        assert line.endswith("| attempt=2")

    def test_human_without_correlation(self):
        with correlation_context(auto_generate=False):
            line = HumanReadableFormatter().format(make_record())
        assert "[--------]" in line


class TestSyncLogger:
    def test_json_file_output(self, tmp_path: Path, fresh_name: str):
        path = tmp_path / "logs" / "sync.json"
        logger = SyncLogger(fresh_name, log_format="json", json_file=path, human_output=None)

        logger.warning("retrying %s", "local", extra={"delay": 2.0})

        entry = json.loads(path.read_text(encoding="utf-8").splitlines()[-1])
        assert entry["message"] == "retrying local"
        assert entry["context"] == {"delay": 2.0}
        assert entry["function"] == "test_json_file_output"

    def test_records_reach_caplog(self, fresh_name: str, caplog: LogCaptureFixture):
        logger = get_logger(fresh_name)
        logger.info("visible %d", 1)
        assert "visible 1" in caplog.text

    def test_debug_flag_enables_subsystem(self, monkeypatch: MonkeyPatch, fresh_name: str):
        monkeypatch.setattr(const, "DEBUG_MQTT", True)
        mqtt_logger = get_logger("smarthome_sync.mqtt.tests_debug_flag")
        other = get_logger(fresh_name)

        assert mqtt_logger.is_enabled_for(logging.DEBUG)
        assert not other.is_enabled_for(logging.DEBUG)

    def test_set_level_updates_handlers(self, fresh_name: str):
        logger = get_logger(fresh_name)
        logger.set_level(logging.DEBUG)
        assert logger.is_enabled_for(logging.DEBUG)
        assert all(h.level == logging.DEBUG for h in logger.handlers)
