"""Unit tests for environment parsing and address helpers."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from _pytest.monkeypatch import MonkeyPatch

from smarthome_sync.utils import env_bool, env_float, env_int, env_list, env_str, subnet_of, utc_to_local


class TestEnvParsing:
    @pytest.mark.parametrize(("raw", "expected"), [("yes", True), ("ON", True), ("0", False), ("nope", False)])
    def test_env_bool(self, monkeypatch: MonkeyPatch, raw: str, expected: bool):
        monkeypatch.setenv("SMARTHOME_TEST_FLAG", raw)
        assert env_bool("SMARTHOME_TEST_FLAG") is expected

    def test_unset_values_fall_back(self, monkeypatch: MonkeyPatch):
        monkeypatch.delenv("SMARTHOME_TEST_VALUE", raising=False)
        assert env_bool("SMARTHOME_TEST_VALUE", True) is True
        assert env_int("SMARTHOME_TEST_VALUE", 7) == 7
        assert env_str("SMARTHOME_TEST_VALUE", "x") == "x"
        assert env_list("SMARTHOME_TEST_VALUE", ["a"]) == ["a"]

    def test_bad_numbers_fall_back(self, monkeypatch: MonkeyPatch):
        monkeypatch.setenv("SMARTHOME_TEST_VALUE", "twelve")
        assert env_int("SMARTHOME_TEST_VALUE", 12) == 12
        assert env_float("SMARTHOME_TEST_VALUE", 1.5) == 1.5

    def test_null_string_is_unset(self, monkeypatch: MonkeyPatch):
        monkeypatch.setenv("SMARTHOME_TEST_VALUE", " null ")
        assert env_str("SMARTHOME_TEST_VALUE", "default") == "default"

    def test_env_list_trims(self, monkeypatch: MonkeyPatch):
        monkeypatch.setenv("SMARTHOME_TEST_VALUE", " HomeNet, ,Attic ")
        assert env_list("SMARTHOME_TEST_VALUE") == ["HomeNet", "Attic"]


@pytest.mark.parametrize(
    ("address", "subnet"),
    [
        ("192.168.1.23", "192.168.1.0/24"),
        ("fd00::1234", "fd00::/64"),
        ("not-an-ip", None),
    ],
)
def test_subnet_of(address: str, subnet: str | None):
    assert subnet_of(address) == subnet


def test_utc_to_local_keeps_the_instant():
    utc = datetime(2026, 1, 2, 3, 4, 5, tzinfo=UTC)
    local = utc_to_local(utc)
    assert local == utc
    assert local.tzinfo is not None
