"""Shared fixtures for unit tests.

This module provides reusable configuration, clocks and broker doubles for
testing the synchronization core without a network.
"""

from __future__ import annotations

import pytest

from smarthome_sync.config import AppConfig, NetworkConfig, PolicyConfig, TopicConfig
from smarthome_sync.devices.persistence import MemoryKeyValueStore
from smarthome_sync.mqtt.router import TopicRouter
from smarthome_sync.structs import BrokerProfile, BrokerRole, ConnectivitySignal
from tests.helpers.fakes import FakeSessionFactory, ManualScheduler, RecordingTransport

HOME_WIFI = ConnectivitySignal(is_connected=True, ssid="HomeNet", ip_address="192.168.1.23", network_type="wifi")
CAFE_WIFI = ConnectivitySignal(is_connected=True, ssid="CafeGuest", ip_address="10.20.0.7", network_type="wifi")
MOBILE = ConnectivitySignal(is_connected=True, ssid=None, ip_address="100.64.3.9", network_type="cellular")
OFFLINE = ConnectivitySignal(is_connected=False)


def make_config(**policy: float) -> AppConfig:
    """AppConfig with a trusted home network and zero-jitter policy overrides."""
    policy_values: dict[str, float] = {"backoff_jitter": 0.0, **policy}
    return AppConfig(
        local_broker=BrokerProfile(role=BrokerRole.LOCAL, host="192.168.1.10", client_id_prefix="test-local"),
        cloud_broker=BrokerProfile(
            role=BrokerRole.CLOUD,
            host="cloud.example.net",
            port=8883,
            use_tls=True,
            username="controller",
            credential="not-a-real-secret",
            client_id_prefix="test-cloud",
        ),
        network=NetworkConfig(trusted_ssids=("HomeNet",), trusted_subnets=("192.168.1.0/24",)),
        topics=TopicConfig(),
        policy=PolicyConfig.model_validate(policy_values),
    )


@pytest.fixture
def app_config() -> AppConfig:
    return make_config()


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def sessions() -> FakeSessionFactory:
    return FakeSessionFactory()


@pytest.fixture
def kv_store() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def router() -> TopicRouter:
    return TopicRouter(TopicConfig())


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()
