"""Configuration models and loading.

Defaults come from the ``SMARTHOME_*`` environment (see :mod:`smarthome_sync.const`);
an optional YAML file overrides them section by section.
"""

from __future__ import annotations

import ipaddress
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from smarthome_sync import const
from smarthome_sync.exceptions import ConfigurationError
from smarthome_sync.logging_abstraction import get_logger
from smarthome_sync.structs import BrokerProfile, BrokerRole
from smarthome_sync.utils import subnet_of

__all__ = [
    "AppConfig",
    "BrokerProfile",
    "DebugConfig",
    "NetworkConfig",
    "PolicyConfig",
    "TopicConfig",
    "default_config_data",
    "load_config",
]

logger = get_logger(__name__)

_TOPIC_FORBIDDEN = frozenset("+#")


class NetworkConfig(BaseModel):
    """Local-network trust lists."""

    model_config = ConfigDict(frozen=True)

    trusted_ssids: tuple[str, ...] = ()
    trusted_subnets: tuple[str, ...] = ()
    local_broker_ip: str | None = None

    @field_validator("trusted_ssids")
    @classmethod
    def _strip_ssids(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(ssid.strip() for ssid in value if ssid.strip())

    @field_validator("trusted_subnets")
    @classmethod
    def _normalize_subnets(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        normalized: list[str] = []
        for subnet in value:
            try:
                normalized.append(str(ipaddress.ip_network(subnet.strip(), strict=False)))
            except ValueError as e:
                msg = f"invalid subnet {subnet!r}: {e}"
                raise ValueError(msg) from e
        return tuple(normalized)

    @field_validator("local_broker_ip")
    @classmethod
    def _check_broker_ip(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        if subnet_of(value.strip()) is None:
            msg = f"local_broker_ip must be an IP address, got {value!r}"
            raise ValueError(msg)
        return value.strip()

    def effective_subnets(self) -> tuple[str, ...]:
        """Trusted subnets plus the implicit subnet of the local broker."""
        subnets = list(self.trusted_subnets)
        if self.local_broker_ip:
            implicit = subnet_of(self.local_broker_ip)
            if implicit and implicit not in subnets:
                subnets.append(implicit)
        return tuple(subnets)


class TopicConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    local_base: str = "home"
    cloud_base: str = "cloud/home"
    controller_namespace: str = "controller"
    ac_namespace: str = "ac"

    @field_validator("local_base", "cloud_base", "controller_namespace", "ac_namespace")
    @classmethod
    def _clean_segment(cls, value: str) -> str:
        value = value.strip().strip("/")
        if _TOPIC_FORBIDDEN.intersection(value):
            msg = f"topic segment {value!r} may not contain MQTT wildcards"
            raise ValueError(msg)
        return value

    @model_validator(mode="after")
    def _bases_present(self) -> TopicConfig:
        if not self.local_base or not self.cloud_base:
            msg = "local_base and cloud_base must be non-empty"
            raise ValueError(msg)
        return self

    def base_for(self, role: BrokerRole) -> str:
        return self.local_base if role is BrokerRole.LOCAL else self.cloud_base


class PolicyConfig(BaseModel):
    """Connection and command policy values."""

    model_config = ConfigDict(frozen=True)

    failure_threshold: int = Field(default=3, ge=1)
    backoff_base_seconds: float = Field(default=1.0, gt=0)
    backoff_cap_seconds: float = Field(default=30.0, gt=0)
    backoff_jitter: float = Field(default=0.1, ge=0, lt=1)
    connect_timeout_seconds: float = Field(default=10.0, gt=0)
    probe_timeout_seconds: float = Field(default=5.0, gt=0)
    outbound_buffer_size: int = Field(default=100, ge=1)
    command_timeout_seconds: float = Field(default=10.0, gt=0)

    @model_validator(mode="after")
    def _cap_not_below_base(self) -> PolicyConfig:
        if self.backoff_cap_seconds < self.backoff_base_seconds:
            msg = "backoff_cap_seconds must be >= backoff_base_seconds"
            raise ValueError(msg)
        return self


class DebugConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    enabled: bool = False
    mqtt: bool = False
    network: bool = False


class AppConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    local_broker: BrokerProfile
    cloud_broker: BrokerProfile
    network: NetworkConfig = NetworkConfig()
    topics: TopicConfig = TopicConfig()
    policy: PolicyConfig = PolicyConfig()
    storage_key: str = "configuredDevices"
    debug: DebugConfig = DebugConfig()

    @model_validator(mode="after")
    def _check_roles(self) -> AppConfig:
        if self.local_broker.role is not BrokerRole.LOCAL:
            msg = "local_broker must have role 'local'"
            raise ValueError(msg)
        if self.cloud_broker.role is not BrokerRole.CLOUD:
            msg = "cloud_broker must have role 'cloud'"
            raise ValueError(msg)
        return self

    def profile_for(self, role: BrokerRole) -> BrokerProfile:
        return self.local_broker if role is BrokerRole.LOCAL else self.cloud_broker


def default_config_data() -> dict[str, Any]:
    """Build the raw config mapping from the environment-derived constants."""
    return {
        "local_broker": {
            "role": BrokerRole.LOCAL,
            "host": const.LOCAL_MQTT_HOST,
            "port": const.LOCAL_MQTT_PORT,
            "use_tls": const.LOCAL_MQTT_USE_TLS,
            "username": const.LOCAL_MQTT_USERNAME or None,
            "credential": const.LOCAL_MQTT_PASSWORD or None,
            "client_id_prefix": const.LOCAL_MQTT_CLIENT_ID_PREFIX,
            "keep_alive_seconds": const.LOCAL_MQTT_KEEP_ALIVE,
        },
        "cloud_broker": {
            "role": BrokerRole.CLOUD,
            "host": const.CLOUD_MQTT_HOST,
            "port": const.CLOUD_MQTT_PORT,
            "use_tls": const.CLOUD_MQTT_USE_TLS,
            "username": const.CLOUD_MQTT_USERNAME or None,
            "credential": const.CLOUD_MQTT_PASSWORD or None,
            "client_id_prefix": const.CLOUD_MQTT_CLIENT_ID_PREFIX,
            "keep_alive_seconds": const.CLOUD_MQTT_KEEP_ALIVE,
        },
        "network": {
            "trusted_ssids": list(const.LOCAL_NETWORK_SSIDS),
            "trusted_subnets": list(const.LOCAL_NETWORK_SUBNETS),
            "local_broker_ip": const.LOCAL_BROKER_IP or None,
        },
        "topics": {
            "local_base": const.TOPIC_BASE_LOCAL,
            "cloud_base": const.TOPIC_BASE_CLOUD,
            "controller_namespace": const.CONTROLLER_NAMESPACE,
            "ac_namespace": const.AC_NAMESPACE,
        },
        "policy": {
            "failure_threshold": const.FAILURE_THRESHOLD,
            "backoff_base_seconds": const.BACKOFF_BASE_SECONDS,
            "backoff_cap_seconds": const.BACKOFF_CAP_SECONDS,
            "backoff_jitter": const.BACKOFF_JITTER,
            "connect_timeout_seconds": const.CONNECT_TIMEOUT_SECONDS,
            "probe_timeout_seconds": const.PROBE_TIMEOUT_SECONDS,
            "outbound_buffer_size": const.OUTBOUND_BUFFER_SIZE,
            "command_timeout_seconds": const.COMMAND_TIMEOUT_SECONDS,
        },
        "storage_key": const.STORAGE_KEY,
        "debug": {
            "enabled": const.DEBUG,
            "mqtt": const.DEBUG_MQTT,
            "network": const.DEBUG_NETWORK,
        },
    }


def _merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _merge(current, value)  # pyright: ignore[reportUnknownArgumentType]
        else:
            merged[key] = value
    return merged


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        with path.open(encoding="utf-8") as f:
            raw = yaml.safe_load(f)
    except OSError as e:
        msg = f"Cannot read config file {path}: {e}"
        raise ConfigurationError(msg) from e
    except yaml.YAMLError as e:
        msg = f"Config file {path} is not valid YAML: {e}"
        raise ConfigurationError(msg) from e

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        msg = f"Config file {path} must contain a mapping at top level"
        raise ConfigurationError(msg)
    return raw  # pyright: ignore[reportUnknownVariableType]


def load_config(path: str | Path | None = None) -> AppConfig:
    """Load the application configuration.

    Args:
        path: YAML file to overlay on the environment defaults. When None the
            file at ``SMARTHOME_CONFIG_FILE`` is used if it exists.

    Raises:
        ConfigurationError: The file is unreadable or the result fails validation.

    """
    lp = "config:load:"
    data = default_config_data()

    if path is not None:
        config_path = Path(path)
        data = _merge(data, _read_yaml(config_path))
        logger.info("%s loaded overrides from %s", lp, config_path)
    else:
        default_path = Path(const.CONFIG_FILE_PATH)
        if default_path.is_file():
            data = _merge(data, _read_yaml(default_path))
            logger.info("%s loaded overrides from %s", lp, default_path)
        else:
            logger.debug("%s no config file at %s, using environment only", lp, default_path)

    # Roles follow the section a profile is declared in.
    for section, role in (("local_broker", BrokerRole.LOCAL), ("cloud_broker", BrokerRole.CLOUD)):
        if isinstance(data.get(section), dict):
            data[section] = {**data[section], "role": role}

    try:
        return AppConfig.model_validate(data)
    except ValidationError as e:
        msg = f"Invalid configuration: {e}"
        raise ConfigurationError(msg) from e
