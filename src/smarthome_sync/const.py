import zoneinfo

import tzlocal

from smarthome_sync import __version__
from smarthome_sync.utils import env_bool, env_float, env_int, env_list, env_str

__all__ = [
    "AC_NAMESPACE",
    "BACKOFF_BASE_SECONDS",
    "BACKOFF_CAP_SECONDS",
    "BACKOFF_JITTER",
    "BRIDGE_STATUS_OFFLINE",
    "BRIDGE_STATUS_ONLINE",
    "CLOUD_MQTT_CLIENT_ID_PREFIX",
    "CLOUD_MQTT_HOST",
    "CLOUD_MQTT_KEEP_ALIVE",
    "CLOUD_MQTT_PASSWORD",
    "CLOUD_MQTT_PORT",
    "CLOUD_MQTT_USERNAME",
    "CLOUD_MQTT_USE_TLS",
    "COMMAND_QOS",
    "COMMAND_TIMEOUT_SECONDS",
    "CONFIG_FILE_PATH",
    "CONNECT_TIMEOUT_SECONDS",
    "CONTROLLER_NAMESPACE",
    "DEBUG",
    "DEBUG_MQTT",
    "DEBUG_NETWORK",
    "ENABLE_METRICS",
    "FAILURE_THRESHOLD",
    "LOCAL_BROKER_IP",
    "LOCAL_MQTT_CLIENT_ID_PREFIX",
    "LOCAL_MQTT_HOST",
    "LOCAL_MQTT_KEEP_ALIVE",
    "LOCAL_MQTT_PASSWORD",
    "LOCAL_MQTT_PORT",
    "LOCAL_MQTT_USERNAME",
    "LOCAL_MQTT_USE_TLS",
    "LOCAL_NETWORK_SSIDS",
    "LOCAL_NETWORK_SUBNETS",
    "LOCAL_TZ",
    "LOG_FORMAT",
    "LOG_HUMAN_OUTPUT",
    "LOG_JSON_FILE",
    "METRICS_PORT",
    "NETWORK_POLL_SECONDS",
    "OUTBOUND_BUFFER_SIZE",
    "PERSISTENT_BASE_DIR",
    "PROBE_TIMEOUT_SECONDS",
    "SMARTHOME_VERSION",
    "STATE_QOS",
    "STORAGE_KEY",
    "TOPIC_BASE_CLOUD",
    "TOPIC_BASE_LOCAL",
    "TOPIC_SCHEME_VERSION",
]

SMARTHOME_VERSION: str = __version__
LOCAL_TZ = zoneinfo.ZoneInfo(str(tzlocal.get_localzone()))

# Broker profiles
LOCAL_MQTT_HOST: str = env_str("SMARTHOME_LOCAL_MQTT_HOST", "192.168.0.100")
LOCAL_MQTT_PORT: int = env_int("SMARTHOME_LOCAL_MQTT_PORT", 1883)
LOCAL_MQTT_USERNAME: str = env_str("SMARTHOME_LOCAL_MQTT_USERNAME")
LOCAL_MQTT_PASSWORD: str = env_str("SMARTHOME_LOCAL_MQTT_PASSWORD")
LOCAL_MQTT_CLIENT_ID_PREFIX: str = env_str("SMARTHOME_LOCAL_MQTT_CLIENT_ID_PREFIX", "smart-home-local")
LOCAL_MQTT_USE_TLS: bool = env_bool("SMARTHOME_LOCAL_MQTT_USE_TLS", False)
LOCAL_MQTT_KEEP_ALIVE: int = env_int("SMARTHOME_LOCAL_MQTT_KEEP_ALIVE", 60)

CLOUD_MQTT_HOST: str = env_str("SMARTHOME_CLOUD_MQTT_HOST", "broker.example.net")
CLOUD_MQTT_PORT: int = env_int("SMARTHOME_CLOUD_MQTT_PORT", 8883)
CLOUD_MQTT_USERNAME: str = env_str("SMARTHOME_CLOUD_MQTT_USERNAME")
CLOUD_MQTT_PASSWORD: str = env_str("SMARTHOME_CLOUD_MQTT_PASSWORD")
CLOUD_MQTT_CLIENT_ID_PREFIX: str = env_str("SMARTHOME_CLOUD_MQTT_CLIENT_ID_PREFIX", "smart-home-cloud")
CLOUD_MQTT_USE_TLS: bool = env_bool("SMARTHOME_CLOUD_MQTT_USE_TLS", True)
CLOUD_MQTT_KEEP_ALIVE: int = env_int("SMARTHOME_CLOUD_MQTT_KEEP_ALIVE", 60)

# Local network trust
LOCAL_BROKER_IP: str = env_str("SMARTHOME_LOCAL_BROKER_IP")
LOCAL_NETWORK_SSIDS: list[str] = env_list("SMARTHOME_LOCAL_NETWORK_SSIDS")
LOCAL_NETWORK_SUBNETS: list[str] = env_list("SMARTHOME_LOCAL_NETWORK_SUBNETS")

# Topics. Bump TOPIC_SCHEME_VERSION together with the device firmware.
TOPIC_SCHEME_VERSION: str = "v1"
TOPIC_BASE_LOCAL: str = env_str("SMARTHOME_TOPIC_BASE_LOCAL", "home")
TOPIC_BASE_CLOUD: str = env_str("SMARTHOME_TOPIC_BASE_CLOUD", "cloud/home")
CONTROLLER_NAMESPACE: str = env_str("SMARTHOME_TOPIC_CONTROLLER", "controller")
AC_NAMESPACE: str = env_str("SMARTHOME_TOPIC_AC_BASE", "ac")
BRIDGE_STATUS_ONLINE: bytes = b"online"
BRIDGE_STATUS_OFFLINE: bytes = b"offline"
COMMAND_QOS: int = 1
STATE_QOS: int = 0

# Connection policy
FAILURE_THRESHOLD: int = max(1, env_int("SMARTHOME_FAILURE_THRESHOLD", 3))
BACKOFF_BASE_SECONDS: float = env_float("SMARTHOME_BACKOFF_BASE_SECONDS", 1.0)
BACKOFF_CAP_SECONDS: float = env_float("SMARTHOME_BACKOFF_CAP_SECONDS", 30.0)
BACKOFF_JITTER: float = env_float("SMARTHOME_BACKOFF_JITTER", 0.1)
CONNECT_TIMEOUT_SECONDS: float = env_float("SMARTHOME_CONNECT_TIMEOUT_SECONDS", 10.0)
PROBE_TIMEOUT_SECONDS: float = env_float("SMARTHOME_PROBE_TIMEOUT_SECONDS", 5.0)
OUTBOUND_BUFFER_SIZE: int = max(1, env_int("SMARTHOME_OUTBOUND_BUFFER_SIZE", 100))
COMMAND_TIMEOUT_SECONDS: float = env_float("SMARTHOME_COMMAND_TIMEOUT_SECONDS", 10.0)

# Persistence
PERSISTENT_BASE_DIR: str = env_str("SMARTHOME_PERSISTENT_BASE_DIR", "/data/smarthome-sync")
CONFIG_FILE_PATH: str = env_str("SMARTHOME_CONFIG_FILE", f"{PERSISTENT_BASE_DIR}/config.yaml")
STORAGE_KEY: str = env_str("SMARTHOME_STORAGE_KEY", "configuredDevices")

# Debug / logging
DEBUG: bool = env_bool("SMARTHOME_DEBUG", False)
DEBUG_MQTT: bool = env_bool("SMARTHOME_DEBUG_MQTT", False)
DEBUG_NETWORK: bool = env_bool("SMARTHOME_DEBUG_NETWORK", False)
LOG_FORMAT: str = env_str("SMARTHOME_LOG_FORMAT", "human")  # "json", "human", or "both"
LOG_JSON_FILE: str = env_str("SMARTHOME_LOG_JSON_FILE")
LOG_HUMAN_OUTPUT: str = env_str("SMARTHOME_LOG_HUMAN_OUTPUT", "stdout")  # "stdout", "stderr", or file path

# Service entry point
ENABLE_METRICS: bool = env_bool("SMARTHOME_ENABLE_METRICS", False)
METRICS_PORT: int = env_int("SMARTHOME_METRICS_PORT", 9400)
NETWORK_POLL_SECONDS: float = env_float("SMARTHOME_NETWORK_POLL_SECONDS", 15.0)
