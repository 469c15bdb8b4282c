"""Core data structures and typing protocols for the synchronization core."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum, StrEnum
from typing import TYPE_CHECKING, Protocol

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from smarthome_sync.mqtt.capabilities import Capability

# Characters with meaning in MQTT topic filters, never allowed inside one segment.
_FORBIDDEN_ID_CHARS = frozenset("/+#")


class BrokerRole(StrEnum):
    LOCAL = "local"
    CLOUD = "cloud"

    @property
    def alternate(self) -> BrokerRole:
        return BrokerRole.CLOUD if self is BrokerRole.LOCAL else BrokerRole.LOCAL


class FailureCause(StrEnum):
    NETWORK_UNREACHABLE = "network-unreachable"
    AUTH_REJECTED = "auth-rejected"
    TIMEOUT = "timeout"
    SUBSCRIPTION_FAILED = "subscription-failed"


class ConnectionState(Enum):
    """Connection state enumeration."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class Direction(StrEnum):
    SUBSCRIBE = "subscribe"
    PUBLISH = "publish"
    BOTH = "both"

    @property
    def subscribes(self) -> bool:
        return self in (Direction.SUBSCRIBE, Direction.BOTH)

    @property
    def publishes(self) -> bool:
        return self in (Direction.PUBLISH, Direction.BOTH)


class Channel(StrEnum):
    """Topic channel segment: device reports on ``state``, the app commands on ``set``."""

    STATE = "state"
    SET = "set"


class DeviceKind(StrEnum):
    SWITCH = "switch"
    SOCKET = "socket"
    RGB_LIGHT = "rgb_light"
    THERMOSTAT = "thermostat"
    AC_UNIT = "ac_unit"
    SENSOR = "sensor"


class ChangeKind(StrEnum):
    ADDED = "added"
    REMOVED = "removed"
    REPORTED = "reported"
    DESIRED = "desired"
    COMMAND_CONFIRMED = "command_confirmed"
    COMMAND_FAILED = "command_failed"


class BrokerProfile(BaseModel):
    """Connection parameters for one broker endpoint. Immutable once loaded."""

    model_config = ConfigDict(frozen=True)

    role: BrokerRole
    host: str
    port: int = Field(default=1883, ge=1, le=65535)
    use_tls: bool = False
    username: str | None = None
    credential: str | None = Field(default=None, repr=False)
    client_id_prefix: str = "smart-home"
    keep_alive_seconds: int = Field(default=60, ge=1)

    @property
    def endpoint(self) -> str:
        scheme = "mqtts" if self.use_tls else "mqtt"
        return f"{scheme}://{self.host}:{self.port}"


@dataclass(frozen=True)
class ConnectivitySignal:
    """Raw connectivity report from the platform network-status API."""

    is_connected: bool = True
    ssid: str | None = None
    ip_address: str | None = None
    network_type: str = "unknown"


@dataclass(frozen=True)
class NetworkContext:
    is_on_trusted_local_network: bool
    observed_ssid: str | None
    observed_subnet: str | None
    timestamp: datetime
    observed_ip: str | None = None
    is_connected: bool = True


@dataclass(frozen=True)
class ConnectionHealth:
    """Connection history handed to the broker selector."""

    active_role: BrokerRole | None = None
    consecutive_failures: int = 0
    sustained_failure_role: BrokerRole | None = None
    auth_rejected_roles: frozenset[BrokerRole] = frozenset()


@dataclass(frozen=True)
class TopicBinding:
    """Broker topics for one (device, capability field) pair.

    Templates are fully resolved except for the ``{channel}`` placeholder.
    """

    device_id: str
    field: str
    local_template: str
    cloud_template: str
    direction: Direction

    def template_for(self, role: BrokerRole) -> str:
        return self.local_template if role is BrokerRole.LOCAL else self.cloud_template

    def topic(self, role: BrokerRole, channel: Channel) -> str:
        return self.template_for(role).replace("{channel}", channel.value)


@dataclass(frozen=True)
class RoutedMessage:
    """Inbound message resolved to its logical device field."""

    device_id: str
    field: str
    value: object
    channel: Channel
    binding: TopicBinding
    device_timestamp: float | None = None


@dataclass(frozen=True)
class OutboundMessage:
    topic: str
    payload: bytes
    qos: int = 1
    retain: bool = False
    correlation_id: str | None = None
    # Set for commands: the topic is re-rendered for whichever broker is live at send time.
    binding: TopicBinding | None = None

    def topic_for(self, role: BrokerRole | None) -> str:
        if self.binding is None or role is None:
            return self.topic
        return self.binding.topic(role, Channel.SET)


@dataclass
class Device:
    """In-memory model of one configured device."""

    id: str
    name: str
    kind: DeviceKind
    reported_state: dict[str, object] = field(default_factory=dict)
    desired_state: dict[str, object] = field(default_factory=dict)
    last_reported_at: float | None = None
    pending_command_count: int = 0
    # Newest report timestamp per field; guards against out-of-order replays.
    field_reported_at: dict[str, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.id or _FORBIDDEN_ID_CHARS.intersection(self.id):
            msg = f"Invalid device id {self.id!r}: must be non-empty and contain none of '/', '+', '#'"
            raise ValueError(msg)
        self.kind = DeviceKind(self.kind)

    @property
    def is_online(self) -> bool | None:
        online = self.reported_state.get("online")
        return online if isinstance(online, bool) else None

    @property
    def capabilities(self) -> tuple[Capability, ...]:
        from smarthome_sync.mqtt.capabilities import capabilities_for

        return capabilities_for(self.kind)

    def snapshot(self) -> Device:
        """Return a detached copy safe to hand to observers."""
        return replace(
            self,
            reported_state=dict(self.reported_state),
            desired_state=dict(self.desired_state),
            field_reported_at=dict(self.field_reported_at),
        )

    def to_config(self) -> dict[str, str]:
        return {"id": self.id, "name": self.name, "kind": self.kind.value}


@dataclass(frozen=True)
class DeviceChange:
    """Notification delivered to device-change observers."""

    kind: ChangeKind
    device_id: str
    device: Device
    field: str | None = None
    error: Exception | None = None


@dataclass(frozen=True)
class HealthStatus:
    state: ConnectionState
    active_role: BrokerRole | None
    consecutive_failures: int
    auth_rejected_roles: frozenset[BrokerRole]
    network_context: NetworkContext | None
    pending_commands: int
    last_error: str | None = None
    override_role: BrokerRole | None = None


class MessageTransport(Protocol):
    """Outbound side of the connection manager as seen by the device store."""

    def publish(
        self,
        topic: str,
        payload: bytes,
        qos: int = 1,
        retain: bool = False,
        binding: TopicBinding | None = None,
    ) -> bool:
        """Send now if connected, otherwise buffer. Returns True if connected."""
        ...

    def subscribe_bindings(self, bindings: Iterable[TopicBinding]) -> None:
        """Subscribe the state topics of *bindings* on the live session, if any."""
        ...

    def unsubscribe_bindings(self, bindings: Iterable[TopicBinding]) -> None:
        """Unsubscribe the state topics of *bindings* on the live session, if any."""
        ...
