"""Mapping between logical (device, field) pairs and broker topics."""

from __future__ import annotations

import re
from collections.abc import Iterable

from smarthome_sync.config import TopicConfig
from smarthome_sync.const import COMMAND_QOS, STATE_QOS
from smarthome_sync.exceptions import PublishWithoutBindingError, UnknownDeviceError, UnroutableTopicError
from smarthome_sync.logging_abstraction import get_logger
from smarthome_sync.metrics import record_inbound
from smarthome_sync.mqtt.capabilities import Capability, capabilities_for, capability
from smarthome_sync.mqtt.topics import FIELD_TOPIC_TEMPLATE, compile_topic_pattern, render_topic
from smarthome_sync.structs import (
    BrokerRole,
    Channel,
    Device,
    DeviceKind,
    Direction,
    OutboundMessage,
    RoutedMessage,
    TopicBinding,
)

logger = get_logger(__name__)


def state_topics(bindings: Iterable[TopicBinding], role: BrokerRole) -> list[tuple[str, int]]:
    """(state topic, qos) on *role*'s broker for every binding the app subscribes to."""
    return [(b.topic(role, Channel.STATE), STATE_QOS) for b in bindings if b.direction.subscribes]


class TopicRouter:
    """Computes TopicBindings and routes messages in both directions.

    Bindings are derived only from the device id and kind plus the topic
    configuration, so they are deterministic and identical in shape for the
    local and cloud brokers.
    """

    def __init__(self, topics: TopicConfig | None = None) -> None:
        self.topics: TopicConfig = topics or TopicConfig()
        self._devices: dict[str, DeviceKind] = {}
        self._bindings: dict[str, tuple[TopicBinding, ...]] = {}
        self._patterns: dict[BrokerRole, tuple[re.Pattern[str], ...]] = {}
        self._compile_patterns()

    def _compile_patterns(self) -> None:
        for role in BrokerRole:
            base = self.topics.base_for(role)
            namespaces = dict.fromkeys((self.topics.controller_namespace, self.topics.ac_namespace))
            self._patterns[role] = tuple(
                compile_topic_pattern(render_topic(FIELD_TOPIC_TEMPLATE, base=base, namespace=ns))
                for ns in namespaces
            )

    def namespace_for(self, kind: DeviceKind) -> str:
        if kind is DeviceKind.AC_UNIT:
            return self.topics.ac_namespace
        return self.topics.controller_namespace

    def bindings_for(self, device: Device) -> list[TopicBinding]:
        """Bindings for every capability field of *device*, in capability-table order."""
        namespace = self.namespace_for(device.kind)
        bindings: list[TopicBinding] = []
        for cap in capabilities_for(device.kind):
            params = {"namespace": namespace, "device_id": device.id, "field": cap.field}
            bindings.append(
                TopicBinding(
                    device_id=device.id,
                    field=cap.field,
                    local_template=render_topic(FIELD_TOPIC_TEMPLATE, base=self.topics.local_base, **params),
                    cloud_template=render_topic(FIELD_TOPIC_TEMPLATE, base=self.topics.cloud_base, **params),
                    direction=cap.direction,
                ),
            )
        return bindings

    # Registry of devices the router may route for.

    def register(self, device: Device) -> list[TopicBinding]:
        bindings = self.bindings_for(device)
        self._devices[device.id] = device.kind
        self._bindings[device.id] = tuple(bindings)
        return bindings

    def unregister(self, device_id: str) -> list[TopicBinding]:
        _ = self._devices.pop(device_id, None)
        return list(self._bindings.pop(device_id, ()))

    def clear(self) -> None:
        self._devices.clear()
        self._bindings.clear()

    def set_topics(self, topics: TopicConfig) -> None:
        """Swap topic bases. Registered devices get their bindings recomputed."""
        self.topics = topics
        self._compile_patterns()
        for device_id, kind in list(self._devices.items()):
            _ = self.register(Device(id=device_id, name=device_id, kind=kind))

    def registered_bindings(self, device_id: str | None = None) -> list[TopicBinding]:
        if device_id is not None:
            return list(self._bindings.get(device_id, ()))
        return [b for bindings in self._bindings.values() for b in bindings]

    def subscriptions(self, role: BrokerRole) -> list[tuple[str, int]]:
        """(topic, qos) for every subscribe/both binding of every registered device."""
        return state_topics(self.registered_bindings(), role)

    def _binding(self, device_id: str, field: str) -> TopicBinding | None:
        for binding in self._bindings.get(device_id, ()):
            if binding.field == field:
                return binding
        return None

    def _capability(self, device_id: str, field: str) -> Capability | None:
        kind = self._devices.get(device_id)
        return capability(kind, field) if kind is not None else None

    def resolve_topic(self, topic: str, role: BrokerRole) -> tuple[TopicBinding, Channel]:
        """Find the binding a topic belongs to on *role*'s broker.

        Raises:
            UnroutableTopicError: no registered binding owns the topic.

        """
        for pattern in self._patterns.get(role, ()):
            match = pattern.match(topic)
            if match is None:
                continue
            try:
                channel = Channel(match["channel"])
            except ValueError:
                continue
            binding = self._binding(match["device_id"], match["field"])
            if binding is not None and binding.topic(role, channel) == topic:
                return binding, channel
        raise UnroutableTopicError(topic)

    def route_inbound(self, topic: str, payload: bytes, role: BrokerRole) -> RoutedMessage | None:
        """Resolve an inbound message. Returns None (Unmatched) instead of raising."""
        lp = "router:route_inbound:"
        try:
            binding, channel = self.resolve_topic(topic, role)
        except UnroutableTopicError as e:
            logger.warning("%s dropping message: %s", lp, e, extra={"role": role.value})
            record_inbound("unmatched")
            return None

        cap = self._capability(binding.device_id, binding.field)
        if cap is None:
            logger.warning("%s no capability for %s.%s", lp, binding.device_id, binding.field)
            record_inbound("unmatched")
            return None
        try:
            value, device_ts = cap.decode(payload)
        except ValueError as e:
            logger.warning(
                "%s undecodable payload on %s: %s",
                lp,
                topic,
                e,
                extra={"device_id": binding.device_id, "field": binding.field, "payload": payload[:64]},
            )
            record_inbound("unmatched")
            return None

        return RoutedMessage(
            device_id=binding.device_id,
            field=binding.field,
            value=value,
            channel=channel,
            binding=binding,
            device_timestamp=device_ts,
        )

    def route_outbound(self, device_id: str, field: str, value: object, role: BrokerRole) -> OutboundMessage:
        """Topic and payload for a command.

        Raises:
            UnknownDeviceError: device is not registered.
            PublishWithoutBindingError: field has no publish-direction binding.
            InvalidCommandValueError: value cannot be encoded.

        """
        if device_id not in self._devices:
            raise UnknownDeviceError(device_id)
        binding = self._binding(device_id, field)
        cap = self._capability(device_id, field)
        if binding is None or cap is None or not binding.direction.publishes:
            raise PublishWithoutBindingError(device_id, field)
        return OutboundMessage(
            topic=binding.topic(role, Channel.SET),
            payload=cap.encode(value),
            qos=COMMAND_QOS,
            binding=binding,
        )

    def normalize(self, device_id: str, field: str, value: object) -> object:
        """Canonical form of a command value (what a confirming report will carry)."""
        cap = self._capability(device_id, field)
        if cap is None or cap.direction is Direction.SUBSCRIBE:
            raise PublishWithoutBindingError(device_id, field)
        return cap.normalize(value)
