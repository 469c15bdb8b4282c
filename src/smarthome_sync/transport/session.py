"""Broker session abstraction and its aiomqtt implementation."""

from __future__ import annotations

import asyncio
import ssl
import time
import uuid
from collections.abc import AsyncIterator, Callable, Sequence
from dataclasses import dataclass
from typing import Protocol

import aiomqtt

from smarthome_sync.const import BRIDGE_STATUS_OFFLINE, BRIDGE_STATUS_ONLINE
from smarthome_sync.exceptions import (
    AuthenticationRejectedError,
    BrokerConnectionError,
    ConnectTimeoutError,
    NetworkUnreachableError,
    SubscriptionFailedError,
)
from smarthome_sync.logging_abstraction import get_logger
from smarthome_sync.structs import BrokerProfile

logger = get_logger(__name__)

# MQTT 3.1.1 CONNACK return codes and their MQTT 5 reason-code equivalents
# (bad user name or password, not authorized). Only meaningful on CONNACK:
# after connect paho reuses 4 for "no connection".
AUTH_REJECTED_CODES = frozenset({4, 5, 134, 135})
_SUBACK_FAILURE = 0x80


class BrokerSession(Protocol):
    """One connection to one broker. Single use: connect once, then discard."""

    profile: BrokerProfile

    async def connect(self, timeout: float) -> None: ...

    async def disconnect(self) -> None: ...

    async def subscribe(self, topics: Sequence[tuple[str, int]]) -> None: ...

    async def unsubscribe(self, topics: Sequence[str]) -> None: ...

    async def publish(self, topic: str, payload: bytes, qos: int = 1, retain: bool = False) -> None: ...

    def messages(self) -> AsyncIterator[tuple[str, bytes]]: ...


SessionFactory = Callable[[BrokerProfile], BrokerSession]


@dataclass(frozen=True)
class ProbeResult:
    reachable: bool
    elapsed: float
    error: BrokerConnectionError | None = None


def _reason_code(exc: aiomqtt.MqttError) -> int | None:
    rc = getattr(exc, "rc", None)
    if rc is None:
        return None
    value = getattr(rc, "value", rc)
    return value if isinstance(value, int) else None


def classify_error(exc: BaseException, profile: BrokerProfile | None = None) -> BrokerConnectionError:
    """Map a transport exception to the BrokerConnectionError family."""
    role = profile.role if profile is not None else None
    if isinstance(exc, BrokerConnectionError):
        return exc
    if isinstance(exc, TimeoutError):
        return ConnectTimeoutError(str(exc) or "timed out", role)
    if isinstance(exc, aiomqtt.MqttError):
        text = str(exc)
        code = _reason_code(exc)
        if code in AUTH_REJECTED_CODES or "code:134" in text or "code:135" in text:
            return AuthenticationRejectedError(text, role)
        if "timed out" in text.casefold():
            return ConnectTimeoutError(text, role)
        return NetworkUnreachableError(text, role)
    if isinstance(exc, OSError):
        return NetworkUnreachableError(str(exc) or type(exc).__name__, role)
    return NetworkUnreachableError(f"{type(exc).__name__}: {exc}", role)


def _payload_bytes(payload: object) -> bytes:
    if payload is None:
        return b""
    if isinstance(payload, bytes | bytearray):
        return bytes(payload)
    return str(payload).encode("utf-8")


class AiomqttSession:
    """BrokerSession over ``aiomqtt.Client``."""

    lp: str = "session:"

    def __init__(self, profile: BrokerProfile, status_topic: str | None = None) -> None:
        self.profile: BrokerProfile = profile
        self.status_topic: str | None = status_topic
        self.client_id: str = f"{profile.client_id_prefix}-{uuid.uuid4()}"
        will = aiomqtt.Will(topic=status_topic, payload=BRIDGE_STATUS_OFFLINE, retain=True) if status_topic else None
        self.client: aiomqtt.Client = aiomqtt.Client(
            hostname=profile.host,
            port=profile.port,
            username=profile.username,
            password=profile.credential,
            identifier=self.client_id,
            keepalive=profile.keep_alive_seconds,
            tls_context=ssl.create_default_context() if profile.use_tls else None,
            clean_session=True,
            will=will,
        )
        self._connected: bool = False

    async def connect(self, timeout: float) -> None:
        lp = f"{self.lp}connect:"
        logger.debug(
            "%s connecting to %s",
            lp,
            self.profile.endpoint,
            extra={"role": self.profile.role.value, "client_id": self.client_id},
        )
        try:
            async with asyncio.timeout(timeout):
                _ = await self.client.__aenter__()
        except (TimeoutError, aiomqtt.MqttError, OSError) as e:
            raise classify_error(e, self.profile) from e
        self._connected = True
        if self.status_topic:
            await self.publish(self.status_topic, BRIDGE_STATUS_ONLINE, qos=1, retain=True)

    async def disconnect(self) -> None:
        lp = f"{self.lp}disconnect:"
        if not self._connected:
            return
        self._connected = False
        try:
            if self.status_topic:
                await self.client.publish(self.status_topic, BRIDGE_STATUS_OFFLINE, qos=1, retain=True)
            await self.client.__aexit__(None, None, None)
        except aiomqtt.MqttError as e:
            logger.debug("%s ignoring error while disconnecting: %s", lp, e)

    async def subscribe(self, topics: Sequence[tuple[str, int]]) -> None:
        if not topics:
            return
        try:
            granted = await self.client.subscribe(list(topics))
        except aiomqtt.MqttCodeError as e:
            msg = f"subscribe rejected: {e}"
            raise SubscriptionFailedError(msg, self.profile.role) from e
        except aiomqtt.MqttError as e:
            raise classify_error(e, self.profile) from e
        codes = [getattr(code, "value", code) for code in granted or ()]
        failed = [topic for (topic, _), code in zip(topics, codes, strict=False) if code == _SUBACK_FAILURE]
        if failed:
            msg = f"broker refused subscription to {failed}"
            raise SubscriptionFailedError(msg, self.profile.role)

    async def unsubscribe(self, topics: Sequence[str]) -> None:
        if not topics:
            return
        try:
            await self.client.unsubscribe(list(topics))
        except aiomqtt.MqttError as e:
            raise NetworkUnreachableError(str(e), self.profile.role) from e

    async def publish(self, topic: str, payload: bytes, qos: int = 1, retain: bool = False) -> None:
        try:
            await self.client.publish(topic, payload, qos=qos, retain=retain)
        except aiomqtt.MqttError as e:
            raise NetworkUnreachableError(str(e), self.profile.role) from e

    async def messages(self) -> AsyncIterator[tuple[str, bytes]]:
        """Yield (topic, payload) in arrival order until the connection drops."""
        try:
            async for message in self.client.messages:
                yield message.topic.value, _payload_bytes(message.payload)
        except aiomqtt.MqttError as e:
            self._connected = False
            raise classify_error(e, self.profile) from e
        # Iterator ends when the client loses its connection.
        self._connected = False
        msg = "connection closed by broker"
        raise NetworkUnreachableError(msg, self.profile.role)


async def probe(
    profile: BrokerProfile,
    timeout: float,
    session_factory: SessionFactory = AiomqttSession,
) -> ProbeResult:
    """Connect once and disconnect, reporting reachability and handshake time."""
    lp = "session:probe:"
    session = session_factory(profile)
    started = time.monotonic()
    try:
        await session.connect(timeout)
    except BrokerConnectionError as e:
        elapsed = time.monotonic() - started
        logger.info("%s %s unreachable after %.2fs: %s", lp, profile.endpoint, elapsed, e)
        return ProbeResult(reachable=False, elapsed=elapsed, error=e)
    elapsed = time.monotonic() - started
    await session.disconnect()
    logger.info("%s %s reachable in %.2fs", lp, profile.endpoint, elapsed)
    return ProbeResult(reachable=True, elapsed=elapsed)
