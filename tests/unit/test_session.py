"""Unit tests for the aiomqtt-backed broker session and error classification."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterator
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import aiomqtt
import pytest

from smarthome_sync.const import BRIDGE_STATUS_OFFLINE, BRIDGE_STATUS_ONLINE
from smarthome_sync.exceptions import (
    AuthenticationRejectedError,
    ConnectTimeoutError,
    NetworkUnreachableError,
    SubscriptionFailedError,
)
from smarthome_sync.structs import BrokerProfile, BrokerRole, FailureCause
from smarthome_sync.transport.session import AiomqttSession, classify_error, probe
from tests.helpers.fakes import FakeSessionFactory

STATUS_TOPIC = "home/controller/bridge/status"
LOCAL = BrokerProfile(role=BrokerRole.LOCAL, host="192.168.1.10")
CLOUD = BrokerProfile(
    role=BrokerRole.CLOUD,
    host="cloud.example.net",
    port=8883,
    use_tls=True,
    username="controller",
    credential="not-a-real-secret",
)


@pytest.fixture
def client_cls() -> Iterator[MagicMock]:
    with patch("aiomqtt.Client") as mock_cls:
        mock_cls.return_value = AsyncMock()
        yield mock_cls


def message(topic: str, payload: object) -> SimpleNamespace:
    return SimpleNamespace(topic=SimpleNamespace(value=topic), payload=payload)


class TestClassifyError:
    @pytest.mark.parametrize("code", [4, 5, 134, 135])
    def test_auth_codes(self, code: int):
        error = classify_error(aiomqtt.MqttCodeError(code, "Connection refused"), CLOUD)
        assert isinstance(error, AuthenticationRejectedError)
        assert error.role is BrokerRole.CLOUD

    def test_auth_code_in_text(self):
        assert classify_error(aiomqtt.MqttError("[code:135] Not authorized")).cause is FailureCause.AUTH_REJECTED

    @pytest.mark.parametrize(
        ("exc", "cause"),
        [
            (TimeoutError(), FailureCause.TIMEOUT),
            (aiomqtt.MqttError("Operation timed out"), FailureCause.TIMEOUT),
            (aiomqtt.MqttCodeError(7, "lost"), FailureCause.NETWORK_UNREACHABLE),
            (ConnectionRefusedError(111, "Connection refused"), FailureCause.NETWORK_UNREACHABLE),
            (OSError(), FailureCause.NETWORK_UNREACHABLE),
            (RuntimeError("odd"), FailureCause.NETWORK_UNREACHABLE),
        ],
    )
    def test_causes(self, exc: BaseException, cause: FailureCause):
        assert classify_error(exc, LOCAL).cause is cause

    def test_classified_errors_pass_through(self):
        original = SubscriptionFailedError("nope", BrokerRole.LOCAL)
        assert classify_error(original, CLOUD) is original

    def test_timeout_has_a_reason(self):
        assert classify_error(TimeoutError(), LOCAL).reason == "timed out"


class TestAiomqttSession:
    @pytest.mark.asyncio
    async def test_client_built_from_profile(self, client_cls: MagicMock):
        session = AiomqttSession(CLOUD, status_topic=STATUS_TOPIC)

        kwargs = client_cls.call_args.kwargs
        assert kwargs["hostname"] == "cloud.example.net"
        assert kwargs["port"] == 8883
        assert kwargs["username"] == "controller"
        assert kwargs["password"] == "not-a-real-secret"
        assert kwargs["tls_context"] is not None
        assert kwargs["clean_session"] is True
        assert kwargs["will"].topic == STATUS_TOPIC
        assert kwargs["identifier"] == session.client_id
        assert session.client_id.startswith("smart-home-")

    @pytest.mark.asyncio
    async def test_plain_local_profile_has_no_tls_or_will(self, client_cls: MagicMock):
        _ = AiomqttSession(LOCAL)
        assert client_cls.call_args.kwargs["tls_context"] is None
        assert client_cls.call_args.kwargs["will"] is None

    @pytest.mark.asyncio
    async def test_connect_announces_online(self, client_cls: MagicMock):
        session = AiomqttSession(LOCAL, status_topic=STATUS_TOPIC)
        client = client_cls.return_value

        await session.connect(1.0)

        client.__aenter__.assert_awaited_once()
        client.publish.assert_awaited_once_with(STATUS_TOPIC, BRIDGE_STATUS_ONLINE, qos=1, retain=True)

    @pytest.mark.asyncio
    async def test_connect_rejected_credentials(self, client_cls: MagicMock):
        client_cls.return_value.__aenter__.side_effect = aiomqtt.MqttCodeError(5, "Connection refused")
        session = AiomqttSession(CLOUD)

        with pytest.raises(AuthenticationRejectedError):
            await session.connect(1.0)

    @pytest.mark.asyncio
    async def test_connect_timeout(self, client_cls: MagicMock):
        async def hang(*_args: object) -> None:
            await asyncio.sleep(10)

        client_cls.return_value.__aenter__.side_effect = hang
        session = AiomqttSession(LOCAL)

        with pytest.raises(ConnectTimeoutError):
            await session.connect(0.01)

    @pytest.mark.asyncio
    async def test_connect_refused(self, client_cls: MagicMock):
        client_cls.return_value.__aenter__.side_effect = ConnectionRefusedError(111, "Connection refused")
        session = AiomqttSession(LOCAL)

        with pytest.raises(NetworkUnreachableError):
            await session.connect(1.0)

    @pytest.mark.asyncio
    async def test_disconnect_announces_offline_once(self, client_cls: MagicMock):
        session = AiomqttSession(LOCAL, status_topic=STATUS_TOPIC)
        client = client_cls.return_value
        await session.connect(1.0)

        await session.disconnect()
        await session.disconnect()

        client.publish.assert_awaited_with(STATUS_TOPIC, BRIDGE_STATUS_OFFLINE, qos=1, retain=True)
        client.__aexit__.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_disconnect_without_connect_is_a_no_op(self, client_cls: MagicMock):
        session = AiomqttSession(LOCAL)
        await session.disconnect()
        client_cls.return_value.__aexit__.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_disconnect_swallows_transport_errors(self, client_cls: MagicMock):
        session = AiomqttSession(LOCAL)
        client_cls.return_value.__aexit__.side_effect = aiomqtt.MqttError("already gone")
        await session.connect(1.0)

        await session.disconnect()

    @pytest.mark.asyncio
    async def test_subscribe_refused_topic(self, client_cls: MagicMock):
        client_cls.return_value.subscribe.return_value = (0, 0x80)
        session = AiomqttSession(LOCAL)

        with pytest.raises(SubscriptionFailedError, match="b/state/x"):
            await session.subscribe([("a/state/x", 0), ("b/state/x", 0)])

    @pytest.mark.asyncio
    async def test_subscribe_error_code(self, client_cls: MagicMock):
        client_cls.return_value.subscribe.side_effect = aiomqtt.MqttCodeError(4, "Could not subscribe")
        session = AiomqttSession(LOCAL)

        with pytest.raises(SubscriptionFailedError):
            await session.subscribe([("a/state/x", 0)])

    @pytest.mark.asyncio
    async def test_subscribe_nothing_skips_client(self, client_cls: MagicMock):
        await AiomqttSession(LOCAL).subscribe([])
        client_cls.return_value.subscribe.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_publish_failure_is_never_an_auth_rejection(self, client_cls: MagicMock):
        client_cls.return_value.publish.side_effect = aiomqtt.MqttCodeError(4, "Could not publish message")
        session = AiomqttSession(LOCAL)

        with pytest.raises(NetworkUnreachableError):
            await session.publish("a/set/x", b"ON")

    @pytest.mark.asyncio
    async def test_messages_in_order_then_connection_closed(self, client_cls: MagicMock):
        async def stream() -> AsyncIterator[SimpleNamespace]:
            yield message("a/state/on", b"ON")
            yield message("a/state/brightness", 42)
            yield message("a/state/online", None)

        client_cls.return_value.messages = stream()
        session = AiomqttSession(LOCAL)
        received: list[tuple[str, bytes]] = []

        with pytest.raises(NetworkUnreachableError, match="closed"):
            async for item in session.messages():
                received.append(item)

        assert received == [("a/state/on", b"ON"), ("a/state/brightness", b"42"), ("a/state/online", b"")]

    @pytest.mark.asyncio
    async def test_messages_transport_error_is_classified(self, client_cls: MagicMock):
        async def stream() -> AsyncIterator[SimpleNamespace]:
            yield message("a/state/on", b"ON")
            raise aiomqtt.MqttError("Disconnected during message iteration")

        client_cls.return_value.messages = stream()
        session = AiomqttSession(LOCAL)

        with pytest.raises(NetworkUnreachableError):
            async for _ in session.messages():
                pass


class TestProbe:
    @pytest.mark.asyncio
    async def test_reachable_broker_is_disconnected_after(self):
        sessions = FakeSessionFactory()

        result = await probe(LOCAL, 1.0, sessions)

        assert result.reachable is True
        assert result.error is None
        assert sessions.latest().disconnect_calls == 1

    @pytest.mark.asyncio
    async def test_unreachable_broker(self):
        sessions = FakeSessionFactory()
        sessions.fail_next(BrokerRole.CLOUD, ConnectTimeoutError("timed out", BrokerRole.CLOUD))

        result = await probe(CLOUD, 1.0, sessions)

        assert result.reachable is False
        assert result.error is not None
        assert result.error.cause is FailureCause.TIMEOUT
