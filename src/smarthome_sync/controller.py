"""Controller facade wiring detection, selection, routing, transport and the device store.

All state lives in one ``SmartHomeController`` instance owned by one event
loop. Platform threads hand connectivity signals over with
``post_connectivity_signal``; everything else must be called on the loop.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime

from smarthome_sync.config import AppConfig
from smarthome_sync.correlation import correlation_context
from smarthome_sync.devices.persistence import KeyValueStore
from smarthome_sync.devices.store import DeviceObserver, DeviceStateStore, PendingCommand
from smarthome_sync.exceptions import BrokerConnectionError
from smarthome_sync.logging_abstraction import get_logger
from smarthome_sync.metrics import record_broker_switch, record_inbound
from smarthome_sync.mqtt.router import TopicRouter
from smarthome_sync.mqtt.topics import bridge_status_topic
from smarthome_sync.network.detector import NetworkContextDetector
from smarthome_sync.network.selector import BrokerSelector
from smarthome_sync.structs import (
    BrokerProfile,
    BrokerRole,
    Channel,
    ConnectionState,
    ConnectivitySignal,
    Device,
    DeviceKind,
    HealthStatus,
    NetworkContext,
)
from smarthome_sync.transport.connection_manager import ConnectionManager
from smarthome_sync.transport.scheduler import LoopScheduler, Scheduler
from smarthome_sync.transport.session import AiomqttSession, BrokerSession, ProbeResult, SessionFactory, probe

logger = get_logger(__name__)

HealthCallback = Callable[[HealthStatus], None]


class SmartHomeController:
    """Entry point for UI / service code.

    Core entry points: ``initialize_connectivity``, ``load_configured_devices``,
    ``issue_command`` and ``subscribe_to_device_changes``.
    """

    lp: str = "controller:"

    def __init__(
        self,
        config: AppConfig,
        kv_store: KeyValueStore | None = None,
        session_factory: SessionFactory | None = None,
        scheduler: Scheduler | None = None,
    ) -> None:
        self.config: AppConfig = config
        self.scheduler: Scheduler = scheduler or LoopScheduler()
        self._session_factory: SessionFactory = session_factory or self._aiomqtt_session

        self.detector: NetworkContextDetector = NetworkContextDetector(
            config.network.trusted_ssids,
            config.network.effective_subnets(),
        )
        self.selector: BrokerSelector = BrokerSelector(config.local_broker, config.cloud_broker)
        self.router: TopicRouter = TopicRouter(config.topics)
        self.connection: ConnectionManager = ConnectionManager(
            session_factory=self._make_session,
            scheduler=self.scheduler,
            subscription_provider=self.router.subscriptions,
            on_message=self._on_message,
            policy=config.policy,
            on_state_change=self._on_state_change,
            on_sustained_failure=self._on_sustained_failure,
            on_persistent_failure=self._on_persistent_failure,
        )
        self.store: DeviceStateStore = DeviceStateStore(
            router=self.router,
            transport=self.connection,
            scheduler=self.scheduler,
            kv_store=kv_store,
            storage_key=config.storage_key,
            command_timeout=config.policy.command_timeout_seconds,
            role_provider=lambda: self.connection.active_role,
        )

        self._health_subscribers: list[HealthCallback] = []
        self._loop: asyncio.AbstractEventLoop | None = None
        self._initialized: bool = False
        _ = self.detector.subscribe(self._on_network_change)

    # -- sessions -----------------------------------------------------------

    def _aiomqtt_session(self, profile: BrokerProfile) -> BrokerSession:
        topics = self.config.topics
        status_topic = bridge_status_topic(topics.base_for(profile.role), topics.controller_namespace)
        return AiomqttSession(profile, status_topic=status_topic)

    def _make_session(self, profile: BrokerProfile) -> BrokerSession:
        return self._session_factory(profile)

    # -- core entry points --------------------------------------------------

    def initialize_connectivity(self, signal: ConnectivitySignal | None = None) -> BrokerProfile:
        """Classify the current network and connect to the selected broker.

        Must be called on the event loop that will own the controller.
        """
        lp = f"{self.lp}initialize:"
        self._loop = asyncio.get_running_loop()
        self._initialized = True
        if signal is not None:
            _ = self.detector.evaluate(signal)
        profile = self._retarget()
        logger.info("%s connectivity initialized, target %s", lp, profile.role.value)
        return profile

    async def load_configured_devices(self) -> list[Device]:
        return await self.store.load()

    def issue_command(self, device_id: str, field: str, value: object) -> PendingCommand:
        """Send a command. The returned handle resolves on confirmation or raises CommandTimeoutError."""
        with correlation_context():
            return self.store.issue_command(device_id, field, value)

    def subscribe_to_device_changes(self, callback: DeviceObserver) -> Callable[[], None]:
        return self.store.subscribe(callback)

    # -- supplementary operations -------------------------------------------

    async def add_device(self, device_id: str, name: str, kind: DeviceKind | str) -> Device:
        return await self.store.add_device(device_id, name, kind)

    async def remove_device(self, device_id: str) -> None:
        await self.store.remove_device(device_id)

    def post_connectivity_signal(self, signal: ConnectivitySignal) -> None:
        """Thread-safe hand-off of a platform connectivity signal to the owning loop."""
        if self._loop is None:
            msg = "initialize_connectivity() must be called before posting signals"
            raise RuntimeError(msg)
        _ = self._loop.call_soon_threadsafe(self.handle_connectivity_signal, signal)

    def handle_connectivity_signal(self, signal: ConnectivitySignal) -> NetworkContext:
        """Evaluate a signal on the owning loop; a verdict change retargets the broker."""
        return self.detector.evaluate(signal)

    def force_broker(self, role: BrokerRole | None) -> BrokerProfile | None:
        """Pin the broker role, or return to automatic selection with None."""
        logger.info("%s broker override -> %s", f"{self.lp}force_broker:", role.value if role else "auto")
        self.selector.set_override(role)
        if not self._initialized:
            return None
        return self._retarget()

    async def probe_broker(self, role: BrokerRole) -> ProbeResult:
        """One throw-away connect/disconnect against *role*'s broker."""
        return await probe(
            self.config.profile_for(role),
            self.config.policy.probe_timeout_seconds,
            self._make_session,
        )

    def health(self) -> HealthStatus:
        last_error = self.connection.last_error
        return HealthStatus(
            state=self.connection.state,
            active_role=self.connection.active_role,
            consecutive_failures=self.connection.consecutive_failures,
            auth_rejected_roles=frozenset(self.connection.blocked_roles),
            network_context=self.detector.current,
            pending_commands=len(self.store.pending_commands()),
            last_error=str(last_error) if last_error is not None else None,
            override_role=self.selector.override,
        )

    def subscribe_to_health(self, callback: HealthCallback) -> Callable[[], None]:
        self._health_subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._health_subscribers:
                self._health_subscribers.remove(callback)

        return unsubscribe

    def reload_config(self, config: AppConfig) -> None:
        """Apply new profiles, trust lists, topics and policy; clears credential rejections."""
        lp = f"{self.lp}reload_config:"
        self.config = config
        self.detector.configure(config.network.trusted_ssids, config.network.effective_subnets())
        self.selector.set_profiles(config.local_broker, config.cloud_broker)
        self.router.set_topics(config.topics)
        self.connection.policy = config.policy
        self.connection.retry_policy.base_delay_seconds = config.policy.backoff_base_seconds
        self.connection.retry_policy.max_delay_seconds = config.policy.backoff_cap_seconds
        self.connection.retry_policy.jitter_factor = config.policy.backoff_jitter
        self.connection.clear_blocked()
        self.store.command_timeout = config.policy.command_timeout_seconds
        self.store.storage_key = config.storage_key
        logger.info("%s configuration reloaded", lp)

        if self._initialized:
            profile = self.selector.select_target(self._context(), self.connection.health())
            self.connection.start(profile)
        self._notify_health()

    async def stop(self) -> None:
        logger.info("%s stopping", f"{self.lp}stop:")
        self._initialized = False
        self.store.cancel_all()
        await self.connection.stop()

    # -- internals ----------------------------------------------------------

    def _context(self) -> NetworkContext:
        current = self.detector.current
        if current is not None:
            return current
        return NetworkContext(
            is_on_trusted_local_network=False,
            observed_ssid=None,
            observed_subnet=None,
            timestamp=datetime.now(UTC),
            is_connected=False,
        )

    def _retarget(self, sustained_failure_role: BrokerRole | None = None) -> BrokerProfile:
        health = replace(self.connection.health(), sustained_failure_role=sustained_failure_role)
        previous = self.connection.target
        profile = self.selector.select_target(self._context(), health)

        if previous is None or self.connection.state is ConnectionState.DISCONNECTED:
            self.connection.start(profile)
        elif previous != profile:
            reason = self.selector.last_reason.value if self.selector.last_reason else "unknown"
            record_broker_switch(profile.role.value, reason)
            _ = self.connection.switch_target(profile)
        return profile

    def _on_network_change(self, context: NetworkContext) -> None:
        if not self._initialized:
            return
        logger.debug(
            "%s trust verdict changed (trusted=%s)",
            f"{self.lp}network:",
            context.is_on_trusted_local_network,
        )
        _ = self._retarget()
        self._notify_health()

    def _on_sustained_failure(self, role: BrokerRole, error: BrokerConnectionError) -> None:
        logger.warning(
            "%s sustained failure on %s broker (%s)",
            f"{self.lp}failover:",
            role.value,
            error.cause.value,
        )
        if self._initialized:
            _ = self._retarget(sustained_failure_role=role)

    def _on_persistent_failure(self, role: BrokerRole, error: BrokerConnectionError) -> None:
        logger.error(
            "%s %s broker unusable until configuration reload: %s",
            f"{self.lp}persistent_failure:",
            role.value,
            error.reason,
        )
        self._notify_health()
        if self._initialized:
            _ = self._retarget()

    def _on_state_change(self, _state: ConnectionState, _role: BrokerRole | None) -> None:
        self._notify_health()

    def _notify_health(self) -> None:
        if not self._health_subscribers:
            return
        status = self.health()
        for callback in list(self._health_subscribers):
            try:
                callback(status)
            except Exception:
                logger.exception("%s health subscriber %r failed", self.lp, callback)

    def _on_message(self, topic: str, payload: bytes, role: BrokerRole) -> None:
        with correlation_context():
            routed = self.router.route_inbound(topic, payload, role)
            if routed is None:
                return
            if routed.channel is not Channel.STATE or not routed.binding.direction.subscribes:
                logger.debug("%s ignoring %s message on %s", f"{self.lp}inbound:", routed.channel.value, topic)
                record_inbound("ignored")
                return
            _ = self.store.apply_inbound(routed.device_id, routed.field, routed.value, routed.device_timestamp)
