"""Broker connection lifecycle: connect, subscribe, reconnect with backoff, failover signalling.

The manager owns exactly one broker session at a time. Every method is meant to
be called from the event loop that owns the controller state; timers go
through the injected Scheduler so tests can drive time by hand.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Callable, Coroutine, Iterable
from typing import Any

from smarthome_sync.config import PolicyConfig
from smarthome_sync.exceptions import BrokerConnectionError
from smarthome_sync.logging_abstraction import get_logger
from smarthome_sync.metrics import (
    record_buffer_size,
    record_connect_attempt,
    record_connect_duration,
    record_connection_state,
    record_outbound,
)
from smarthome_sync.mqtt.router import state_topics
from smarthome_sync.structs import (
    BrokerProfile,
    BrokerRole,
    ConnectionHealth,
    ConnectionState,
    FailureCause,
    OutboundMessage,
    TopicBinding,
)
from smarthome_sync.transport.retry_policy import RetryPolicy
from smarthome_sync.transport.scheduler import Scheduler, TimerHandle
from smarthome_sync.transport.session import BrokerSession, SessionFactory

logger = get_logger(__name__)

SubscriptionProvider = Callable[[BrokerRole], list[tuple[str, int]]]
MessageSink = Callable[[str, bytes, BrokerRole], None]
StateListener = Callable[[ConnectionState, BrokerRole | None], None]
FailureListener = Callable[[BrokerRole, BrokerConnectionError], None]


class ConnectionManager:
    """Single-session MQTT connection state machine.

    States follow Disconnected -> Connecting -> {Connected | Failed};
    Connected -> Reconnecting on drop; Reconnecting -> {Connected | Failed}.

    Callbacks:
        on_message: every inbound (topic, payload, role), synchronously, in arrival order
        on_state_change: every state transition
        on_sustained_failure: ``failure_threshold`` consecutive failed attempts on one target
        on_persistent_failure: broker rejected the credentials; no automatic retry for that role
    """

    lp: str = "conn:"

    def __init__(
        self,
        session_factory: SessionFactory,
        scheduler: Scheduler,
        subscription_provider: SubscriptionProvider,
        on_message: MessageSink,
        policy: PolicyConfig | None = None,
        on_state_change: StateListener | None = None,
        on_sustained_failure: FailureListener | None = None,
        on_persistent_failure: FailureListener | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.session_factory: SessionFactory = session_factory
        self.scheduler: Scheduler = scheduler
        self.subscription_provider: SubscriptionProvider = subscription_provider
        self.on_message: MessageSink = on_message
        self.on_state_change: StateListener | None = on_state_change
        self.on_sustained_failure: FailureListener | None = on_sustained_failure
        self.on_persistent_failure: FailureListener | None = on_persistent_failure

        self.policy: PolicyConfig = policy or PolicyConfig()
        self.retry_policy: RetryPolicy = retry_policy or RetryPolicy(
            base_delay_seconds=self.policy.backoff_base_seconds,
            max_delay_seconds=self.policy.backoff_cap_seconds,
            jitter_factor=self.policy.backoff_jitter,
        )

        self.state: ConnectionState = ConnectionState.DISCONNECTED
        self.target: BrokerProfile | None = None
        self.session: BrokerSession | None = None
        self.consecutive_failures: int = 0
        self.blocked_roles: set[BrokerRole] = set()
        self.last_error: BrokerConnectionError | None = None
        self.connect_attempts: int = 0

        self._buffer: deque[OutboundMessage] = deque()
        self._backoff_attempt: int = 0
        self._backoff_handle: TimerHandle | None = None
        # Bumped on every target switch and stop; results of older tasks are discarded.
        self._generation: int = 0

        self.connect_task: asyncio.Task[None] | None = None
        self.reader_task: asyncio.Task[None] | None = None
        self.writer_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[None]] = set()

    # -- properties ---------------------------------------------------------

    @property
    def active_role(self) -> BrokerRole | None:
        return self.target.role if self.target is not None else None

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.CONNECTED and self.session is not None

    @property
    def buffered(self) -> list[OutboundMessage]:
        return list(self._buffer)

    @property
    def backoff_pending(self) -> bool:
        return self._backoff_handle is not None

    def health(self) -> ConnectionHealth:
        return ConnectionHealth(
            active_role=self.active_role,
            consecutive_failures=self.consecutive_failures,
            auth_rejected_roles=frozenset(self.blocked_roles),
        )

    # -- lifecycle ----------------------------------------------------------

    def start(self, profile: BrokerProfile) -> None:
        """Begin connecting to *profile* (Disconnected -> Connecting)."""
        _ = self.switch_target(profile, force=True)

    def switch_target(self, profile: BrokerProfile, force: bool = False) -> bool:
        """Retarget the session, cancelling any backoff timer and in-flight connect.

        A call with the current target while connected or connecting is ignored
        unless *force* is set. Returns True if a new connection attempt started.
        """
        lp = f"{self.lp}switch_target:"
        same = self.target is not None and self.target == profile
        if same and not force and self.state is not ConnectionState.DISCONNECTED:
            logger.debug("%s already targeting %s (%s)", lp, profile.role.value, self.state.value)
            return False

        logger.info(
            "%s targeting %s broker %s",
            lp,
            profile.role.value,
            profile.endpoint,
            extra={"previous": self.active_role.value if self.active_role else None},
        )
        previous_session, previous_task = self._abandon_current()
        self.target = profile
        self.consecutive_failures = 0
        self._backoff_attempt = 0

        if profile.role in self.blocked_roles:
            logger.warning(
                "%s %s broker credentials were rejected; waiting for a configuration reload",
                lp,
                profile.role.value,
            )
            self._set_state(ConnectionState.FAILED)
            if previous_session is not None:
                self._spawn_background(previous_session.disconnect())
            return False

        self._begin_attempt(ConnectionState.CONNECTING, previous_session, previous_task)
        return True

    async def stop(self) -> None:
        """Cancel timers and tasks and close the live session."""
        lp = f"{self.lp}stop:"
        logger.info("%s stopping connection manager", lp)
        reader = self.reader_task
        previous_session, previous_task = self._abandon_current()
        tasks = [t for t in (previous_task, reader, self.writer_task, *self._background) if t is not None]
        for task in tasks:
            if not task.done():
                _ = task.cancel()
        if tasks:
            _ = await asyncio.wait(tasks)
        self.writer_task = None
        self._background.clear()
        if previous_session is not None:
            await previous_session.disconnect()
        self._set_state(ConnectionState.DISCONNECTED)

    def clear_blocked(self, role: BrokerRole | None = None) -> None:
        """Forget credential rejections (all roles when *role* is None)."""
        if role is None:
            self.blocked_roles.clear()
        else:
            self.blocked_roles.discard(role)

    def _abandon_current(self) -> tuple[BrokerSession | None, asyncio.Task[None] | None]:
        """Invalidate the current attempt. Returns what the next attempt must wait for."""
        self._generation += 1
        self._cancel_backoff()

        task = self.connect_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            _ = task.cancel()
        else:
            task = None
        self.connect_task = None

        if self.reader_task is not None and not self.reader_task.done():
            _ = self.reader_task.cancel()
        self.reader_task = None

        session, self.session = self.session, None
        return session, task

    def _cancel_backoff(self) -> None:
        if self._backoff_handle is not None:
            self._backoff_handle.cancel()
            self._backoff_handle = None

    def _spawn_background(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self.state:
            return
        previous, self.state = self.state, state
        role = self.active_role
        logger.debug(
            "%s %s -> %s",
            f"{self.lp}state:",
            previous.value,
            state.value,
            extra={"role": role.value if role else None},
        )
        record_connection_state(role.value if role else "none", state.value)
        if self.on_state_change is not None:
            self.on_state_change(state, role)

    # -- connecting ---------------------------------------------------------

    def _begin_attempt(
        self,
        state: ConnectionState,
        previous_session: BrokerSession | None = None,
        previous_task: asyncio.Task[None] | None = None,
    ) -> None:
        assert self.target is not None, "target must be set before connecting"
        self._set_state(state)
        self.connect_task = asyncio.create_task(
            self._connect(self.target, self._generation, previous_session, previous_task),
        )

    async def _connect(
        self,
        profile: BrokerProfile,
        generation: int,
        previous_session: BrokerSession | None,
        previous_task: asyncio.Task[None] | None,
    ) -> None:
        lp = f"{self.lp}connect:"
        # Never two live sessions: the old attempt and session are gone before dialing.
        if previous_task is not None:
            _ = await asyncio.wait([previous_task])
        if previous_session is not None:
            await previous_session.disconnect()

        self.connect_attempts += 1
        session = self.session_factory(profile)
        started = time.monotonic()
        try:
            await session.connect(self.policy.connect_timeout_seconds)
            await self._subscribe_current(session, profile.role)
        except BrokerConnectionError as e:
            await session.disconnect()
            if generation == self._generation:
                self._on_attempt_failed(profile, e)
            return
        except asyncio.CancelledError:
            await session.disconnect()
            raise

        if generation != self._generation:
            logger.debug("%s discarding session for superseded target %s", lp, profile.role.value)
            await session.disconnect()
            return

        record_connect_attempt(profile.role.value, "success")
        record_connect_duration(profile.role.value, time.monotonic() - started)
        logger.info(
            "%s connected to %s broker %s",
            lp,
            profile.role.value,
            profile.endpoint,
            extra={"attempts": self.consecutive_failures + 1},
        )
        self.session = session
        self.consecutive_failures = 0
        self._backoff_attempt = 0
        self.last_error = None
        self._set_state(ConnectionState.CONNECTED)
        self.reader_task = asyncio.create_task(self._read_loop(session, profile.role, generation))
        self._ensure_writer()

    async def _subscribe_current(self, session: BrokerSession, role: BrokerRole) -> None:
        """Subscribe the full topic set, then catch up with devices added or removed meanwhile.

        ``subscribe_bindings`` ignores changes until Connected, so the set is
        re-read after every await until it stops moving.
        """
        subscribed = self.subscription_provider(role)
        await session.subscribe(subscribed)
        while True:
            current = self.subscription_provider(role)
            current_topics = {topic for topic, _ in current}
            added = [entry for entry in current if entry not in subscribed]
            removed = [topic for topic, _ in subscribed if topic not in current_topics]
            if not added and not removed:
                return
            logger.debug(
                "%s device set changed while subscribing",
                f"{self.lp}connect:",
                extra={"added": len(added), "removed": len(removed)},
            )
            subscribed = current
            if added:
                await session.subscribe(added)
            if removed:
                await session.unsubscribe(removed)

    def _on_attempt_failed(self, profile: BrokerProfile, error: BrokerConnectionError) -> None:
        lp = f"{self.lp}attempt_failed:"
        role = profile.role
        self.last_error = error
        record_connect_attempt(role.value, error.cause.value)

        if error.cause is FailureCause.AUTH_REJECTED:
            logger.error(
                "%s %s broker rejected credentials; not retrying until configuration reload",
                lp,
                role.value,
                extra={"endpoint": profile.endpoint, "username": profile.username},
            )
            self.blocked_roles.add(role)
            self._set_state(ConnectionState.FAILED)
            if self.on_persistent_failure is not None:
                self.on_persistent_failure(role, error)
            return

        self.consecutive_failures += 1
        logger.warning(
            "%s %s broker attempt failed (%s): %s",
            lp,
            role.value,
            error.cause.value,
            error.reason,
            extra={"consecutive_failures": self.consecutive_failures, "threshold": self.policy.failure_threshold},
        )

        if self.consecutive_failures >= self.policy.failure_threshold:
            self.consecutive_failures = 0
            self._set_state(ConnectionState.FAILED)
            generation = self._generation
            if self.on_sustained_failure is not None:
                self.on_sustained_failure(role, error)
            if generation != self._generation:
                return  # callback switched target
        elif self.state is ConnectionState.CONNECTING:
            self._set_state(ConnectionState.FAILED)

        self._schedule_backoff()

    def _schedule_backoff(self) -> None:
        lp = f"{self.lp}backoff:"
        self._cancel_backoff()
        delay = self.retry_policy.get_delay(self._backoff_attempt)
        self._backoff_attempt += 1
        logger.info(
            "%s retrying %s in %.2fs",
            lp,
            self.active_role.value if self.active_role else None,
            delay,
            extra={"attempt": self._backoff_attempt},
        )
        self._backoff_handle = self.scheduler.call_later(delay, self._on_backoff_elapsed)

    def _on_backoff_elapsed(self) -> None:
        self._backoff_handle = None
        if self.target is None or self.target.role in self.blocked_roles:
            return
        if self.state in (ConnectionState.RECONNECTING, ConnectionState.FAILED):
            self._begin_attempt(ConnectionState.RECONNECTING)

    # -- inbound ------------------------------------------------------------

    async def _read_loop(self, session: BrokerSession, role: BrokerRole, generation: int) -> None:
        lp = f"{self.lp}read:"
        try:
            async for topic, payload in session.messages():
                try:
                    self.on_message(topic, payload, role)
                except Exception:
                    logger.exception("%s message handler failed for %s", lp, topic)
        except BrokerConnectionError as e:
            if generation == self._generation:
                self._on_connection_lost(session, e)
            return
        if generation == self._generation:
            self._on_connection_lost(session, None)

    def _on_connection_lost(self, session: BrokerSession, error: BrokerConnectionError | None) -> None:
        lp = f"{self.lp}lost:"
        logger.warning(
            "%s connection to %s broker dropped: %s",
            lp,
            self.active_role.value if self.active_role else None,
            error.reason if error else "stream ended",
        )
        self.last_error = error
        self.session = None
        self.reader_task = None
        self._spawn_background(session.disconnect())
        self._set_state(ConnectionState.RECONNECTING)
        self._schedule_backoff()

    # -- outbound -----------------------------------------------------------

    def publish(
        self,
        topic: str,
        payload: bytes,
        qos: int = 1,
        retain: bool = False,
        binding: TopicBinding | None = None,
    ) -> bool:
        """Queue a message for the broker.

        While connected the message is handed straight to the writer. Otherwise it
        waits in the bounded buffer (oldest dropped on overflow) and is flushed in
        order once connected, on whichever broker is live by then (commands carry
        their binding so the topic follows a broker switch). Returns True if the
        manager was connected.
        """
        lp = f"{self.lp}publish:"
        if len(self._buffer) >= self.policy.outbound_buffer_size:
            dropped = self._buffer.popleft()
            logger.warning(
                "%s outbound buffer full (%d), dropping oldest message for %s",
                lp,
                self.policy.outbound_buffer_size,
                dropped.topic,
            )
            record_outbound("dropped")
        self._buffer.append(OutboundMessage(topic=topic, payload=payload, qos=qos, retain=retain, binding=binding))
        record_buffer_size(len(self._buffer))

        if self.is_connected:
            self._ensure_writer()
            return True
        logger.debug("%s buffered %s while %s", lp, topic, self.state.value)
        record_outbound("buffered")
        return False

    def _ensure_writer(self) -> None:
        if self._buffer and (self.writer_task is None or self.writer_task.done()):
            self.writer_task = asyncio.create_task(self._drain())

    async def _drain(self) -> None:
        lp = f"{self.lp}drain:"
        while self._buffer and self.is_connected:
            session = self.session
            assert session is not None
            message = self._buffer.popleft()
            topic = message.topic_for(self.active_role)
            try:
                await session.publish(topic, message.payload, qos=message.qos, retain=message.retain)
            except BrokerConnectionError as e:
                self._buffer.appendleft(message)
                logger.warning("%s publish to %s failed: %s", lp, topic, e)
                record_outbound("failed")
                if self.session is session:
                    # Keep it for the next connection; the reader reports the drop.
                    break
                # A newer session took over while this publish was in flight.
                continue
            record_outbound("sent")
            record_buffer_size(len(self._buffer))

    # -- subscriptions ------------------------------------------------------

    def subscribe_bindings(self, bindings: Iterable[TopicBinding]) -> None:
        """Subscribe new bindings on the live session. Reconnects subscribe everything anyway."""
        session, role = self.session, self.active_role
        if not self.is_connected or session is None or role is None:
            return
        topics = state_topics(bindings, role)
        if topics:
            self._spawn_background(self._subscribe(session, topics))

    def unsubscribe_bindings(self, bindings: Iterable[TopicBinding]) -> None:
        session, role = self.session, self.active_role
        if not self.is_connected or session is None or role is None:
            return
        topics = [topic for topic, _ in state_topics(bindings, role)]
        if topics:
            self._spawn_background(self._unsubscribe(session, topics))

    async def _subscribe(self, session: BrokerSession, topics: list[tuple[str, int]]) -> None:
        try:
            await session.subscribe(topics)
        except BrokerConnectionError as e:
            logger.warning("%s subscribe failed: %s", f"{self.lp}subscribe:", e, extra={"topics": len(topics)})

    async def _unsubscribe(self, session: BrokerSession, topics: list[str]) -> None:
        try:
            await session.unsubscribe(topics)
        except BrokerConnectionError as e:
            logger.warning("%s unsubscribe failed: %s", f"{self.lp}unsubscribe:", e, extra={"topics": len(topics)})
