"""Authoritative in-memory device model.

The store is the single mutation point for device state: inbound reports
update ``reported_state``, commands update ``desired_state`` optimistically,
and observers are notified synchronously in registration order.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Generator
from typing import Any

from smarthome_sync.correlation import correlation_context, get_correlation_id
from smarthome_sync.devices.persistence import KeyValueStore, MemoryKeyValueStore, decode_devices, encode_devices
from smarthome_sync.exceptions import CommandTimeoutError, DuplicateDeviceError, UnknownDeviceError
from smarthome_sync.logging_abstraction import get_logger
from smarthome_sync.metrics import record_command, record_inbound
from smarthome_sync.mqtt.router import TopicRouter
from smarthome_sync.structs import BrokerRole, ChangeKind, Device, DeviceChange, DeviceKind, MessageTransport
from smarthome_sync.transport.scheduler import Scheduler, TimerHandle

logger = get_logger(__name__)

DeviceObserver = Callable[[DeviceChange], None]

_MISSING = object()


class PendingCommand:
    """Handle for an issued command; awaitable until confirmed or timed out.

    Awaiting raises ``CommandTimeoutError`` when no confirming report arrived in time.
    """

    def __init__(self, device_id: str, field: str, value: object, correlation_id: str | None, issued_at: float):
        self.device_id: str = device_id
        self.field: str = field
        self.value: object = value
        self.correlation_id: str | None = correlation_id
        self.issued_at: float = issued_at
        self.sent_immediately: bool = False
        self.error: Exception | None = None
        self._confirmed: bool = False
        self._event: asyncio.Event = asyncio.Event()
        self.timer: TimerHandle | None = None

    @property
    def status(self) -> str:
        if self._confirmed:
            return "confirmed"
        if self.error is not None:
            return "failed"
        return "pending"

    def done(self) -> bool:
        return self._event.is_set()

    def resolve(self, error: Exception | None = None) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None
        self.error = error
        self._confirmed = error is None
        self._event.set()

    async def wait(self) -> None:
        _ = await self._event.wait()
        if self.error is not None:
            raise self.error

    def __await__(self) -> Generator[Any, None, None]:
        return self.wait().__await__()

    def __repr__(self) -> str:
        return f"PendingCommand({self.device_id}.{self.field}={self.value!r}, {self.status})"


class DeviceStateStore:
    """Configured devices keyed by id, in the user's configured order."""

    lp: str = "store:"

    def __init__(
        self,
        router: TopicRouter,
        transport: MessageTransport,
        scheduler: Scheduler,
        kv_store: KeyValueStore | None = None,
        storage_key: str = "configuredDevices",
        command_timeout: float = 10.0,
        role_provider: Callable[[], BrokerRole | None] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.router: TopicRouter = router
        self.transport: MessageTransport = transport
        self.scheduler: Scheduler = scheduler
        self.kv_store: KeyValueStore = kv_store or MemoryKeyValueStore()
        self.storage_key: str = storage_key
        self.command_timeout: float = command_timeout
        self.role_provider: Callable[[], BrokerRole | None] = role_provider or (lambda: None)
        self.clock: Callable[[], float] = clock
        self._devices: dict[str, Device] = {}
        self._pending: dict[str, list[PendingCommand]] = {}
        self._observers: list[DeviceObserver] = []
        self._config_lock: asyncio.Lock = asyncio.Lock()

    # -- queries ------------------------------------------------------------

    def __contains__(self, device_id: object) -> bool:
        return device_id in self._devices

    def __len__(self) -> int:
        return len(self._devices)

    def devices(self) -> list[Device]:
        """Snapshots of every device in configured order."""
        return [device.snapshot() for device in self._devices.values()]

    def get(self, device_id: str) -> Device:
        return self._device(device_id).snapshot()

    def _device(self, device_id: str) -> Device:
        try:
            return self._devices[device_id]
        except KeyError:
            raise UnknownDeviceError(device_id) from None

    def pending_commands(self, device_id: str | None = None) -> list[PendingCommand]:
        if device_id is not None:
            return list(self._pending.get(device_id, ()))
        return [p for pending in self._pending.values() for p in pending]

    # -- observers ----------------------------------------------------------

    def subscribe(self, observer: DeviceObserver) -> Callable[[], None]:
        """Register a change observer. Returns an unsubscribe function."""
        self._observers.append(observer)

        def unsubscribe() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return unsubscribe

    def _notify(
        self,
        kind: ChangeKind,
        device: Device,
        field: str | None = None,
        error: Exception | None = None,
    ) -> None:
        change = DeviceChange(kind=kind, device_id=device.id, device=device.snapshot(), field=field, error=error)
        for observer in list(self._observers):
            try:
                observer(change)
            except Exception:
                logger.exception("%s observer %r failed on %s", self.lp, observer, kind.value)

    # -- configured set -----------------------------------------------------

    async def load(self) -> list[Device]:
        """Load the persisted device set, registering any device not yet present."""
        lp = f"{self.lp}load:"
        blob = await asyncio.to_thread(self.kv_store.load, self.storage_key)
        if not blob:
            logger.info("%s no configured devices stored under %s", lp, self.storage_key)
            return []
        loaded = decode_devices(blob)
        for device in loaded:
            if device.id in self._devices:
                continue
            self._register(device)
        logger.info("%s loaded %d configured devices", lp, len(loaded), extra={"key": self.storage_key})
        return self.devices()

    def _register(self, device: Device) -> None:
        bindings = self.router.register(device)
        self._devices[device.id] = device
        self.transport.subscribe_bindings(bindings)
        self._notify(ChangeKind.ADDED, device)

    async def _persist(self, devices: list[Device]) -> None:
        await asyncio.to_thread(self.kv_store.save, self.storage_key, encode_devices(devices))

    async def add_device(self, device_id: str, name: str, kind: DeviceKind | str) -> Device:
        """Configure a new device, persist the set and subscribe its bindings.

        Raises:
            DuplicateDeviceError: id already configured.
            ValueError: invalid id or kind.

        """
        device = Device(id=device_id, name=name, kind=DeviceKind(kind))
        async with self._config_lock:
            if device_id in self._devices:
                raise DuplicateDeviceError(device_id)
            await self._persist([*self._devices.values(), device])
            self._register(device)
        logger.info("%s added %s (%s)", f"{self.lp}add:", device_id, device.kind.value)
        return device.snapshot()

    async def remove_device(self, device_id: str) -> None:
        """Unsubscribe, forget and persist removal of a device.

        Raises:
            UnknownDeviceError: id not configured.

        """
        async with self._config_lock:
            device = self._device(device_id)
            await self._persist([d for d in self._devices.values() if d.id != device_id])

            # Bindings go before the entry so no subscription outlives its device.
            self.transport.unsubscribe_bindings(self.router.registered_bindings(device_id))
            _ = self.router.unregister(device_id)
            for pending in self._pending.pop(device_id, []):
                pending.resolve(UnknownDeviceError(device_id))
            del self._devices[device_id]
        device.pending_command_count = 0
        self._notify(ChangeKind.REMOVED, device)
        logger.info("%s removed %s", f"{self.lp}remove:", device_id)

    # -- inbound ------------------------------------------------------------

    def apply_inbound(self, device_id: str, field: str, value: object, timestamp: float | None = None) -> bool:
        """Merge a device report. Returns True if the reported state changed.

        Reports older than the newest one seen for the same field are accepted
        but leave both the value and ``last_reported_at`` untouched.
        """
        lp = f"{self.lp}apply_inbound:"
        device = self._device(device_id)
        ts = timestamp if timestamp is not None else self.clock()

        newest = device.field_reported_at.get(field)
        if newest is not None and ts < newest:
            logger.debug(
                "%s stale report for %s.%s ignored (%.3f < %.3f)",
                lp,
                device_id,
                field,
                ts,
                newest,
            )
            record_inbound("ignored")
            return False

        previous = device.reported_state.get(field, _MISSING)
        device.reported_state[field] = value
        device.field_reported_at[field] = ts
        if device.last_reported_at is None or ts > device.last_reported_at:
            device.last_reported_at = ts
        record_inbound("applied")

        changed = previous is _MISSING or previous != value
        if changed:
            logger.debug("%s %s.%s = %r", lp, device_id, field, value)
            self._notify(ChangeKind.REPORTED, device, field)
        _ = self.reconcile(device_id, field)
        return changed

    def reconcile(self, device_id: str, field: str) -> int:
        """Confirm pending commands whose value the device now reports. Returns how many.

        Only a report stamped at or after the command was issued confirms it.
        """
        device = self._device(device_id)
        pending = self._pending.get(device_id)
        if not pending or field not in device.reported_state:
            return 0
        reported = device.reported_state[field]
        reported_at = device.field_reported_at.get(field, float("-inf"))
        confirmed = [
            p for p in pending if p.field == field and p.value == reported and reported_at >= p.issued_at
        ]
        for command in confirmed:
            pending.remove(command)
            device.pending_command_count = max(0, device.pending_command_count - 1)
            command.resolve()
            record_command(device.kind.value, "confirmed")
            with correlation_context(command.correlation_id):
                logger.info(
                    "%s %s.%s=%r confirmed after %.2fs",
                    f"{self.lp}reconcile:",
                    device_id,
                    field,
                    reported,
                    self.clock() - command.issued_at,
                )
            self._notify(ChangeKind.COMMAND_CONFIRMED, device, field)
        return len(confirmed)

    # -- outbound -----------------------------------------------------------

    def issue_command(self, device_id: str, field: str, value: object) -> PendingCommand:
        """Record the desired value and send the command.

        ``reported_state`` is never touched; the command stays pending until a
        matching report arrives or the command timeout elapses.

        Raises:
            UnknownDeviceError: device not configured.
            PublishWithoutBindingError: field cannot be commanded.
            InvalidCommandValueError: value not valid for the field.

        """
        lp = f"{self.lp}issue_command:"
        device = self._device(device_id)
        role = self.role_provider() or BrokerRole.LOCAL
        message = self.router.route_outbound(device_id, field, value, role)
        canonical = self.router.normalize(device_id, field, value)

        with correlation_context(get_correlation_id()) as correlation_id:
            command = PendingCommand(device_id, field, canonical, correlation_id, self.clock())
            device.desired_state[field] = canonical
            device.pending_command_count += 1
            self._pending.setdefault(device_id, []).append(command)
            command.timer = self.scheduler.call_later(
                self.command_timeout,
                lambda: self._on_command_timeout(command),
            )
            command.sent_immediately = self.transport.publish(
                message.topic,
                message.payload,
                qos=message.qos,
                retain=message.retain,
                binding=message.binding,
            )
            record_command(device.kind.value, "issued")
            logger.info(
                "%s %s.%s=%r %s",
                lp,
                device_id,
                field,
                canonical,
                "sent" if command.sent_immediately else "queued",
                extra={"topic": message.topic},
            )
            self._notify(ChangeKind.DESIRED, device, field)
        return command

    def _on_command_timeout(self, command: PendingCommand) -> None:
        pending = self._pending.get(command.device_id)
        if not pending or command not in pending:
            return
        pending.remove(command)
        device = self._devices[command.device_id]
        device.pending_command_count = max(0, device.pending_command_count - 1)
        error = CommandTimeoutError(
            command.device_id,
            command.field,
            command.value,
            self.command_timeout,
            command.correlation_id,
        )
        command.timer = None
        command.resolve(error)
        record_command(device.kind.value, "timeout")
        with correlation_context(command.correlation_id):
            logger.warning("%s %s", f"{self.lp}timeout:", error)
        # desired_state keeps the user's last intent.
        self._notify(ChangeKind.COMMAND_FAILED, device, command.field, error)

    def cancel_all(self) -> None:
        """Drop every pending command timer (shutdown)."""
        for device_id, pending in self._pending.items():
            for command in pending:
                if command.timer is not None:
                    command.timer.cancel()
                    command.timer = None
            if device_id in self._devices:
                self._devices[device_id].pending_command_count = 0
        self._pending.clear()
