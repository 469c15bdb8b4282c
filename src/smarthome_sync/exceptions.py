"""Exception hierarchy for the synchronization core.

Transport failures (``BrokerConnectionError`` family) are handled inside the
connection manager and only observed through connection state and logs.
Routing and command errors are raised to the caller of the failing operation.
"""

from __future__ import annotations

from smarthome_sync.structs import BrokerRole, FailureCause


class SmartHomeSyncError(Exception):
    """Base class for every error raised by smarthome_sync."""


class ConfigurationError(SmartHomeSyncError):
    """Configuration could not be loaded or failed validation."""


class BrokerConnectionError(SmartHomeSyncError):
    """A broker session could not be established or was lost.

    Attributes:
        cause: Classified failure cause
        role: Broker role the failure happened against (None if unknown)
        reason: Human-readable detail from the transport

    """

    cause: FailureCause = FailureCause.NETWORK_UNREACHABLE

    def __init__(self, reason: str, role: BrokerRole | None = None) -> None:
        self.reason: str = reason
        self.role: BrokerRole | None = role
        where = f" ({role.value})" if role is not None else ""
        super().__init__(f"{type(self).__name__}{where}: {reason}")


class NetworkUnreachableError(BrokerConnectionError):
    """Broker host unreachable, connection refused or dropped."""

    cause = FailureCause.NETWORK_UNREACHABLE


class AuthenticationRejectedError(BrokerConnectionError):
    """Broker refused the configured credentials. Terminal until config changes."""

    cause = FailureCause.AUTH_REJECTED


class ConnectTimeoutError(BrokerConnectionError):
    """Handshake did not complete within the configured timeout."""

    cause = FailureCause.TIMEOUT


class SubscriptionFailedError(BrokerConnectionError):
    """Broker rejected (or failed to acknowledge) a subscription."""

    cause = FailureCause.SUBSCRIPTION_FAILED


class UnroutableTopicError(SmartHomeSyncError):
    """Inbound topic matches no known binding. Logged and dropped, never fatal."""

    def __init__(self, topic: str) -> None:
        self.topic: str = topic
        super().__init__(f"No binding matches topic '{topic}'")


class PublishWithoutBindingError(SmartHomeSyncError):
    """Outbound command for a field that has no publish binding (configuration error)."""

    def __init__(self, device_id: str, field: str) -> None:
        self.device_id: str = device_id
        self.field: str = field
        super().__init__(f"Device '{device_id}' has no publish binding for field '{field}'")


class InvalidCommandValueError(SmartHomeSyncError, ValueError):
    """Command value cannot be encoded for the capability."""

    def __init__(self, field: str, value: object, detail: str) -> None:
        self.field: str = field
        self.value: object = value
        super().__init__(f"Invalid value {value!r} for '{field}': {detail}")


class UnknownDeviceError(SmartHomeSyncError, KeyError):
    """Device id is not configured."""

    def __init__(self, device_id: str) -> None:
        self.device_id: str = device_id
        super().__init__(device_id)

    def __str__(self) -> str:
        return f"Unknown device '{self.device_id}'"


class DuplicateDeviceError(SmartHomeSyncError):
    """Device id is already configured."""

    def __init__(self, device_id: str) -> None:
        self.device_id: str = device_id
        super().__init__(f"Device '{device_id}' is already configured")


class CommandTimeoutError(SmartHomeSyncError):
    """No confirming state report arrived before the command deadline.

    Attributes:
        device_id: Target device
        field: Commanded capability field
        value: Desired value that was never confirmed
        timeout_seconds: Deadline that elapsed
        correlation_id: Correlation id of the originating command

    """

    def __init__(
        self,
        device_id: str,
        field: str,
        value: object,
        timeout_seconds: float,
        correlation_id: str | None = None,
    ) -> None:
        self.device_id: str = device_id
        self.field: str = field
        self.value: object = value
        self.timeout_seconds: float = timeout_seconds
        self.correlation_id: str | None = correlation_id
        super().__init__(
            f"Command {field}={value!r} on '{device_id}' not confirmed within {timeout_seconds}s",
        )
