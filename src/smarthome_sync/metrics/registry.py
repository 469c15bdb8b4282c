"""Prometheus metrics registry for broker synchronization."""

import threading
from typing import Final

from prometheus_client import (  # type: ignore[import-untyped]
    Counter,
    Gauge,
    Histogram,
    start_http_server,
)

_CONNECTION_STATES = ("disconnected", "connecting", "connected", "reconnecting", "failed")

# Connection metrics
smarthome_connection_state: Final = Gauge(  # type: ignore[assignment]
    "smarthome_connection_state",
    "Current broker connection state (1 for the active state)",
    ["role", "state"],
)

smarthome_connect_attempts_total: Final = Counter(  # type: ignore[assignment]
    "smarthome_connect_attempts_total",
    "Total broker connect attempts",
    ["role", "outcome"],
)

smarthome_connect_duration_seconds: Final = Histogram(  # type: ignore[assignment]
    "smarthome_connect_duration_seconds",
    "Broker connect handshake duration in seconds",
    ["role"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0),
)

smarthome_broker_switch_total: Final = Counter(  # type: ignore[assignment]
    "smarthome_broker_switch_total",
    "Total broker target switches",
    ["to_role", "reason"],
)

# Message metrics
smarthome_inbound_messages_total: Final = Counter(  # type: ignore[assignment]
    "smarthome_inbound_messages_total",
    "Total inbound broker messages",
    ["outcome"],
)

smarthome_outbound_messages_total: Final = Counter(  # type: ignore[assignment]
    "smarthome_outbound_messages_total",
    "Total outbound broker messages",
    ["outcome"],
)

smarthome_outbound_buffer_size: Final = Gauge(  # type: ignore[assignment]
    "smarthome_outbound_buffer_size",
    "Messages waiting in the outbound buffer",
)

# Command metrics
smarthome_commands_total: Final = Counter(  # type: ignore[assignment]
    "smarthome_commands_total",
    "Total device commands by outcome",
    ["kind", "outcome"],
)

# Network metrics
smarthome_network_verdict_changes_total: Final = Counter(  # type: ignore[assignment]
    "smarthome_network_verdict_changes_total",
    "Total trust verdict changes",
    ["trusted"],
)

_server_state = {"started": False}
_server_lock = threading.Lock()


def start_metrics_server(port: int = 9400) -> None:
    """Start Prometheus HTTP metrics server (idempotent)."""
    with _server_lock:
        if not _server_state["started"]:
            start_http_server(port)  # type: ignore[no-untyped-call]
            _server_state["started"] = True


def record_connection_state(role: str, state: str) -> None:
    """Record connection state change."""
    # Set gauge to 1 for current state, 0 for all others
    for s in _CONNECTION_STATES:
        value = 1 if s == state else 0
        smarthome_connection_state.labels(role=role, state=s).set(value)  # type: ignore[no-untyped-call]


def record_connect_attempt(role: str, outcome: str) -> None:
    """Record a connect attempt."""
    smarthome_connect_attempts_total.labels(role=role, outcome=outcome).inc()  # type: ignore[no-untyped-call]


def record_connect_duration(role: str, duration_seconds: float) -> None:
    smarthome_connect_duration_seconds.labels(role=role).observe(duration_seconds)  # type: ignore[no-untyped-call]


def record_broker_switch(to_role: str, reason: str) -> None:
    """Record a broker target switch."""
    smarthome_broker_switch_total.labels(to_role=to_role, reason=reason).inc()  # type: ignore[no-untyped-call]


def record_inbound(outcome: str) -> None:
    """Record an inbound message (applied, unmatched, ignored)."""
    smarthome_inbound_messages_total.labels(outcome=outcome).inc()  # type: ignore[no-untyped-call]


def record_outbound(outcome: str) -> None:
    """Record an outbound message (sent, buffered, dropped, failed)."""
    smarthome_outbound_messages_total.labels(outcome=outcome).inc()  # type: ignore[no-untyped-call]


def record_buffer_size(size: int) -> None:
    smarthome_outbound_buffer_size.set(size)  # type: ignore[no-untyped-call]


def record_command(kind: str, outcome: str) -> None:
    """Record a command outcome (issued, confirmed, timeout)."""
    smarthome_commands_total.labels(kind=kind, outcome=outcome).inc()  # type: ignore[no-untyped-call]


def record_verdict_change(trusted: bool) -> None:
    smarthome_network_verdict_changes_total.labels(trusted=str(trusted).lower()).inc()  # type: ignore[no-untyped-call]
