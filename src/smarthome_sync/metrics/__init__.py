"""Metrics module."""

from .registry import (
    record_broker_switch,
    record_buffer_size,
    record_command,
    record_connect_attempt,
    record_connect_duration,
    record_connection_state,
    record_inbound,
    record_outbound,
    record_verdict_change,
    start_metrics_server,
)

__all__ = [
    "record_broker_switch",
    "record_buffer_size",
    "record_command",
    "record_connect_attempt",
    "record_connect_duration",
    "record_connection_state",
    "record_inbound",
    "record_outbound",
    "record_verdict_change",
    "start_metrics_server",
]
