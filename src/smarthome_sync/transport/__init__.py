"""Broker transport: sessions, scheduling, backoff and the connection manager."""

from smarthome_sync.transport.connection_manager import ConnectionManager
from smarthome_sync.transport.retry_policy import RetryPolicy
from smarthome_sync.transport.scheduler import LoopScheduler, Scheduler
from smarthome_sync.transport.session import AiomqttSession, BrokerSession, ProbeResult, probe

__all__ = [
    "AiomqttSession",
    "BrokerSession",
    "ConnectionManager",
    "LoopScheduler",
    "ProbeResult",
    "RetryPolicy",
    "Scheduler",
    "probe",
]
