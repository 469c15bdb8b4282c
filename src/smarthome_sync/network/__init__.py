"""Network context detection and broker selection."""

from smarthome_sync.network.detector import NetworkContextDetector
from smarthome_sync.network.selector import BrokerSelector, SelectionReason

__all__ = ["BrokerSelector", "NetworkContextDetector", "SelectionReason"]
