"""Dual-broker MQTT synchronization core for a smart-home controller."""

__version__ = "0.3.0"
