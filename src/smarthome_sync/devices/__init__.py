"""Device state store and configured-device persistence."""

from smarthome_sync.devices.persistence import FileKeyValueStore, KeyValueStore, MemoryKeyValueStore
from smarthome_sync.devices.store import DeviceStateStore, PendingCommand

__all__ = [
    "DeviceStateStore",
    "FileKeyValueStore",
    "KeyValueStore",
    "MemoryKeyValueStore",
    "PendingCommand",
]
