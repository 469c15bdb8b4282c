"""Key-value persistence for the configured device set.

The store treats persistence as an opaque blob store: one string value per key.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Protocol

from smarthome_sync.exceptions import ConfigurationError
from smarthome_sync.logging_abstraction import get_logger
from smarthome_sync.structs import Device, DeviceKind

logger = get_logger(__name__)


class KeyValueStore(Protocol):
    def load(self, key: str) -> str | None: ...

    def save(self, key: str, value: str) -> None: ...


class MemoryKeyValueStore:
    """In-process store, used when no persistent directory is configured."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self.data: dict[str, str] = dict(initial or {})

    def load(self, key: str) -> str | None:
        return self.data.get(key)

    def save(self, key: str, value: str) -> None:
        self.data[key] = value


class FileKeyValueStore:
    """One file per key under *base_dir*, replaced atomically on save."""

    lp: str = "kv_file:"

    def __init__(self, base_dir: str | Path) -> None:
        self.base_dir: Path = Path(base_dir).expanduser()

    def path_for(self, key: str) -> Path:
        if not key or "/" in key or key.startswith("."):
            msg = f"invalid storage key {key!r}"
            raise ValueError(msg)
        return self.base_dir / f"{key}.json"

    def load(self, key: str) -> str | None:
        path = self.path_for(key)
        if not path.exists():
            logger.debug("%s no stored value for %s at %s", self.lp, key, path.as_posix())
            return None
        with path.open("r", encoding="utf-8") as f:
            return f.read()

    def save(self, key: str, value: str) -> None:
        path = self.path_for(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        with tmp.open("w", encoding="utf-8") as f:
            _ = f.write(value)
        os.replace(tmp, path)
        logger.debug("%s saved %s (%d bytes)", self.lp, path.as_posix(), len(value))


def encode_devices(devices: list[Device]) -> str:
    return json.dumps([device.to_config() for device in devices], indent=2)


def decode_devices(blob: str) -> list[Device]:
    """Parse a stored device list.

    Raises:
        ConfigurationError: blob is not a list of {id, name, kind} objects.

    """
    try:
        raw = json.loads(blob)
    except json.JSONDecodeError as e:
        msg = f"stored device list is not valid JSON: {e}"
        raise ConfigurationError(msg) from e
    if not isinstance(raw, list):
        msg = "stored device list must be a JSON array"
        raise ConfigurationError(msg)

    devices: list[Device] = []
    seen: set[str] = set()
    for entry in raw:  # pyright: ignore[reportUnknownVariableType]
        if not isinstance(entry, dict):
            msg = f"stored device entry must be an object, got {entry!r}"
            raise ConfigurationError(msg)
        try:
            device = Device(
                id=str(entry["id"]),  # pyright: ignore[reportUnknownArgumentType]
                name=str(entry.get("name") or entry["id"]),  # pyright: ignore[reportUnknownArgumentType, reportUnknownMemberType]
                kind=DeviceKind(entry["kind"]),
            )
        except (KeyError, ValueError) as e:
            msg = f"invalid stored device entry {entry!r}: {e}"
            raise ConfigurationError(msg) from e
        if device.id in seen:
            logger.warning("decode_devices: duplicate device id %s ignored", device.id)
            continue
        seen.add(device.id)
        devices.append(device)
    return devices
