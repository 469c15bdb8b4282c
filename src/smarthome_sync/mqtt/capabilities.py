"""Per device-kind capability tables and their payload codecs."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass
from enum import StrEnum

from smarthome_sync.exceptions import InvalidCommandValueError
from smarthome_sync.structs import DeviceKind, Direction

__all__ = [
    "CAPABILITY_TABLE",
    "Capability",
    "ValueType",
    "capabilities_for",
    "capability",
]

_TRUE_WORDS = frozenset({"on", "true", "1"})
_FALSE_WORDS = frozenset({"off", "false", "0"})


class ValueType(StrEnum):
    BOOL = "bool"
    ONLINE = "online"
    INT = "int"
    FLOAT = "float"
    ENUM = "enum"
    COLOR = "color"


def _parse_bool(raw: object) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, int | float) and raw in (0, 1):
        return bool(raw)
    if isinstance(raw, str):
        word = raw.strip().casefold()
        if word in _TRUE_WORDS:
            return True
        if word in _FALSE_WORDS:
            return False
    msg = f"not a boolean: {raw!r}"
    raise ValueError(msg)


def _parse_number(raw: object) -> float:
    if isinstance(raw, bool):
        msg = f"not a number: {raw!r}"
        raise ValueError(msg)
    if isinstance(raw, int | float):
        number = float(raw)
    elif isinstance(raw, str):
        number = float(raw.strip())
    else:
        msg = f"not a number: {raw!r}"
        raise ValueError(msg)
    if not math.isfinite(number):
        msg = f"not a finite number: {raw!r}"
        raise ValueError(msg)
    return number


def _parse_color(raw: object) -> str:
    if isinstance(raw, str):
        parts: list[object] = [p.strip() for p in raw.split(",")]
    elif isinstance(raw, list | tuple):
        parts = list(raw)  # pyright: ignore[reportUnknownArgumentType]
    else:
        msg = f"not an r,g,b color: {raw!r}"
        raise ValueError(msg)
    if len(parts) != 3:
        msg = f"color needs 3 channels, got {raw!r}"
        raise ValueError(msg)
    channels: list[int] = []
    for part in parts:
        channel = int(_parse_number(part))
        if not 0 <= channel <= 255:
            msg = f"color channel out of range 0-255: {raw!r}"
            raise ValueError(msg)
        channels.append(channel)
    return ",".join(str(c) for c in channels)


@dataclass(frozen=True)
class Capability:
    """One addressable field of a device kind.

    ``choices`` lists enum names in wire-code order (index == code sent on the wire).
    """

    field: str
    direction: Direction
    value_type: ValueType
    minimum: float | None = None
    maximum: float | None = None
    clamp: bool = False
    choices: tuple[str, ...] = ()

    def normalize(self, value: object) -> object:
        """Canonical python value for a command, validated against the capability.

        Raises:
            InvalidCommandValueError: value cannot be represented.

        """
        try:
            return self._coerce(value, outbound=True)
        except ValueError as e:
            raise InvalidCommandValueError(self.field, value, str(e)) from e

    def encode(self, value: object) -> bytes:
        """Wire payload for a command value."""
        canonical = self.normalize(value)
        match self.value_type:
            case ValueType.BOOL:
                text = "ON" if canonical else "OFF"
            case ValueType.ONLINE:
                text = "online" if canonical else "offline"
            case ValueType.ENUM:
                text = str(self.choices.index(str(canonical)))
            case _:
                text = str(canonical)
        return text.encode("utf-8")

    def decode(self, payload: bytes) -> tuple[object, float | None]:
        """Parse an inbound payload into (canonical value, device timestamp or None).

        Raises:
            ValueError: payload is not a valid value for this capability.

        """
        try:
            text = payload.decode("utf-8").strip()
        except UnicodeDecodeError as e:
            msg = f"payload is not UTF-8: {e}"
            raise ValueError(msg) from e

        raw: object = text
        timestamp: float | None = None
        if text.startswith("{"):
            try:
                data = json.loads(text)
            except json.JSONDecodeError as e:
                msg = f"invalid JSON payload: {e}"
                raise ValueError(msg) from e
            if not isinstance(data, dict) or "value" not in data:
                msg = "JSON payload must be an object with a 'value' key"
                raise ValueError(msg)
            raw = data["value"]  # pyright: ignore[reportUnknownVariableType]
            ts = data.get("ts")  # pyright: ignore[reportUnknownMemberType, reportUnknownVariableType]
            if isinstance(ts, int | float) and not isinstance(ts, bool):
                timestamp = float(ts)
        return self._coerce(raw, outbound=False), timestamp

    def _coerce(self, raw: object, outbound: bool) -> object:
        match self.value_type:
            case ValueType.BOOL:
                return _parse_bool(raw)
            case ValueType.ONLINE:
                if isinstance(raw, str) and raw.strip().casefold() in ("online", "offline"):
                    return raw.strip().casefold() == "online"
                return _parse_bool(raw)
            case ValueType.INT:
                return round(self._bounded(_parse_number(raw), outbound))
            case ValueType.FLOAT:
                return round(self._bounded(_parse_number(raw), outbound), 1)
            case ValueType.ENUM:
                return self._enum_name(raw)
            case ValueType.COLOR:
                return _parse_color(raw)

    def _bounded(self, number: float, outbound: bool) -> float:
        # Inbound reports are the device's truth and are never range checked.
        if not outbound:
            return number
        low = self.minimum if self.minimum is not None else -math.inf
        high = self.maximum if self.maximum is not None else math.inf
        if low <= number <= high:
            return number
        if self.clamp:
            return max(low, min(high, number))
        msg = f"out of range {self.minimum}-{self.maximum}"
        raise ValueError(msg)

    def _enum_name(self, raw: object) -> str:
        if isinstance(raw, str):
            name = raw.strip().casefold()
            if name in self.choices:
                return name
            if name.isdigit():
                raw = int(name)
        if isinstance(raw, int) and not isinstance(raw, bool) and 0 <= raw < len(self.choices):
            return self.choices[raw]
        msg = f"expected one of {', '.join(self.choices)}"
        raise ValueError(msg)


def _online() -> Capability:
    return Capability("online", Direction.SUBSCRIBE, ValueType.ONLINE)


_SWITCH = (
    Capability("on", Direction.BOTH, ValueType.BOOL),
    _online(),
)

CAPABILITY_TABLE: dict[DeviceKind, tuple[Capability, ...]] = {
    DeviceKind.SWITCH: _SWITCH,
    DeviceKind.SOCKET: _SWITCH,
    DeviceKind.RGB_LIGHT: (
        Capability("on", Direction.BOTH, ValueType.BOOL),
        Capability("brightness", Direction.BOTH, ValueType.INT, minimum=0, maximum=100),
        Capability("color", Direction.BOTH, ValueType.COLOR),
        _online(),
    ),
    DeviceKind.THERMOSTAT: (
        Capability("temperature", Direction.SUBSCRIBE, ValueType.FLOAT),
        Capability("target_temperature", Direction.BOTH, ValueType.FLOAT, minimum=5, maximum=35),
        Capability("mode", Direction.BOTH, ValueType.ENUM, choices=("off", "heat", "cool", "auto")),
        _online(),
    ),
    DeviceKind.AC_UNIT: (
        Capability("power", Direction.BOTH, ValueType.BOOL),
        Capability("mode", Direction.BOTH, ValueType.ENUM, choices=("auto", "cool", "heat", "dry", "fan")),
        Capability("temperature", Direction.BOTH, ValueType.INT, minimum=16, maximum=30, clamp=True),
        Capability("fan", Direction.BOTH, ValueType.ENUM, choices=("auto", "low", "med", "high")),
        Capability("swing_v", Direction.BOTH, ValueType.BOOL),
        Capability("swing_h", Direction.BOTH, ValueType.BOOL),
        Capability("room_temperature", Direction.SUBSCRIBE, ValueType.FLOAT),
        Capability("humidity", Direction.SUBSCRIBE, ValueType.FLOAT),
        _online(),
    ),
    DeviceKind.SENSOR: (
        Capability("temperature", Direction.SUBSCRIBE, ValueType.FLOAT),
        Capability("humidity", Direction.SUBSCRIBE, ValueType.FLOAT),
        Capability("lux", Direction.SUBSCRIBE, ValueType.FLOAT),
        _online(),
    ),
}


def capabilities_for(kind: DeviceKind) -> tuple[Capability, ...]:
    return CAPABILITY_TABLE[DeviceKind(kind)]


def capability(kind: DeviceKind, field: str) -> Capability | None:
    for cap in capabilities_for(kind):
        if cap.field == field:
            return cap
    return None
