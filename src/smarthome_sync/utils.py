from __future__ import annotations

import ipaddress
import os
from datetime import datetime

YES_ANSWER = ("true", "1", "yes", "y", "t", "on", "o")


def env_str(name: str, default: str = "") -> str:
    """Read a string env var, treating empty and "null" as unset."""
    value = os.environ.get(name)
    if value is None or not value.strip() or value.strip().casefold() == "null":
        return default
    return value.strip()


def env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None or not value.strip():
        return default
    return value.strip().casefold() in YES_ANSWER


def env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def env_list(name: str, default: list[str] | None = None) -> list[str]:
    """Split a comma separated env var into a list of trimmed, non-empty items."""
    value = os.environ.get(name)
    if not value:
        return list(default or [])
    return [item.strip() for item in value.split(",") if item.strip()]


def subnet_of(address: str) -> str | None:
    """Return the conventional LAN subnet (/24 for IPv4, /64 for IPv6) containing *address*."""
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return None
    prefix = 24 if ip.version == 4 else 64
    return str(ipaddress.ip_network(f"{ip}/{prefix}", strict=False))


def utc_to_local(utc_dt: datetime) -> datetime:
    """Convert a UTC datetime to the host's local timezone."""
    from smarthome_sync.const import LOCAL_TZ

    return utc_dt.astimezone(LOCAL_TZ)
