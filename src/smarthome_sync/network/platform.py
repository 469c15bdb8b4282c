"""Headless platform network monitor used by the service entry point."""

from __future__ import annotations

import asyncio
import contextlib
import os
import socket
from collections.abc import Callable

from smarthome_sync.logging_abstraction import get_logger
from smarthome_sync.structs import ConnectivitySignal

logger = get_logger(__name__)

# Multicast route lookup: picks the outbound interface without sending traffic.
_ROUTE_PROBE_ADDR = ("224.0.0.1", 1)


class PlatformNetworkMonitor:
    """Produces ConnectivitySignals from the host network state.

    The host IP comes from a UDP route lookup; the SSID (not observable from a
    headless host) is taken from an environment variable.
    """

    def __init__(self, ssid_env: str = "SMARTHOME_SSID", network_type: str = "ethernet") -> None:
        self.ssid_env: str = ssid_env
        self.network_type: str = network_type
        self._last: ConnectivitySignal | None = None

    @staticmethod
    def local_ip() -> str | None:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            s.connect(_ROUTE_PROBE_ADDR)
            ip = s.getsockname()[0]
        except OSError as e:
            logger.debug("platform:local_ip: route lookup failed: %s", e)
            return None
        finally:
            s.close()
        if not ip or ip.startswith("127.") or ip == "0.0.0.0":
            return None
        return ip

    def read_signal(self) -> ConnectivitySignal:
        ip = self.local_ip()
        ssid = os.environ.get(self.ssid_env) or None
        return ConnectivitySignal(
            is_connected=ip is not None,
            ssid=ssid,
            ip_address=ip,
            network_type="wifi" if ssid else self.network_type,
        )

    async def run(
        self,
        on_signal: Callable[[ConnectivitySignal], None],
        interval: float,
        stop_event: asyncio.Event,
    ) -> None:
        """Poll until *stop_event* is set, emitting a signal whenever it differs from the last one."""
        lp = "platform:run:"
        logger.info("%s polling network state every %ss", lp, interval)
        while not stop_event.is_set():
            signal = await asyncio.to_thread(self.read_signal)
            if signal != self._last:
                logger.debug("%s connectivity signal %s", lp, signal)
                self._last = signal
                on_signal(signal)
            with contextlib.suppress(TimeoutError):
                _ = await asyncio.wait_for(stop_event.wait(), timeout=interval)
