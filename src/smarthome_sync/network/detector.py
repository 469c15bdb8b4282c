"""Local-network trust detection.

Classifies platform connectivity signals only; performs no network access.
"""

from __future__ import annotations

import ipaddress
from collections.abc import Callable, Iterable
from datetime import UTC, datetime

from smarthome_sync.logging_abstraction import get_logger
from smarthome_sync.metrics import record_verdict_change
from smarthome_sync.structs import ConnectivitySignal, NetworkContext
from smarthome_sync.utils import subnet_of, utc_to_local

logger = get_logger(__name__)

ContextCallback = Callable[[NetworkContext], None]


class NetworkContextDetector:
    """Tracks whether the host is on a trusted local network.

    Trust is granted when the SSID is in the trusted set OR the host IP is
    contained in a trusted subnet. Subscribers are notified synchronously, in
    registration order, only when the verdict changes.
    """

    def __init__(
        self,
        trusted_ssids: Iterable[str] = (),
        trusted_subnets: Iterable[str] = (),
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._clock: Callable[[], datetime] = clock or (lambda: datetime.now(UTC))
        self._subscribers: list[ContextCallback] = []
        self._current: NetworkContext | None = None
        self._trusted_ssids: frozenset[str] = frozenset()
        self._trusted_networks: tuple[ipaddress.IPv4Network | ipaddress.IPv6Network, ...] = ()
        self.configure(trusted_ssids, trusted_subnets)

    def configure(self, trusted_ssids: Iterable[str], trusted_subnets: Iterable[str]) -> None:
        """Replace the trust lists. Takes effect on the next evaluation."""
        self._trusted_ssids = frozenset(ssid.casefold() for ssid in trusted_ssids if ssid)
        self._trusted_networks = tuple(ipaddress.ip_network(s, strict=False) for s in trusted_subnets)

    @property
    def current(self) -> NetworkContext | None:
        return self._current

    def subscribe(self, callback: ContextCallback) -> Callable[[], None]:
        """Register a verdict-change callback. Returns an unsubscribe function."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def ssid_trusted(self, ssid: str | None) -> bool:
        if not ssid:
            return False
        return ssid.casefold() in self._trusted_ssids

    def ip_trusted(self, ip_address: str | None) -> bool:
        if not ip_address:
            return False
        try:
            ip = ipaddress.ip_address(ip_address)
        except ValueError:
            return False
        return any(ip.version == net.version and ip in net for net in self._trusted_networks)

    def evaluate(self, signal: ConnectivitySignal) -> NetworkContext:
        """Re-derive the network context from a connectivity signal."""
        lp = "network:evaluate:"
        trusted = signal.is_connected and (self.ssid_trusted(signal.ssid) or self.ip_trusted(signal.ip_address))
        context = NetworkContext(
            is_on_trusted_local_network=trusted,
            observed_ssid=signal.ssid,
            observed_subnet=subnet_of(signal.ip_address) if signal.ip_address else None,
            timestamp=self._clock(),
            observed_ip=signal.ip_address,
            is_connected=signal.is_connected,
        )
        previous = self._current
        self._current = context

        if previous is not None and previous.is_on_trusted_local_network == trusted:
            logger.debug(
                "%s verdict unchanged (trusted=%s)",
                lp,
                trusted,
                extra={"ssid": signal.ssid, "ip": signal.ip_address},
            )
            return context

        logger.info(
            "%s trust verdict -> %s",
            lp,
            "local-trusted" if trusted else "untrusted",
            extra={
                "ssid": signal.ssid,
                "ip": signal.ip_address,
                "network_type": signal.network_type,
                "at": utc_to_local(context.timestamp).isoformat(timespec="seconds"),
            },
        )
        record_verdict_change(trusted)
        for callback in list(self._subscribers):
            try:
                callback(context)
            except Exception:
                logger.exception("%s subscriber %r failed", lp, callback)
        return context
