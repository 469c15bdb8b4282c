"""Broker target selection with hysteresis."""

from __future__ import annotations

from enum import StrEnum

from smarthome_sync.logging_abstraction import get_logger
from smarthome_sync.structs import BrokerProfile, BrokerRole, ConnectionHealth, NetworkContext

logger = get_logger(__name__)


class SelectionReason(StrEnum):
    INITIAL = "initial"
    NETWORK_CHANGE = "network-change"
    SUSTAINED_FAILURE = "sustained-failure"
    AUTH_REJECTED = "auth-rejected"
    OVERRIDE = "override"
    UNCHANGED = "unchanged"


class BrokerSelector:
    """Decides which broker profile the connection manager should target.

    Local is preferred on a trusted network, Cloud otherwise. Once a target is
    chosen it is only abandoned when the trust verdict changes or sustained
    failure is reported against it; a single dropped connection never switches.
    The only state held is the last selection and the verdict it was made under.
    """

    def __init__(self, local: BrokerProfile, cloud: BrokerProfile) -> None:
        self._profiles: dict[BrokerRole, BrokerProfile] = {}
        self.last_selected: BrokerProfile | None = None
        self.last_reason: SelectionReason | None = None
        self._last_verdict: bool | None = None
        self.override: BrokerRole | None = None
        self.set_profiles(local, cloud)

    def set_profiles(self, local: BrokerProfile, cloud: BrokerProfile) -> None:
        if local.role is not BrokerRole.LOCAL or cloud.role is not BrokerRole.CLOUD:
            msg = "profiles must be given as (local, cloud)"
            raise ValueError(msg)
        self._profiles = {BrokerRole.LOCAL: local, BrokerRole.CLOUD: cloud}
        if self.last_selected is not None:
            self.last_selected = self._profiles[self.last_selected.role]

    def profile(self, role: BrokerRole) -> BrokerProfile:
        return self._profiles[role]

    def set_override(self, role: BrokerRole | None) -> None:
        """Pin the target to one role (None returns to automatic selection)."""
        if role is None and self.override is not None:
            # Next selection re-applies the network preference.
            self._last_verdict = None
        self.override = role

    @staticmethod
    def preferred_role(context: NetworkContext) -> BrokerRole:
        return BrokerRole.LOCAL if context.is_on_trusted_local_network else BrokerRole.CLOUD

    def select_target(self, context: NetworkContext, health: ConnectionHealth) -> BrokerProfile:
        lp = "selector:select_target:"
        verdict = context.is_on_trusted_local_network
        last_role = self.last_selected.role if self.last_selected is not None else None

        if self.override is not None:
            role, reason = self.override, SelectionReason.OVERRIDE
        elif last_role is None:
            role, reason = self.preferred_role(context), SelectionReason.INITIAL
        elif verdict != self._last_verdict:
            role, reason = self.preferred_role(context), SelectionReason.NETWORK_CHANGE
        elif health.sustained_failure_role is not None and health.sustained_failure_role is last_role:
            role, reason = last_role.alternate, SelectionReason.SUSTAINED_FAILURE
        else:
            role, reason = last_role, SelectionReason.UNCHANGED

        if (
            self.override is None
            and role in health.auth_rejected_roles
            and role.alternate not in health.auth_rejected_roles
        ):
            role, reason = role.alternate, SelectionReason.AUTH_REJECTED

        selected = self._profiles[role]
        if role is not last_role:
            logger.info(
                "%s target %s -> %s (%s)",
                lp,
                last_role.value if last_role else None,
                role.value,
                reason.value,
                extra={"trusted": verdict, "endpoint": selected.endpoint},
            )
        self.last_selected = selected
        self.last_reason = reason
        self._last_verdict = verdict
        return selected
