"""Unit tests for broker target selection and its hysteresis."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from smarthome_sync.network.selector import BrokerSelector, SelectionReason
from smarthome_sync.structs import BrokerProfile, BrokerRole, ConnectionHealth, NetworkContext
from tests.unit.conftest import make_config

HEALTHY = ConnectionHealth()


def context(trusted: bool) -> NetworkContext:
    return NetworkContext(
        is_on_trusted_local_network=trusted,
        observed_ssid="HomeNet" if trusted else None,
        observed_subnet=None,
        timestamp=datetime.now(UTC),
    )


@pytest.fixture
def selector() -> BrokerSelector:
    config = make_config()
    return BrokerSelector(config.local_broker, config.cloud_broker)


class TestPreference:
    def test_trusted_network_prefers_local(self, selector: BrokerSelector):
        assert selector.select_target(context(True), HEALTHY).role is BrokerRole.LOCAL
        assert selector.last_reason is SelectionReason.INITIAL

    def test_untrusted_network_prefers_cloud(self, selector: BrokerSelector):
        assert selector.select_target(context(False), HEALTHY).role is BrokerRole.CLOUD

    def test_profiles_must_be_given_in_role_order(self):
        config = make_config()
        with pytest.raises(ValueError, match="profiles"):
            _ = BrokerSelector(config.cloud_broker, config.local_broker)


class TestHysteresis:
    """A switch happens only on a verdict change or sustained failure."""

    def test_verdict_change_switches(self, selector: BrokerSelector):
        _ = selector.select_target(context(True), HEALTHY)
        chosen = selector.select_target(context(False), HEALTHY)
        assert chosen.role is BrokerRole.CLOUD
        assert selector.last_reason is SelectionReason.NETWORK_CHANGE

    def test_isolated_failure_does_not_switch(self, selector: BrokerSelector):
        _ = selector.select_target(context(True), HEALTHY)
        health = ConnectionHealth(active_role=BrokerRole.LOCAL, consecutive_failures=1)
        assert selector.select_target(context(True), health).role is BrokerRole.LOCAL
        assert selector.last_reason is SelectionReason.UNCHANGED

    def test_sustained_failure_on_current_target_switches(self, selector: BrokerSelector):
        _ = selector.select_target(context(True), HEALTHY)
        health = ConnectionHealth(active_role=BrokerRole.LOCAL, sustained_failure_role=BrokerRole.LOCAL)
        assert selector.select_target(context(True), health).role is BrokerRole.CLOUD
        assert selector.last_reason is SelectionReason.SUSTAINED_FAILURE

    def test_sustained_failure_stays_on_alternate_until_verdict_changes(self, selector: BrokerSelector):
        _ = selector.select_target(context(True), HEALTHY)
        _ = selector.select_target(context(True), ConnectionHealth(sustained_failure_role=BrokerRole.LOCAL))
        # Still trusted, cloud healthy: no automatic return to the preferred broker.
        assert selector.select_target(context(True), HEALTHY).role is BrokerRole.CLOUD

    def test_sustained_failure_for_other_role_is_ignored(self, selector: BrokerSelector):
        _ = selector.select_target(context(False), HEALTHY)
        health = ConnectionHealth(sustained_failure_role=BrokerRole.LOCAL)
        assert selector.select_target(context(False), health).role is BrokerRole.CLOUD

    @pytest.mark.parametrize(
        ("verdicts", "expected_roles"),
        [
            ([True, True, True], ["local", "local", "local"]),
            ([True, False, False, True], ["local", "cloud", "cloud", "local"]),
            ([False, False, True, True], ["cloud", "cloud", "local", "local"]),
        ],
    )
    def test_switches_iff_verdict_changes(
        self,
        selector: BrokerSelector,
        verdicts: list[bool],
        expected_roles: list[str],
    ):
        roles = [selector.select_target(context(v), HEALTHY).role.value for v in verdicts]
        assert roles == expected_roles


class TestAuthRejection:
    def test_rejected_role_fails_over(self, selector: BrokerSelector):
        _ = selector.select_target(context(False), HEALTHY)
        health = ConnectionHealth(auth_rejected_roles=frozenset({BrokerRole.CLOUD}))
        assert selector.select_target(context(False), health).role is BrokerRole.LOCAL
        assert selector.last_reason is SelectionReason.AUTH_REJECTED

    def test_both_rejected_keeps_preference(self, selector: BrokerSelector):
        health = ConnectionHealth(auth_rejected_roles=frozenset(BrokerRole))
        assert selector.select_target(context(False), health).role is BrokerRole.CLOUD


class TestOverride:
    def test_override_wins_over_network(self, selector: BrokerSelector):
        selector.set_override(BrokerRole.CLOUD)
        assert selector.select_target(context(True), HEALTHY).role is BrokerRole.CLOUD
        assert selector.last_reason is SelectionReason.OVERRIDE

    def test_override_ignores_auth_rejection(self, selector: BrokerSelector):
        selector.set_override(BrokerRole.CLOUD)
        health = ConnectionHealth(auth_rejected_roles=frozenset({BrokerRole.CLOUD}))
        assert selector.select_target(context(True), health).role is BrokerRole.CLOUD

    def test_clearing_override_restores_preference(self, selector: BrokerSelector):
        selector.set_override(BrokerRole.CLOUD)
        _ = selector.select_target(context(True), HEALTHY)
        selector.set_override(None)
        assert selector.select_target(context(True), HEALTHY).role is BrokerRole.LOCAL


class TestProfiles:
    def test_set_profiles_refreshes_last_selection(self, selector: BrokerSelector):
        _ = selector.select_target(context(True), HEALTHY)
        local = BrokerProfile(role=BrokerRole.LOCAL, host="192.168.1.11")
        cloud = BrokerProfile(role=BrokerRole.CLOUD, host="cloud2.example.net")
        selector.set_profiles(local, cloud)
        assert selector.last_selected == local
        assert selector.profile(BrokerRole.CLOUD) == cloud
