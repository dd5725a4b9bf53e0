"""
Tests for the Grace Period Manager
"""

import pytest
import threading
from datetime import timedelta

from entitlement_rail.billing.grace import (
    AccessLevel,
    GracePeriodManager,
    GraceStatus,
    access_level,
    get_grace_status,
    grace_days_for_tier,
)
from entitlement_rail.core.errors import NotFoundError
from entitlement_rail.persistence.models import SubscriptionRecord
from entitlement_rail.persistence.repository import AuditRepository, SubscriptionRepository, TenantRepository


@pytest.fixture
def grace(temp_db):
    return GracePeriodManager(temp_db)


class TestGraceDays:
    """Test tier grace lengths."""

    @pytest.mark.parametrize("plan,days", [
        ("starter_monthly", 3),
        ("growth_yearly", 14),
        ("premium", 14),
        ("Enterprise", 30),
        ("basic", 7),
        (None, 7),
    ])
    def test_tier_days(self, plan, days):
        assert grace_days_for_tier(plan) == days

    def test_trial_gets_no_grace(self):
        assert grace_days_for_tier("growth", is_trial=True) == 0


class TestGraceStatus:
    """Test pure status derivation."""

    def _subscription(self, now, period_end_days, grace_end_days=None, status="EXPIRED"):
        return SubscriptionRecord(
            subscription_id="sub_x",
            tenant_id="t_x",
            status=status,
            plan_code="starter",
            current_period_end=now + timedelta(days=period_end_days),
            grace_period_end=now + timedelta(days=grace_end_days) if grace_end_days is not None else None,
        )

    def test_period_not_ended(self, now):
        info = get_grace_status(self._subscription(now, 5, status="ACTIVE"), now)

        assert info.status is GraceStatus.SUBSCRIPTION_ACTIVE

    def test_in_grace(self, now):
        info = get_grace_status(self._subscription(now, -1, grace_end_days=2), now)

        assert info.status is GraceStatus.GRACE_ACTIVE
        assert info.days_remaining == 2
        assert info.grace_period_days == 3

    def test_grace_over(self, now):
        info = get_grace_status(self._subscription(now, -5, grace_end_days=-2), now)

        assert info.status is GraceStatus.GRACE_EXPIRED

    def test_access_levels(self):
        assert access_level("ACTIVE", GraceStatus.SUBSCRIPTION_ACTIVE, 0).level is AccessLevel.FULL
        limited = access_level("EXPIRED", GraceStatus.GRACE_ACTIVE, 2)
        assert limited.level is AccessLevel.LIMITED
        assert limited.can_extend is True
        assert "2 day(s)" in limited.message
        assert access_level("EXPIRED", GraceStatus.GRACE_EXPIRED, 0).level is AccessLevel.NONE


class TestApplyGracePeriod:
    """Test applying grace against the store."""

    def test_expires_and_sets_window(self, grace, make_tenant, now):
        make_tenant("t_lapse")

        result = grace.apply_grace_period("t_lapse", "sub_t_lapse", now)

        assert result.success is True
        assert result.grace_period_days == 3
        assert result.grace_period_end == now + timedelta(days=3)
        subscription = SubscriptionRepository(grace.db).get("sub_t_lapse")
        assert subscription.status == "EXPIRED"
        assert subscription.grace_period_end == now + timedelta(days=3)
        assert TenantRepository(grace.db).get("t_lapse").subscription_status == "expired"

    def test_audit_written(self, grace, make_tenant, now):
        make_tenant("t_audited")

        grace.apply_grace_period("t_audited", "sub_t_audited", now)

        entries = AuditRepository(grace.db).list_for_tenant("t_audited", action="grace_period_applied")
        assert len(entries) == 1
        assert entries[0].metadata["grace_period_days"] == 3

    def test_reapplication_keeps_window(self, grace, make_tenant, now):
        make_tenant("t_again")
        first = grace.apply_grace_period("t_again", "sub_t_again", now)

        second = grace.apply_grace_period("t_again", "sub_t_again", now + timedelta(days=1))

        assert second.success is True
        assert second.already_in_grace is True
        assert second.grace_period_end == first.grace_period_end

    def test_invalid_transition(self, grace, make_tenant, now):
        make_tenant("t_cancelled", status="cancelled")

        result = grace.apply_grace_period("t_cancelled", "sub_t_cancelled", now)

        assert result.success is False
        assert "CANCELLED" in result.error

    def test_other_tenants_subscription_rejected(self, grace, make_tenant, now):
        make_tenant("t_owner")
        make_tenant("t_intruder")

        result = grace.apply_grace_period("t_intruder", "sub_t_owner", now)

        assert result.success is False
        assert SubscriptionRepository(grace.db).get("sub_t_owner").status == "ACTIVE"
        assert AuditRepository(grace.db).list_for_tenant("t_intruder", action="grace_period_applied") == []

    def test_concurrent_application_opens_one_window(self, grace, make_tenant, now):
        make_tenant("t_grace_race")
        n = 6
        results = []
        lock = threading.Lock()
        barrier = threading.Barrier(n)

        def worker():
            barrier.wait()
            result = grace.apply_grace_period("t_grace_race", "sub_t_grace_race", now)
            with lock:
                results.append(result)

        threads = [threading.Thread(target=worker) for _ in range(n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert all(r.success for r in results)
        assert [r.already_in_grace for r in results].count(False) == 1
        assert len(AuditRepository(grace.db).list_for_tenant("t_grace_race", action="grace_period_applied")) == 1

    def test_unknown_subscription(self, grace, now):
        result = grace.apply_grace_period("t_none", "sub_none", now)

        assert result.success is False


class TestStatusWithGrace:
    """Test the status summary."""

    def test_active_subscription(self, grace, make_tenant, now):
        make_tenant("t_fine")

        summary = grace.status_with_grace("t_fine", now)

        assert summary["access_level"] == "full"
        assert summary["is_active"] is True
        assert summary["has_grace_period"] is False

    def test_during_and_after_grace(self, grace, make_tenant, now):
        make_tenant("t_grace_window")
        lapse = now + timedelta(days=21)
        grace.apply_grace_period("t_grace_window", "sub_t_grace_window", lapse)

        during = grace.status_with_grace("t_grace_window", lapse + timedelta(days=1))
        after = grace.status_with_grace("t_grace_window", lapse + timedelta(days=4))

        assert during["access_level"] == "limited"
        assert during["has_grace_period"] is True
        assert during["days_remaining_in_grace"] == 2
        assert after["access_level"] == "none"
        assert after["is_active"] is False

    def test_unknown_tenant(self, grace, now):
        with pytest.raises(NotFoundError):
            grace.status_with_grace("t_ghost", now)
