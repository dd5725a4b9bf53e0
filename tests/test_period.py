"""
Tests for the Billing Period Resolver

Window resolution is pure: trial windows end at the trial end date, paid
windows are whole cycles counted forward from it.
"""

import pytest
from datetime import datetime, timedelta, timezone

from entitlement_rail.core.errors import NoActiveSubscriptionError, TrialExpiredError
from entitlement_rail.core.period import (
    add_months,
    normalize_plan_type,
    parse_dt,
    resolve_billing_window,
    resolve_paid_period,
    whole_months_between,
)
from entitlement_rail.core.plans import BillingCycle, PlanQuotas, PlanTier, monthly_allotment


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


class TestPlanNormalization:
    """Test plan code normalization."""

    @pytest.mark.parametrize("raw,expected", [
        ("starter", PlanTier.STARTER),
        ("starter_monthly", PlanTier.STARTER),
        ("Starter-Yearly", PlanTier.STARTER),
        ("pro", PlanTier.GROWTH),
        ("professional_yearly", PlanTier.GROWTH),
        ("growth", PlanTier.GROWTH),
        ("free", PlanTier.TRIAL),
        ("trial", PlanTier.TRIAL),
    ])
    def test_known_plans(self, raw, expected):
        assert normalize_plan_type(raw) is expected

    @pytest.mark.parametrize("raw", [None, "", "enterprise", "platinum_monthly"])
    def test_unknown_plans(self, raw):
        assert normalize_plan_type(raw) is None


class TestMonthArithmetic:
    """Test calendar month helpers."""

    def test_add_months_clamps_day(self):
        assert add_months(utc(2026, 1, 31), 1) == utc(2026, 2, 28)
        assert add_months(utc(2028, 1, 31), 1) == utc(2028, 2, 29)

    def test_add_months_crosses_year(self):
        assert add_months(utc(2026, 11, 15), 3) == utc(2027, 2, 15)

    def test_whole_months_between(self):
        assert whole_months_between(utc(2026, 1, 15), utc(2026, 3, 14)) == 1
        assert whole_months_between(utc(2026, 1, 15), utc(2026, 3, 15)) == 2
        assert whole_months_between(utc(2026, 3, 15), utc(2026, 1, 15)) == 0

    def test_parse_dt_naive_is_utc(self):
        parsed = parse_dt("2026-10-01T00:00:00")
        assert parsed.tzinfo is not None
        assert parsed == utc(2026, 10, 1)

    def test_parse_dt_z_suffix(self):
        assert parse_dt("2026-10-01T00:00:00Z") == utc(2026, 10, 1)


class TestBillingWindow:
    """Test billing window resolution."""

    def test_trial_window_ends_at_trial_end(self):
        now = utc(2026, 10, 1)
        trial_end = utc(2026, 10, 15)

        window = resolve_billing_window("trial", trial_end, now)

        assert window.is_trial is True
        assert window.start == now
        assert window.end == trial_end

    def test_expired_trial_raises(self):
        with pytest.raises(TrialExpiredError):
            resolve_billing_window("trialing", utc(2026, 10, 1), utc(2026, 10, 2))

    def test_missing_trial_end_raises(self):
        with pytest.raises(NoActiveSubscriptionError):
            resolve_billing_window("active", None, utc(2026, 10, 2))

    def test_paid_monthly_window(self):
        window = resolve_billing_window("active", utc(2026, 1, 10), utc(2026, 3, 20))

        assert window.is_trial is False
        assert window.start == utc(2026, 3, 10)
        assert window.end == utc(2026, 4, 10)
        assert window.contains(utc(2026, 3, 20))

    def test_paid_window_on_boundary_starts_new_cycle(self):
        window = resolve_paid_period(utc(2026, 1, 10), utc(2026, 2, 10))

        assert window.start == utc(2026, 2, 10)

    def test_month_end_anchor_does_not_drift(self):
        anchor = utc(2026, 1, 31)

        feb = resolve_paid_period(anchor, utc(2026, 3, 1))
        apr = resolve_paid_period(anchor, utc(2026, 4, 15))

        assert feb.start == utc(2026, 2, 28)
        assert feb.end == utc(2026, 3, 31)
        assert apr.start == utc(2026, 3, 31)
        assert apr.end == utc(2026, 4, 30)

    def test_yearly_window(self):
        window = resolve_paid_period(utc(2026, 1, 10), utc(2026, 11, 1), BillingCycle.YEARLY)

        assert window.start == utc(2026, 1, 10)
        assert window.end == utc(2027, 1, 10)

    def test_resolution_is_deterministic(self):
        now = utc(2026, 6, 5) + timedelta(hours=3)
        first = resolve_billing_window("active", utc(2026, 1, 10), now)
        second = resolve_billing_window("active", utc(2026, 1, 10), now)

        assert first == second


class TestPlanCatalog:
    """Test plan quotas."""

    def test_sscc_pool_is_sum_of_box_carton_pallet(self):
        starter = PlanQuotas.for_tier(PlanTier.STARTER)
        assert starter.sscc_labels_quota == 20_000 + 2_000 + 500

    def test_trial_is_unlimited(self):
        trial = PlanQuotas.for_tier(PlanTier.TRIAL)
        assert trial.is_unlimited is True
        assert monthly_allotment(PlanTier.TRIAL) == {"unit": 0, "sscc": 0}

    def test_cycle_parse_defaults_to_monthly(self):
        assert BillingCycle.parse(None) is BillingCycle.MONTHLY
        assert BillingCycle.parse("YEARLY") is BillingCycle.YEARLY
        assert BillingCycle.parse("weekly") is BillingCycle.MONTHLY
