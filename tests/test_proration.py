"""
Tests for the Proration Calculator
"""

import pytest
from datetime import timedelta

from entitlement_rail.billing.proration import (
    calculate_proration,
    calculate_proration_detailed,
    format_proration,
    process_plan_change,
    remaining_days_in_cycle,
    total_days_in_cycle,
)
from entitlement_rail.core.errors import ProrationError
from entitlement_rail.persistence.repository import CreditWalletRepository


class TestCalculateProration:
    """Test the day-weighted calculation."""

    def test_same_price_is_zero(self):
        result = calculate_proration(1000, 1000, 15, 30)

        assert result.is_zero is True
        assert result.credit_amount == 0
        assert result.charge_amount == 0

    def test_upgrade_charges_difference(self):
        result = calculate_proration(3000, 6000, 15, 30)

        assert result.charge_amount == 1500
        assert result.credit_amount == 0
        assert result.proration_ratio == 0.5

    def test_downgrade_credits_difference(self):
        result = calculate_proration(6000, 3000, 10, 30)

        assert result.credit_amount == 1000
        assert result.charge_amount == 0
        assert result.is_zero is False

    def test_rounds_half_up(self):
        # 1/20 * 10 = 0.5
        result = calculate_proration(0, 1, 10, 20)

        assert result.charge_amount == 1

    def test_ratio_four_decimals(self):
        assert calculate_proration(100, 200, 1, 3).proration_ratio == 0.3333

    def test_zero_remaining_days(self):
        assert calculate_proration(1000, 9000, 0, 30).is_zero is True

    @pytest.mark.parametrize("args", [
        (-1, 100, 10, 30),
        (100, -1, 10, 30),
        (100, 200, -1, 30),
        (100, 200, 31, 30),
        (100, 200, 0, 0),
    ])
    def test_invalid_inputs(self, args):
        with pytest.raises(ProrationError):
            calculate_proration(*args)

    @pytest.mark.parametrize("args", [
        (float("nan"), 100, 10, 30),
        (100, float("inf"), 10, 30),
        (100, 200, float("nan"), 30),
        (100, 200, 10, float("inf")),
    ])
    def test_non_finite_inputs_rejected(self, args):
        """NaN and infinity fail before any range check."""
        with pytest.raises(ProrationError) as exc:
            calculate_proration(*args)
        assert "finite" in exc.value.message
        assert all(isinstance(v, str) for v in exc.value.details.values())


class TestProrationHelpers:
    """Test breakdown, formatting and day helpers."""

    def test_detailed_breakdown(self):
        detailed = calculate_proration_detailed(3000, 6000, 15, 30)

        assert detailed["charge_amount"] == 1500
        assert detailed["breakdown"]["old_plan_daily_rate"] == 100
        assert detailed["breakdown"]["new_plan_daily_rate"] == 200
        assert detailed["breakdown"]["unused_old_plan_value"] == 1500
        assert detailed["breakdown"]["new_plan_cost"] == 3000

    def test_format(self):
        formatted = format_proration(calculate_proration(3000, 6000, 15, 30))

        assert formatted["charge_amount_formatted"] == "INR 15.00"
        assert formatted["proration_percentage"] == "50.00%"

    def test_remaining_days_rounds_up(self, now):
        assert remaining_days_in_cycle(now + timedelta(days=3, hours=1), now) == 4

    def test_remaining_days_after_end(self, now):
        with pytest.raises(ProrationError):
            remaining_days_in_cycle(now, now)

    @pytest.mark.parametrize("cycle,days", [("monthly", 30), ("quarterly", 90), ("yearly", 365), (None, 30)])
    def test_total_days(self, cycle, days):
        assert total_days_in_cycle(cycle) == days


class TestPlanChange:
    """Test plan change processing with wallet credit."""

    def test_downgrade_credits_wallet(self, temp_db, make_tenant, now):
        make_tenant("t_down")
        wallet = CreditWalletRepository(temp_db)

        outcome = process_plan_change(
            "t_down", 6000, 3000, now + timedelta(days=15), "monthly",
            credit_wallet=True, wallet=wallet, now=now,
        )

        assert outcome.success is True
        assert outcome.credit_applied is True
        assert outcome.wallet_balance == 1500
        assert wallet.get_balance("t_down") == 1500

    def test_upgrade_returns_charge_without_wallet(self, temp_db, now):
        wallet = CreditWalletRepository(temp_db)

        outcome = process_plan_change(
            "t_up", 3000, 6000, now + timedelta(days=15), "monthly",
            credit_wallet=True, wallet=wallet, now=now,
        )

        assert outcome.proration.charge_amount == 1500
        assert outcome.credit_applied is False
        assert wallet.get_balance("t_up") == 0

    def test_ended_period_fails(self, now):
        outcome = process_plan_change("t_late", 3000, 6000, now - timedelta(days=1), "monthly", now=now)

        assert outcome.success is False
        assert outcome.error == "Billing period has already ended"

    def test_remaining_clamped_to_cycle(self, now):
        outcome = process_plan_change("t_long", 3000, 6000, now + timedelta(days=45), "monthly", now=now)

        assert outcome.success is True
        assert outcome.proration.proration_ratio == 1.0
        assert outcome.proration.charge_amount == 3000

    def test_wallet_failure_reported(self, now):
        class BrokenWallet:
            def add_credit(self, tenant_id, amount):
                raise RuntimeError("wallet offline")

        outcome = process_plan_change(
            "t_wallet", 6000, 3000, now + timedelta(days=15), "monthly",
            credit_wallet=True, wallet=BrokenWallet(), now=now,
        )

        assert outcome.success is False
        assert outcome.proration.credit_amount == 1500
        assert "wallet offline" in outcome.error
