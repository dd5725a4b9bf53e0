"""
Proration Calculator

Day-weighted credit/charge for a mid-cycle plan change. Prices are in the
smallest currency unit (paise, cents).

    daily_rate = price / total_days
    net = new_daily_rate * remaining_days - old_daily_rate * remaining_days

net > 0 is charged to the customer, net < 0 is credited. Amounts round half
up to whole units; the ratio is kept to 4 decimal places.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
import math
from typing import Any, Dict, Optional, Union
import structlog

from ..core.errors import ProrationError
from ..core.period import utcnow
from ..core.plans import BillingCycle

logger = structlog.get_logger()

Number = Union[int, float, Decimal]

_DAYS_IN_CYCLE = {
    BillingCycle.MONTHLY: 30,
    BillingCycle.QUARTERLY: 90,
    BillingCycle.YEARLY: 365,
}


@dataclass(frozen=True)
class ProrationResult:
    """Outcome of a proration calculation."""
    credit_amount: int
    charge_amount: int
    proration_ratio: float
    is_zero: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "credit_amount": self.credit_amount,
            "charge_amount": self.charge_amount,
            "proration_ratio": self.proration_ratio,
            "is_zero": self.is_zero,
        }


@dataclass(frozen=True)
class ProrationBreakdown:
    old_plan_daily_rate: int
    new_plan_daily_rate: int
    unused_old_plan_value: int
    new_plan_cost: int
    remaining_days: int
    total_days_in_cycle: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "old_plan_daily_rate": self.old_plan_daily_rate,
            "new_plan_daily_rate": self.new_plan_daily_rate,
            "unused_old_plan_value": self.unused_old_plan_value,
            "new_plan_cost": self.new_plan_cost,
            "remaining_days": self.remaining_days,
            "total_days_in_cycle": self.total_days_in_cycle,
        }


@dataclass
class PlanChangeOutcome:
    """Result of `process_plan_change`."""
    success: bool
    proration: Optional[ProrationResult] = None
    credit_applied: bool = False
    wallet_balance: Optional[int] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "proration": self.proration.to_dict() if self.proration else None,
            "credit_applied": self.credit_applied,
            "wallet_balance": self.wallet_balance,
            "error": self.error,
        }


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _validate(old_price: Number, new_price: Number, remaining_days: Number, total_days: Number) -> None:
    values = (old_price, new_price, remaining_days, total_days)
    if not all(math.isfinite(v) for v in values):
        # Details as strings: NaN is not valid JSON
        raise ProrationError(
            "Prices and days must be finite numbers",
            {
                "old_price": str(old_price),
                "new_price": str(new_price),
                "remaining_days": str(remaining_days),
                "total_days": str(total_days),
            },
        )
    if old_price < 0 or new_price < 0:
        raise ProrationError(
            "Plan prices cannot be negative",
            {"old_price": old_price, "new_price": new_price},
        )
    if remaining_days < 0 or total_days <= 0:
        raise ProrationError(
            "Invalid day calculations",
            {"remaining_days": remaining_days, "total_days": total_days},
        )
    if remaining_days > total_days:
        raise ProrationError(
            "Remaining days cannot exceed total days in cycle",
            {"remaining_days": remaining_days, "total_days": total_days},
        )


def calculate_proration(
    old_price: Number,
    new_price: Number,
    remaining_days: Number,
    total_days: Number,
) -> ProrationResult:
    """
    Calculate the credit or charge for switching plans mid-cycle.

    Raises:
        ProrationError: non-finite input, negative price, total_days <= 0,
            or remaining_days outside [0, total_days]
    """
    _validate(old_price, new_price, remaining_days, total_days)

    total = Decimal(str(total_days))
    remaining = Decimal(str(remaining_days))
    old_daily = Decimal(str(old_price)) / total
    new_daily = Decimal(str(new_price)) / total

    net = new_daily * remaining - old_daily * remaining

    credit = 0
    charge = 0
    if net > 0:
        charge = _round_half_up(net)
    elif net < 0:
        credit = _round_half_up(-net)

    ratio = (remaining / total).quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)

    return ProrationResult(
        credit_amount=credit,
        charge_amount=charge,
        proration_ratio=float(ratio),
        is_zero=credit == 0 and charge == 0,
    )


def calculate_proration_detailed(
    old_price: Number,
    new_price: Number,
    remaining_days: Number,
    total_days: Number,
) -> Dict[str, Any]:
    """Proration plus the rate breakdown shown on invoices."""
    result = calculate_proration(old_price, new_price, remaining_days, total_days)

    total = Decimal(str(total_days))
    remaining = Decimal(str(remaining_days))
    old_daily = Decimal(str(old_price)) / total
    new_daily = Decimal(str(new_price)) / total

    breakdown = ProrationBreakdown(
        old_plan_daily_rate=_round_half_up(old_daily),
        new_plan_daily_rate=_round_half_up(new_daily),
        unused_old_plan_value=_round_half_up(old_daily * remaining),
        new_plan_cost=_round_half_up(new_daily * remaining),
        remaining_days=int(remaining_days),
        total_days_in_cycle=int(total_days),
    )
    return {**result.to_dict(), "breakdown": breakdown.to_dict()}


def remaining_days_in_cycle(period_end: datetime, now: Optional[datetime] = None) -> int:
    """
    Whole days (rounded up) left before period_end.

    Raises:
        ProrationError: the period has already ended
    """
    now = now or utcnow()
    if period_end <= now:
        raise ProrationError(
            "Billing period has already ended",
            {"period_end": period_end.isoformat()},
        )
    return math.ceil((period_end - now).total_seconds() / 86400)


def total_days_in_cycle(cycle: Union[str, BillingCycle, None]) -> int:
    if not isinstance(cycle, BillingCycle):
        cycle = BillingCycle.parse(cycle)
    return _DAYS_IN_CYCLE[cycle]


def format_proration(result: ProrationResult, currency: str = "INR") -> Dict[str, Any]:
    """Render amounts in major units for API responses."""
    def fmt(amount: int) -> str:
        return f"{currency} {amount / 100:.2f}"

    return {
        "credit_amount": result.credit_amount,
        "credit_amount_formatted": fmt(result.credit_amount),
        "charge_amount": result.charge_amount,
        "charge_amount_formatted": fmt(result.charge_amount),
        "proration_percentage": f"{result.proration_ratio * 100:.2f}%",
        "is_zero": result.is_zero,
    }


def process_plan_change(
    tenant_id: str,
    old_price: Number,
    new_price: Number,
    period_end: datetime,
    billing_cycle: Union[str, BillingCycle, None],
    credit_wallet: bool = False,
    wallet: Any = None,
    now: Optional[datetime] = None,
) -> PlanChangeOutcome:
    """
    Compute proration for a plan change and apply downgrade credit.

    Credits go to the tenant wallet when `credit_wallet` is set. Charges are
    returned for the payment flow to collect; nothing is charged here.
    """
    try:
        remaining = remaining_days_in_cycle(period_end, now)
    except ProrationError as e:
        return PlanChangeOutcome(success=False, error=e.message)

    total = total_days_in_cycle(billing_cycle)
    proration = calculate_proration(old_price, new_price, min(remaining, total), total)

    if proration.is_zero or proration.credit_amount == 0 or not credit_wallet:
        return PlanChangeOutcome(success=True, proration=proration)

    if wallet is None:
        from ..persistence.repository import CreditWalletRepository
        wallet = CreditWalletRepository()

    try:
        balance = wallet.add_credit(tenant_id, proration.credit_amount)
    except Exception as e:
        logger.error("proration_credit_failed", tenant_id=tenant_id, error=str(e))
        return PlanChangeOutcome(
            success=False,
            proration=proration,
            error=f"Failed to apply credit: {e}",
        )

    logger.info(
        "proration_credit_applied",
        tenant_id=tenant_id,
        credit_amount=proration.credit_amount,
        remaining_days=remaining,
        wallet_balance=balance,
    )
    return PlanChangeOutcome(
        success=True,
        proration=proration,
        credit_applied=True,
        wallet_balance=balance,
    )
