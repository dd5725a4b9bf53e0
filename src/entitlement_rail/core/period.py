"""
Billing Period Resolver

Computes the billing window containing a given instant. Trial tenants use the
window [now, trial_end]; paid tenants use whole monthly or yearly cycles
counted forward from the trial end date. Everything here is pure: the same
inputs always give the same window.
"""

import calendar
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from .errors import NoActiveSubscriptionError, TrialExpiredError
from .plans import BillingCycle, PlanTier

TRIAL_STATUSES = frozenset({"trial", "trialing"})


@dataclass(frozen=True)
class BillingWindow:
    """A resolved billing window."""
    start: datetime
    end: datetime
    is_trial: bool = False

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant < self.end

    def to_dict(self) -> Dict[str, Any]:
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "is_trial": self.is_trial,
        }


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_dt(value: Union[str, datetime, None]) -> Optional[datetime]:
    """Parse an ISO timestamp (or pass through a datetime) as aware UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def normalize_plan_type(raw: Any) -> Optional[PlanTier]:
    """
    Normalize a stored plan code ("starter_monthly", "Pro-Yearly") to a tier.

    Only the first "_" or "-" separated token is considered.
    """
    value = str(raw if raw is not None else "").strip().lower()
    tokens = [t for t in value.replace("-", "_").split("_") if t]
    base = tokens[0] if tokens else value

    if base in ("free", "trial"):
        return PlanTier.TRIAL
    if base == "starter":
        return PlanTier.STARTER
    if base in ("professional", "pro", "growth"):
        return PlanTier.GROWTH
    return None


def add_months(dt: datetime, months: int) -> datetime:
    """Calendar month arithmetic; the day is clamped to the target month."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def cycle_months(cycle: BillingCycle) -> int:
    return {
        BillingCycle.MONTHLY: 1,
        BillingCycle.QUARTERLY: 3,
        BillingCycle.YEARLY: 12,
    }[cycle]


def whole_months_between(start: datetime, end: datetime) -> int:
    """Number of whole calendar months from start up to end (0 if end <= start)."""
    if end <= start:
        return 0
    months = (end.year - start.year) * 12 + (end.month - start.month)
    if add_months(start, months) > end:
        months -= 1
    return max(0, months)


def resolve_paid_period(
    trial_end: datetime,
    now: datetime,
    cycle: BillingCycle = BillingCycle.MONTHLY,
) -> BillingWindow:
    """
    Find the paid cycle containing now, anchored to trial_end.

    Boundaries are computed from the anchor (not chained) so month-end anchors
    do not drift: a Jan 31 anchor gives Feb 28/29, Mar 31, Apr 30, ...
    """
    step = cycle_months(cycle)
    elapsed = whole_months_between(trial_end, now)
    k = elapsed // step
    start = add_months(trial_end, k * step)
    end = add_months(trial_end, (k + 1) * step)
    return BillingWindow(start=start, end=end, is_trial=False)


def resolve_billing_window(
    status: Optional[str],
    trial_end: Optional[datetime],
    now: datetime,
    cycle: BillingCycle = BillingCycle.MONTHLY,
) -> BillingWindow:
    """
    Resolve the billing window for a tenant.

    Raises:
        NoActiveSubscriptionError: no trial end date to anchor on
        TrialExpiredError: tenant is still in trial but the trial has ended
    """
    if trial_end is None:
        raise NoActiveSubscriptionError("No active subscription: missing trial end date")

    if (status or "").strip().lower() in TRIAL_STATUSES:
        if now >= trial_end:
            raise TrialExpiredError(
                "Trial period has ended",
                {"trial_end": trial_end.isoformat()},
            )
        return BillingWindow(start=now, end=trial_end, is_trial=True)

    return resolve_paid_period(trial_end, now, cycle)
