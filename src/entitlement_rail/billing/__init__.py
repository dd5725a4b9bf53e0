"""
ENTITLEMENT RAIL - Billing Module

Usage telemetry and plan limits, proration for plan changes, grace periods
after expiry, pause limits and seat limits.
"""

from .usage_tracking import UsageTracker, LimitCheck, LimitType, UsageSource
from .proration import (
    ProrationResult,
    PlanChangeOutcome,
    calculate_proration,
    calculate_proration_detailed,
    remaining_days_in_cycle,
    total_days_in_cycle,
    format_proration,
    process_plan_change,
)
from .grace import (
    GraceStatus,
    AccessLevel,
    GracePeriodManager,
    get_grace_status,
    access_level,
    grace_days_for_tier,
)
from .pause import PauseConfig, PauseManager
from .seats import SeatLimits, SeatManager

__all__ = [
    "UsageTracker",
    "LimitCheck",
    "LimitType",
    "UsageSource",
    "ProrationResult",
    "PlanChangeOutcome",
    "calculate_proration",
    "calculate_proration_detailed",
    "remaining_days_in_cycle",
    "total_days_in_cycle",
    "format_proration",
    "process_plan_change",
    "GraceStatus",
    "AccessLevel",
    "GracePeriodManager",
    "get_grace_status",
    "access_level",
    "grace_days_for_tier",
    "PauseConfig",
    "PauseManager",
    "SeatLimits",
    "SeatManager",
]
