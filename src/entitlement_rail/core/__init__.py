"""
ENTITLEMENT RAIL - Core Module

Pure building blocks of the quota-accounting engine: plan catalog, usage type
mapping, billing period resolution, subscription state machine and the error
taxonomy.
"""

from .errors import (
    ReasonCode,
    EntitlementError,
    ValidationError,
    AuthorizationGap,
    SubscriptionInactiveError,
    TrialExpiredError,
    NoActiveSubscriptionError,
    LimitExceeded,
    QuotaExhausted,
    StoreError,
    TelemetryFailure,
    InvalidTransitionError,
    NotFoundError,
)
from .plans import PlanTier, PlanQuotas, BillingCycle, monthly_allotment
from .usage_types import UsageType, QuotaKind, MetricType, NON_CONSUMING
from .period import BillingWindow, resolve_billing_window, resolve_paid_period, normalize_plan_type
from .subscription import SubscriptionStatus, is_valid_transition, assert_transition

__all__ = [
    "ReasonCode",
    "EntitlementError",
    "ValidationError",
    "AuthorizationGap",
    "SubscriptionInactiveError",
    "TrialExpiredError",
    "NoActiveSubscriptionError",
    "LimitExceeded",
    "QuotaExhausted",
    "StoreError",
    "TelemetryFailure",
    "InvalidTransitionError",
    "NotFoundError",
    "PlanTier",
    "PlanQuotas",
    "BillingCycle",
    "monthly_allotment",
    "UsageType",
    "QuotaKind",
    "MetricType",
    "NON_CONSUMING",
    "BillingWindow",
    "resolve_billing_window",
    "resolve_paid_period",
    "normalize_plan_type",
    "SubscriptionStatus",
    "is_valid_transition",
    "assert_transition",
]
