"""
Error Taxonomy

Every failure the accounting core can produce maps onto one reason code.
Enforcement returns these codes inside structured decisions; the exceptions
below are raised by the lower layers (period resolution, state machine,
proration, pause validation) and translated at the gate.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ReasonCode(Enum):
    """Decision reason codes returned by the entitlement gate."""
    ALLOWED = "ALLOWED"
    NON_CONSUMING = "NON_CONSUMING"
    INVALID_USAGE_TYPE = "INVALID_USAGE_TYPE"
    TRIAL_EXPIRED = "TRIAL_EXPIRED"
    NO_ACTIVE_SUBSCRIPTION = "NO_ACTIVE_SUBSCRIPTION"
    SUBSCRIPTION_INACTIVE = "SUBSCRIPTION_INACTIVE"
    PLAN_LIMIT_REACHED = "PLAN_LIMIT_REACHED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    STORE_ERROR = "STORE_ERROR"


class EntitlementError(Exception):
    """Base class for accounting-core errors."""

    reason_code: ReasonCode = ReasonCode.QUOTA_EXCEEDED

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "reason_code": self.reason_code.value,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(EntitlementError):
    """Bad input. Fails closed with zero side effects."""
    reason_code = ReasonCode.INVALID_USAGE_TYPE


class ProrationError(ValidationError):
    """Invalid proration inputs."""
    pass


class PauseValidationError(ValidationError):
    """Pause request outside configured limits."""
    pass


class AuthorizationGap(EntitlementError):
    """Tenant exists but may not operate."""
    reason_code = ReasonCode.SUBSCRIPTION_INACTIVE


class SubscriptionInactiveError(AuthorizationGap):
    reason_code = ReasonCode.SUBSCRIPTION_INACTIVE


class TrialExpiredError(AuthorizationGap):
    reason_code = ReasonCode.TRIAL_EXPIRED


class NoActiveSubscriptionError(AuthorizationGap):
    reason_code = ReasonCode.NO_ACTIVE_SUBSCRIPTION


class LimitExceeded(EntitlementError):
    """Hard plan cap reached."""
    reason_code = ReasonCode.PLAN_LIMIT_REACHED


class QuotaExhausted(EntitlementError):
    """Ledger balance insufficient."""
    reason_code = ReasonCode.QUOTA_EXCEEDED


class StoreError(EntitlementError):
    """Transient persistence failure. Surfaced, never silently retried."""
    reason_code = ReasonCode.STORE_ERROR


class TelemetryFailure(EntitlementError):
    """Usage or audit write failed. Logged and swallowed by callers."""
    pass


class InvalidTransitionError(ValidationError):
    """Subscription status change not permitted by the transition table."""

    def __init__(self, from_status: str, to_status: str):
        super().__init__(
            f"Invalid subscription transition: {from_status} -> {to_status}",
            {"from_status": from_status, "to_status": to_status},
        )
        self.from_status = from_status
        self.to_status = to_status


class NotFoundError(EntitlementError):
    """Referenced tenant, subscription or record does not exist."""
    reason_code = ReasonCode.NO_ACTIVE_SUBSCRIPTION
