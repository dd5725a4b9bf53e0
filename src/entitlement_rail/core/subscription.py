"""
Subscription State Machine

Fixed transition table gating which status changes are legal. There is no
formal terminal state: CANCELLED and EXPIRED both permit re-entry.
"""

from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from .errors import InvalidTransitionError


class SubscriptionStatus(Enum):
    """Subscription lifecycle states."""
    TRIAL = "TRIAL"
    TRIALING = "trialing"
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"

    @classmethod
    def parse(cls, value: object) -> Optional["SubscriptionStatus"]:
        """
        Parse a stored status. Case-insensitive, except that "trialing" and
        "TRIAL" stay distinct states.
        """
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        normalized = value.strip()
        if normalized.lower() == "trialing":
            return cls.TRIALING
        try:
            return cls[normalized.upper()]
        except KeyError:
            return None


S = SubscriptionStatus

TRANSITIONS: Dict[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    S.TRIAL: frozenset({S.TRIALING, S.ACTIVE, S.PENDING, S.EXPIRED}),
    S.TRIALING: frozenset({S.TRIAL, S.ACTIVE, S.PENDING, S.EXPIRED}),
    S.PENDING: frozenset({S.ACTIVE, S.CANCELLED, S.EXPIRED}),
    # PENDING for upgrades
    S.ACTIVE: frozenset({S.PAUSED, S.CANCELLED, S.EXPIRED, S.PENDING}),
    S.PAUSED: frozenset({S.ACTIVE, S.CANCELLED, S.EXPIRED}),
    S.CANCELLED: frozenset({S.ACTIVE, S.PENDING}),
    S.EXPIRED: frozenset({S.ACTIVE, S.PENDING, S.TRIAL}),
}

_DESCRIPTIONS: Dict[tuple, str] = {
    (S.TRIAL, S.ACTIVE): "Trial converted to paid subscription",
    (S.TRIAL, S.PENDING): "Trial subscription upgrade initiated",
    (S.TRIAL, S.EXPIRED): "Trial period ended without upgrade",
    (S.TRIALING, S.ACTIVE): "Trial converted to paid subscription",
    (S.TRIALING, S.PENDING): "Trial subscription upgrade initiated",
    (S.TRIALING, S.EXPIRED): "Trial period ended without upgrade",
    (S.PENDING, S.ACTIVE): "Payment confirmed, subscription activated",
    (S.PENDING, S.CANCELLED): "Payment failed or cancelled",
    (S.PENDING, S.EXPIRED): "Payment pending expired",
    (S.ACTIVE, S.PAUSED): "Subscription paused temporarily",
    (S.ACTIVE, S.CANCELLED): "Subscription cancelled",
    (S.ACTIVE, S.EXPIRED): "Subscription expired",
    (S.ACTIVE, S.PENDING): "Subscription upgrade initiated",
    (S.PAUSED, S.ACTIVE): "Subscription resumed",
    (S.PAUSED, S.CANCELLED): "Paused subscription cancelled",
    (S.PAUSED, S.EXPIRED): "Paused subscription expired",
    (S.CANCELLED, S.ACTIVE): "Subscription reactivated",
    (S.CANCELLED, S.PENDING): "New subscription started",
    (S.EXPIRED, S.ACTIVE): "New subscription purchased",
    (S.EXPIRED, S.PENDING): "New subscription started",
    (S.EXPIRED, S.TRIAL): "New trial started",
}

_FEATURES: Dict[SubscriptionStatus, List[str]] = {
    S.TRIAL: ["Basic code generation", "Limited usage quotas", "Email support"],
    S.TRIALING: ["Basic code generation", "Limited usage quotas", "Email support"],
    S.PENDING: [
        "View subscription details",
        "Access pending activation features",
        "Customer support contact",
    ],
    S.ACTIVE: [
        "Full code generation",
        "All usage quotas",
        "Email & chat support",
        "Priority processing",
        "API access",
    ],
    S.PAUSED: ["View subscription details", "Resume subscription", "Customer support contact"],
    S.CANCELLED: ["View subscription history", "Start new subscription", "Customer support contact"],
    S.EXPIRED: [
        "View subscription history",
        "Start new subscription or trial",
        "Customer support contact",
    ],
}

_PRIORITY: Dict[SubscriptionStatus, int] = {
    S.PENDING: 0,
    S.ACTIVE: 1,
    S.TRIALING: 2,
    S.TRIAL: 3,
    S.PAUSED: 4,
    S.CANCELLED: 5,
    S.EXPIRED: 6,
}


def is_valid_transition(from_status: object, to_status: object) -> bool:
    """Check a status change against the transition table."""
    source = SubscriptionStatus.parse(from_status)
    target = SubscriptionStatus.parse(to_status)
    if source is None or target is None:
        return False
    return target in TRANSITIONS[source]


def allowed_transitions(status: object) -> List[SubscriptionStatus]:
    source = SubscriptionStatus.parse(status)
    if source is None:
        return []
    return sorted(TRANSITIONS[source], key=lambda s: _PRIORITY[s])


def assert_transition(from_status: object, to_status: object) -> SubscriptionStatus:
    """Validate a transition and return the parsed target status."""
    if not is_valid_transition(from_status, to_status):
        raise InvalidTransitionError(str(from_status), str(to_status))
    return SubscriptionStatus.parse(to_status)


def transition_description(from_status: object, to_status: object) -> str:
    source = SubscriptionStatus.parse(from_status)
    target = SubscriptionStatus.parse(to_status)
    return _DESCRIPTIONS.get((source, target), f"{from_status} -> {to_status}")


def features_for_status(status: object) -> List[str]:
    parsed = SubscriptionStatus.parse(status)
    return list(_FEATURES.get(parsed, [])) if parsed else []


def status_priority(status: object) -> int:
    """Sort key for status lists; unknown statuses sort last."""
    parsed = SubscriptionStatus.parse(status)
    return _PRIORITY.get(parsed, 99) if parsed else 99
