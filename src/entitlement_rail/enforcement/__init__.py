"""
ENTITLEMENT RAIL - Enforcement Module

The entitlement gate: no label is generated unless quota was consumed first,
and reservations are refunded when generation fails.
"""

from .gate import EntitlementEnforcer, EnforcerConfig, EntitlementDecision, RefundResult
from .compensation import ReservationSaga, ReservationOutcome

__all__ = [
    "EntitlementEnforcer",
    "EnforcerConfig",
    "EntitlementDecision",
    "RefundResult",
    "ReservationSaga",
    "ReservationOutcome",
]
