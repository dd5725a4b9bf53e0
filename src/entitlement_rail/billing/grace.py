"""
Grace Period Manager

Bounded, degraded access after a subscription expires. Grace length depends
on the plan tier; trials get none. Access level is recomputed on every call
from (status, grace status, days remaining) and never cached.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
import math
from typing import Any, Dict, List, Optional
import structlog

from ..core.errors import InvalidTransitionError, NotFoundError
from ..core.period import utcnow
from ..core.subscription import SubscriptionStatus
from ..persistence.database import Database, get_database
from ..persistence.models import AuditLogRecord, SubscriptionRecord
from ..persistence.repository import AuditRepository, SubscriptionRepository

logger = structlog.get_logger()


class GraceStatus(Enum):
    SUBSCRIPTION_ACTIVE = "subscription_active"
    GRACE_ACTIVE = "grace_period_active"
    GRACE_EXPIRED = "grace_period_expired"


class AccessLevel(Enum):
    FULL = "full"
    LIMITED = "limited"
    NONE = "none"


DEFAULT_GRACE_DAYS = 7
TIER_BASIC_GRACE_DAYS = 3
TIER_PREMIUM_GRACE_DAYS = 14
TIER_ENTERPRISE_GRACE_DAYS = 30


def grace_days_for_tier(plan_code: Optional[str], is_trial: bool = False) -> int:
    """Grace length in days. Matches on substrings of the raw plan code."""
    if is_trial:
        return 0
    if not plan_code:
        return DEFAULT_GRACE_DAYS

    plan = plan_code.lower()
    if "enterprise" in plan:
        return TIER_ENTERPRISE_GRACE_DAYS
    if "premium" in plan or "growth" in plan:
        return TIER_PREMIUM_GRACE_DAYS
    if "starter" in plan:
        return TIER_BASIC_GRACE_DAYS
    return DEFAULT_GRACE_DAYS


def _ceil_days(delta: timedelta) -> int:
    return math.ceil(delta.total_seconds() / 86400)


@dataclass
class GraceInfo:
    grace_period_days: int
    status: GraceStatus
    days_remaining: int = 0
    expires_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "grace_period_days": self.grace_period_days,
            "grace_period_status": self.status.value,
            "days_remaining": self.days_remaining,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


@dataclass
class AccessDecision:
    level: AccessLevel
    features: List[str]
    restrictions: List[str]
    can_extend: bool
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level.value,
            "features": self.features,
            "restrictions": self.restrictions,
            "can_extend": self.can_extend,
            "message": self.message,
        }


@dataclass
class GraceApplication:
    """Result of applying a grace period."""
    success: bool
    grace_period_end: Optional[datetime] = None
    grace_period_days: int = 0
    already_in_grace: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "grace_period_end": self.grace_period_end.isoformat() if self.grace_period_end else None,
            "grace_period_days": self.grace_period_days,
            "already_in_grace": self.already_in_grace,
            "error": self.error,
        }


def get_grace_status(subscription: SubscriptionRecord, now: Optional[datetime] = None) -> GraceInfo:
    """Derive the grace status of a subscription at now."""
    now = now or utcnow()
    tier_days = grace_days_for_tier(subscription.plan_code, subscription.is_trial)
    period_end = subscription.current_period_end

    if period_end is not None and now < period_end:
        return GraceInfo(grace_period_days=tier_days, status=GraceStatus.SUBSCRIPTION_ACTIVE)

    grace_end = subscription.grace_period_end
    if grace_end is not None and now < grace_end:
        granted = _ceil_days(grace_end - period_end) if period_end else tier_days
        return GraceInfo(
            grace_period_days=granted,
            status=GraceStatus.GRACE_ACTIVE,
            days_remaining=max(0, _ceil_days(grace_end - now)),
            expires_at=grace_end,
        )

    return GraceInfo(grace_period_days=tier_days, status=GraceStatus.GRACE_EXPIRED)


def access_level(subscription_status: str, grace_status: GraceStatus, days_remaining: int) -> AccessDecision:
    """Pure mapping from subscription and grace state to an access level."""
    status = SubscriptionStatus.parse(subscription_status)

    if status is SubscriptionStatus.ACTIVE and grace_status is GraceStatus.SUBSCRIPTION_ACTIVE:
        return AccessDecision(
            level=AccessLevel.FULL,
            features=["all"],
            restrictions=[],
            can_extend=True,
            message="Subscription is active",
        )

    if grace_status is GraceStatus.GRACE_ACTIVE:
        return AccessDecision(
            level=AccessLevel.LIMITED,
            features=["view", "export", "renew"],
            restrictions=[
                "Cannot create new shipments",
                "Cannot purchase add-ons",
                "Cannot upgrade/downgrade plan",
                "Read-only access only",
            ],
            can_extend=days_remaining > 0,
            message=(
                f"Subscription expired. Grace period active with {days_remaining} "
                "day(s) remaining. Please renew."
            ),
        )

    return AccessDecision(
        level=AccessLevel.NONE,
        features=[],
        restrictions=["All features disabled", "Subscription expired"],
        can_extend=False,
        message="Subscription has expired. Please renew to continue using the service.",
    )


class GracePeriodManager:
    """Applies and reports grace periods against the store."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()
        self.subscriptions = SubscriptionRepository(self.db)
        self.audit = AuditRepository(self.db)

    def apply_grace_period(
        self,
        tenant_id: str,
        subscription_id: str,
        now: Optional[datetime] = None,
    ) -> GraceApplication:
        """
        Expire the subscription and open a grace window of the tier's length.

        The subscription must belong to tenant_id. One already EXPIRED with a
        grace end still in the future keeps its existing window.
        """
        now = now or utcnow()
        try:
            subscription, opened = self.subscriptions.enter_grace(
                subscription_id,
                tenant_id,
                lambda s: grace_days_for_tier(s.plan_code, s.is_trial),
                now,
            )
        except (NotFoundError, InvalidTransitionError) as e:
            logger.warning(
                "grace_period_rejected",
                tenant_id=tenant_id,
                subscription_id=subscription_id,
                error=e.message,
            )
            return GraceApplication(success=False, error=e.message)

        grace_days = grace_days_for_tier(subscription.plan_code, subscription.is_trial)
        grace_end = subscription.grace_period_end
        if not opened:
            logger.info(
                "grace_period_already_active",
                tenant_id=tenant_id,
                subscription_id=subscription_id,
                grace_period_end=grace_end.isoformat(),
            )
            return GraceApplication(
                success=True,
                grace_period_end=grace_end,
                grace_period_days=grace_days,
                already_in_grace=True,
            )

        self._audit(tenant_id, subscription_id, grace_days, grace_end)
        logger.info(
            "grace_period_applied",
            tenant_id=tenant_id,
            subscription_id=subscription_id,
            grace_period_days=grace_days,
            grace_period_end=grace_end.isoformat(),
        )
        return GraceApplication(success=True, grace_period_end=grace_end, grace_period_days=grace_days)

    def status_with_grace(self, tenant_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Summary of subscription status, grace window and access level.

        Raises:
            NotFoundError: tenant has no subscription
        """
        now = now or utcnow()
        subscription = self.subscriptions.get_by_tenant(tenant_id)
        if subscription is None:
            raise NotFoundError("Subscription not found", {"tenant_id": tenant_id})

        grace = get_grace_status(subscription, now)
        access = access_level(subscription.status, grace.status, grace.days_remaining)
        return {
            "status": subscription.status,
            "is_active": access.level is not AccessLevel.NONE,
            "has_grace_period": grace.status is GraceStatus.GRACE_ACTIVE,
            "days_remaining_in_grace": grace.days_remaining,
            "grace_period_end": grace.expires_at.isoformat() if grace.expires_at else None,
            "access_level": access.level.value,
            "message": access.message,
        }

    def _audit(self, tenant_id: str, subscription_id: str, days: int, grace_end: datetime) -> None:
        try:
            self.audit.write(AuditLogRecord(
                action="grace_period_applied",
                tenant_id=tenant_id,
                metadata={
                    "subscription_id": subscription_id,
                    "grace_period_days": days,
                    "grace_period_end": grace_end.isoformat(),
                },
            ))
        except Exception as e:
            logger.warning("audit_write_failed", action="grace_period_applied", error=str(e))
