"""
Pause Limits

Validates pause requests against per-request and per-year limits and pauses
the subscription through the state machine.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
import math
from typing import Any, Dict, Optional
import structlog

from ..core.errors import PauseValidationError
from ..core.period import utcnow
from ..core.subscription import SubscriptionStatus
from ..persistence.database import Database, get_database
from ..persistence.models import PauseRecord
from ..persistence.repository import (
    PauseHistoryRepository,
    SubscriptionRepository,
    TenantRepository,
)

logger = structlog.get_logger()

DEFAULT_MAX_PAUSE_DAYS = 30
MIN_PAUSE_DAYS = 1
ABSOLUTE_MAX_PAUSE_DAYS = 90
DEFAULT_PAUSE_DAYS = 7
MAX_TOTAL_PAUSE_DAYS_PER_YEAR = 90


@dataclass
class PauseConfig:
    """Pause limits for a tenant."""
    max_pause_duration_days: int = DEFAULT_MAX_PAUSE_DAYS
    min_pause_duration_days: int = MIN_PAUSE_DAYS
    default_pause_duration_days: int = DEFAULT_PAUSE_DAYS
    max_total_pause_days_per_year: int = MAX_TOTAL_PAUSE_DAYS_PER_YEAR

    def to_dict(self) -> Dict[str, int]:
        return {
            "min_days": self.min_pause_duration_days,
            "max_days": self.max_pause_duration_days,
            "default_days": self.default_pause_duration_days,
            "yearly_limit": self.max_total_pause_days_per_year,
        }


@dataclass
class PauseValidation:
    valid: bool
    approved_days: int
    error: Optional[str] = None
    config: PauseConfig = field(default_factory=PauseConfig)


class PauseManager:
    """Pause validation and execution for subscriptions."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()
        self.tenants = TenantRepository(self.db)
        self.subscriptions = SubscriptionRepository(self.db)
        self.history = PauseHistoryRepository(self.db)

    def get_pause_config(self, tenant_id: Optional[str] = None) -> PauseConfig:
        """Defaults, with the per-request maximum overridable per tenant."""
        if tenant_id:
            tenant = self.tenants.get(tenant_id)
            if tenant is not None and tenant.max_pause_days:
                return PauseConfig(max_pause_duration_days=int(tenant.max_pause_days))
        return PauseConfig()

    def total_pause_days_this_year(self, subscription_id: str, now: Optional[datetime] = None) -> int:
        """Pause days since Jan 1; an open pause counts up to now."""
        now = now or utcnow()
        start_of_year = now.replace(month=1, day=1, hour=0, minute=0, second=0, microsecond=0)

        total = 0
        for record in self.history.list_since(subscription_id, start_of_year):
            end = record.pause_end_date or now
            days = math.ceil((end - record.pause_start_date).total_seconds() / 86400)
            total += max(0, days)
        return total

    def validate_pause_duration(
        self,
        requested_days: Optional[int],
        tenant_id: str,
        subscription_id: str,
        now: Optional[datetime] = None,
    ) -> PauseValidation:
        config = self.get_pause_config(tenant_id)
        requested = requested_days if requested_days is not None else config.default_pause_duration_days

        if requested < config.min_pause_duration_days:
            return PauseValidation(
                valid=False,
                approved_days=config.min_pause_duration_days,
                error=f"Minimum pause duration is {config.min_pause_duration_days} day(s)",
                config=config,
            )

        if requested > config.max_pause_duration_days:
            return PauseValidation(
                valid=False,
                approved_days=config.max_pause_duration_days,
                error=(
                    f"Maximum pause duration per request is {config.max_pause_duration_days} days. "
                    "Please reduce your request."
                ),
                config=config,
            )

        if requested > ABSOLUTE_MAX_PAUSE_DAYS:
            return PauseValidation(
                valid=False,
                approved_days=ABSOLUTE_MAX_PAUSE_DAYS,
                error=(
                    f"Absolute maximum pause duration is {ABSOLUTE_MAX_PAUSE_DAYS} days. "
                    "Contact support for longer pauses."
                ),
                config=config,
            )

        used = self.total_pause_days_this_year(subscription_id, now)
        if used + requested > config.max_total_pause_days_per_year:
            remaining = config.max_total_pause_days_per_year - used
            return PauseValidation(
                valid=False,
                approved_days=max(0, remaining),
                error=(
                    f"You have used {used} pause days this year. "
                    f"Maximum allowed is {config.max_total_pause_days_per_year} days."
                ),
                config=config,
            )

        return PauseValidation(valid=True, approved_days=requested, config=config)

    def pause_subscription(
        self,
        tenant_id: str,
        subscription_id: str,
        duration_days: Optional[int] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Validate, move the subscription to PAUSED and record the pause window.

        Raises:
            PauseValidationError: duration outside the configured limits
            InvalidTransitionError: subscription cannot be paused from its status
        """
        now = now or utcnow()
        validation = self.validate_pause_duration(duration_days, tenant_id, subscription_id, now)
        if not validation.valid:
            raise PauseValidationError(
                validation.error or "Invalid pause duration",
                {"approved_days": validation.approved_days},
            )

        pause_end = now + timedelta(days=validation.approved_days)
        self.subscriptions.transition(subscription_id, SubscriptionStatus.PAUSED)
        self.history.create(PauseRecord(
            subscription_id=subscription_id,
            tenant_id=tenant_id,
            pause_start_date=now,
            pause_end_date=pause_end,
            reason=reason,
        ))

        logger.info(
            "subscription_paused",
            tenant_id=tenant_id,
            subscription_id=subscription_id,
            duration_days=validation.approved_days,
        )
        return {
            "duration_days": validation.approved_days,
            "pause_end_date": pause_end.isoformat(),
            "max_duration_days": validation.config.max_pause_duration_days,
            "can_extend": validation.approved_days < validation.config.max_pause_duration_days,
            "message": (
                f"Subscription paused for {validation.approved_days} days. "
                f"It will automatically resume on {pause_end.isoformat()}."
            ),
        }
