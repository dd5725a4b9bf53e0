"""
Usage Tracking and Plan Limits

Usage events are telemetry: writes are best-effort and never gate a decision.
Plan limits are read from `plan_limits` and compared with the calendar-month
usage counters that the event writes maintain.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
import uuid
import structlog

from ..core.period import utcnow
from ..persistence.database import Database, get_database
from ..persistence.models import AuditLogRecord, UsageEventRecord
from ..persistence.repository import AuditRepository, TenantRepository, UsageRepository

logger = structlog.get_logger()


class LimitType(Enum):
    HARD = "HARD"
    SOFT = "SOFT"
    NONE = "NONE"


class UsageSource(Enum):
    UI = "ui"
    CSV = "csv"
    API = "api"


@dataclass
class LimitCheck:
    """Outcome of a plan-limit check for one metric."""
    allowed: bool
    current_usage: int
    limit_value: Optional[int]
    limit_type: LimitType
    exceeded: bool = False
    reason: Optional[str] = None

    @property
    def remaining(self) -> Optional[int]:
        if self.limit_value is None:
            return None
        return max(0, self.limit_value - self.current_usage)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "current_usage": self.current_usage,
            "limit_value": self.limit_value,
            "limit_type": self.limit_type.value,
            "exceeded": self.exceeded,
            "reason": self.reason,
        }


class UsageTracker:
    """Usage telemetry writer and plan-limit evaluator."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()
        self.usage = UsageRepository(self.db)
        self.tenants = TenantRepository(self.db)
        self.audit = AuditRepository(self.db)

    def track_usage(
        self,
        tenant_id: str,
        metric_type: str,
        quantity: int,
        source: str = UsageSource.API.value,
        reference_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Record a usage event. Failures are logged and swallowed.

        Returns True if the event was written.
        """
        try:
            self.usage.record_event(UsageEventRecord(
                event_id=f"evt_{uuid.uuid4().hex[:16]}",
                tenant_id=tenant_id,
                metric_type=metric_type,
                quantity=quantity,
                source=source,
                reference_id=reference_id,
                created_at=now or utcnow(),
            ))
            return True
        except Exception as e:
            logger.warning(
                "usage_tracking_failed",
                tenant_id=tenant_id,
                metric_type=metric_type,
                quantity=quantity,
                error=str(e),
            )
            return False

    def get_current_usage(
        self,
        tenant_id: str,
        metric_type: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, int]:
        return self.usage.get_current_usage(tenant_id, now or utcnow(), metric_type)

    def get_usage_limits(self, tenant_id: str) -> Dict[str, Dict[str, Any]]:
        """Limits for the tenant's plan, keyed by metric type."""
        tenant = self.tenants.get(tenant_id)
        if tenant is None or not tenant.subscription_plan:
            return {}
        limits = self.usage.get_plan_limits(tenant.subscription_plan)
        return {
            metric: {"limit_value": rec.limit_value, "limit_type": rec.limit_type}
            for metric, rec in limits.items()
        }

    def check_usage_limits(
        self,
        tenant_id: str,
        metric_type: str,
        requested_quantity: int,
        now: Optional[datetime] = None,
    ) -> LimitCheck:
        """
        Compare current usage + requested against the plan limit.

        HARD limits block when exceeded. SOFT limits never block. Any crossing
        writes a USAGE_*_LIMIT_EXCEEDED audit entry (best-effort).
        """
        current = self.get_current_usage(tenant_id, metric_type, now).get(metric_type, 0)
        limit = self.get_usage_limits(tenant_id).get(metric_type)

        limit_type = LimitType.NONE
        if limit is not None:
            try:
                limit_type = LimitType(limit["limit_type"])
            except ValueError:
                limit_type = LimitType.NONE

        if limit is None or limit_type is LimitType.NONE or limit["limit_value"] is None:
            return LimitCheck(
                allowed=True,
                current_usage=current,
                limit_value=None,
                limit_type=LimitType.NONE,
            )

        limit_value = int(limit["limit_value"])
        exceeded = current + requested_quantity > limit_value

        if exceeded:
            self._record_limit_crossing(
                tenant_id, metric_type, current, requested_quantity, limit_value, limit_type
            )

        if limit_type is LimitType.HARD and exceeded:
            return LimitCheck(
                allowed=False,
                current_usage=current,
                limit_value=limit_value,
                limit_type=limit_type,
                exceeded=True,
                reason=(
                    f"Hard limit exceeded. Current: {current}, Limit: {limit_value}, "
                    f"Requested: {requested_quantity}"
                ),
            )

        return LimitCheck(
            allowed=True,
            current_usage=current,
            limit_value=limit_value,
            limit_type=limit_type,
            exceeded=exceeded,
            reason=f"Soft limit exceeded. Current: {current}, Limit: {limit_value}" if exceeded else None,
        )

    def _record_limit_crossing(
        self,
        tenant_id: str,
        metric_type: str,
        current: int,
        requested: int,
        limit_value: int,
        limit_type: LimitType,
    ) -> None:
        action = (
            "USAGE_HARD_LIMIT_EXCEEDED" if limit_type is LimitType.HARD
            else "USAGE_SOFT_LIMIT_EXCEEDED"
        )
        logger.warning(
            "usage_limit_exceeded",
            tenant_id=tenant_id,
            metric_type=metric_type,
            limit_type=limit_type.value,
            current_usage=current,
            requested_quantity=requested,
            limit_value=limit_value,
        )
        try:
            self.audit.write(AuditLogRecord(
                action=action,
                tenant_id=tenant_id,
                metadata={
                    "metric_type": metric_type,
                    "current_usage": current,
                    "requested_quantity": requested,
                    "limit_value": limit_value,
                    "limit_type": limit_type.value,
                },
            ))
        except Exception as e:
            logger.warning("audit_write_failed", action=action, tenant_id=tenant_id, error=str(e))
