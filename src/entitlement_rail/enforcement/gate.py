"""
Entitlement Gate

Every metered action passes through `EntitlementEnforcer.enforce` before any
label is generated. The gate validates the request, checks that the tenant may
operate, makes sure a billing period exists, evaluates the plan limit for the
metric, and finally consumes from the quota ledger in one atomic step.

Failures come back as structured decisions with a reason code, never as
exceptions, so callers can map them to user-facing outcomes uniformly. Store
failures are the one exception: with `fail_closed` (the default) they become
a STORE_ERROR denial, otherwise they propagate.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional
import time
import structlog

from ..core.errors import EntitlementError, ReasonCode, StoreError
from ..core.period import utcnow
from ..core.usage_types import (
    NON_CONSUMING,
    USAGE_TO_METRIC,
    USAGE_TO_QUOTA_KIND,
    UsageType,
    parse_usage_type,
)
from ..billing.usage_tracking import UsageTracker
from ..persistence.database import Database, get_database
from ..persistence.ledger import LedgerStatus, QuotaLedger
from ..persistence.repository import TenantRepository

logger = structlog.get_logger()

INOPERABLE_STATUSES = frozenset({"past_due", "cancelled", "expired"})

LEDGER_REASONS: Dict[LedgerStatus, ReasonCode] = {
    LedgerStatus.OK: ReasonCode.ALLOWED,
    LedgerStatus.INSUFFICIENT_QUOTA: ReasonCode.QUOTA_EXCEEDED,
    LedgerStatus.INVALID_QUANTITY: ReasonCode.INVALID_USAGE_TYPE,
    LedgerStatus.INVALID_KIND: ReasonCode.INVALID_USAGE_TYPE,
    LedgerStatus.TENANT_NOT_FOUND: ReasonCode.NO_ACTIVE_SUBSCRIPTION,
    LedgerStatus.UNKNOWN_PLAN: ReasonCode.NO_ACTIVE_SUBSCRIPTION,
}

# Per-label period counters kept next to the consolidated sscc counter
USAGE_DETAIL_COLUMN: Dict[UsageType, str] = {
    UsageType.BOX_LABEL: "box_labels_used",
    UsageType.CARTON_LABEL: "carton_labels_used",
    UsageType.PALLET_LABEL: "pallet_labels_used",
}


@dataclass
class EnforcerConfig:
    """Configuration for the entitlement gate."""
    fail_closed: bool = True  # Deny with STORE_ERROR instead of raising
    track_usage: bool = True
    usage_source: str = "api"


@dataclass
class EntitlementDecision:
    """Outcome of an entitlement check."""
    allow: bool
    reason_code: ReasonCode
    remaining: int = 0
    consumed: int = 0
    fallback_used: Optional[str] = None
    message: Optional[str] = None
    latency_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allow": self.allow,
            "reason_code": self.reason_code.value,
            "remaining": self.remaining,
            "consumed": self.consumed,
            "fallback_used": self.fallback_used,
            "message": self.message,
        }


@dataclass
class RefundResult:
    ok: bool
    error: Optional[str] = None
    remaining: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "error": self.error, "remaining": self.remaining}


def _valid_quantity(quantity: Any) -> bool:
    return isinstance(quantity, int) and not isinstance(quantity, bool) and quantity > 0


class EntitlementEnforcer:
    """
    The entitlement gate.

    Flow:
    1. Validate tenant, usage type and quantity
    2. Short-circuit non-consuming usage types
    3. Check the tenant may operate
    4. Ensure the active billing period
    5. Evaluate the plan limit for the metric
    6. Consume from the ledger (atomic, all or nothing)
    7. Record usage telemetry (best-effort)
    """

    def __init__(
        self,
        config: Optional[EnforcerConfig] = None,
        db: Optional[Database] = None,
        ledger: Optional[QuotaLedger] = None,
        tracker: Optional[UsageTracker] = None,
    ):
        self.config = config or EnforcerConfig()
        self.db = db or get_database()
        self.ledger = ledger or QuotaLedger(self.db)
        self.tracker = tracker or UsageTracker(self.db)
        self.tenants = TenantRepository(self.db)

        # Metrics
        self._total_requests = 0
        self._allowed_count = 0
        self._denied_count = 0
        self._non_consuming_count = 0
        self._store_errors = 0
        self._refunds = 0
        self._reasons: Dict[str, int] = {}

    def enforce(
        self,
        tenant_id: str,
        usage_type: Any,
        quantity: Any,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> EntitlementDecision:
        """
        Decide whether tenant_id may consume quantity of usage_type, and
        consume it if so.

        Args:
            tenant_id: Billed tenant
            usage_type: UsageType member or its name
            quantity: Positive integer amount
            metadata: Optional context; "source" is kept as the usage reference
            now: Evaluation instant (defaults to the current time)

        Returns:
            EntitlementDecision with allow flag and reason code
        """
        start_time = time.perf_counter()
        self._total_requests += 1
        now = now or utcnow()

        parsed = parse_usage_type(usage_type)
        if not tenant_id or not isinstance(tenant_id, str) or parsed is None or not _valid_quantity(quantity):
            return self._deny(ReasonCode.INVALID_USAGE_TYPE, start_time, message="Invalid entitlement request")

        if parsed in NON_CONSUMING:
            self._non_consuming_count += 1
            return self._finish(EntitlementDecision(
                allow=True,
                reason_code=ReasonCode.NON_CONSUMING,
                remaining=-1,
                consumed=0,
            ), start_time)

        quota_kind = USAGE_TO_QUOTA_KIND[parsed]
        metric = USAGE_TO_METRIC[parsed]

        try:
            tenant = self.tenants.get(tenant_id)
            if tenant is None:
                return self._deny(
                    ReasonCode.NO_ACTIVE_SUBSCRIPTION, start_time, message="Tenant not found"
                )

            status = (tenant.subscription_status or "").strip().lower()
            if status in INOPERABLE_STATUSES:
                return self._deny(
                    ReasonCode.SUBSCRIPTION_INACTIVE,
                    start_time,
                    message=f"Subscription is {status}",
                )

            try:
                self.ledger.ensure_active_period(tenant_id, now)
            except StoreError:
                raise
            except EntitlementError as e:
                return self._deny(e.reason_code, start_time, message=e.message)

            limit = self.tracker.check_usage_limits(tenant_id, metric.value, quantity, now)
            if not limit.allowed:
                return self._deny(
                    ReasonCode.PLAN_LIMIT_REACHED,
                    start_time,
                    remaining=limit.remaining or 0,
                    message=limit.reason,
                )

            result = self.ledger.consume(
                tenant_id,
                quota_kind,
                quantity,
                now,
                usage_column=USAGE_DETAIL_COLUMN.get(parsed),
            )
            if not result.ok:
                return self._deny(
                    LEDGER_REASONS[result.status],
                    start_time,
                    remaining=max(0, result.remaining),
                    message=f"Ledger rejected consumption: {result.status.value}",
                )

        except StoreError as e:
            self._store_errors += 1
            logger.error(
                "enforcer_store_error",
                tenant_id=tenant_id,
                usage_type=parsed.value,
                error=e.message,
            )
            if self.config.fail_closed:
                return self._deny(ReasonCode.STORE_ERROR, start_time, message=e.message)
            raise

        if self.config.track_usage:
            source = (metadata or {}).get("source")
            self.tracker.track_usage(
                tenant_id,
                metric.value,
                quantity,
                source=self.config.usage_source,
                reference_id=str(source) if source else None,
                now=now,
            )

        self._allowed_count += 1
        decision = EntitlementDecision(
            allow=True,
            reason_code=ReasonCode.ALLOWED,
            remaining=result.remaining,
            consumed=quantity,
            fallback_used="addon" if result.drawn_from_addon > 0 else "base",
        )
        logger.info(
            "entitlement_allowed",
            tenant_id=tenant_id,
            usage_type=parsed.value,
            quantity=quantity,
            remaining=decision.remaining,
        )
        return self._finish(decision, start_time)

    def refund(
        self,
        tenant_id: str,
        usage_type: Any,
        quantity: Any,
        now: Optional[datetime] = None,
    ) -> RefundResult:
        """
        Return a previously consumed quantity to the tenant.

        Non-consuming usage types refund as a no-op success. Store failures
        are logged and returned, leaving the ledger over-debited until the
        reservation sweep catches it.
        """
        if not tenant_id or not isinstance(tenant_id, str) or not _valid_quantity(quantity):
            return RefundResult(ok=False, error="invalid_refund_input")
        parsed = parse_usage_type(usage_type)
        if parsed is None:
            return RefundResult(ok=False, error="invalid_usage_type")
        if parsed in NON_CONSUMING:
            return RefundResult(ok=True)

        try:
            result = self.ledger.refund(
                tenant_id,
                USAGE_TO_QUOTA_KIND[parsed],
                quantity,
                now,
                usage_column=USAGE_DETAIL_COLUMN.get(parsed),
            )
        except StoreError as e:
            self._store_errors += 1
            logger.error(
                "refund_failed",
                tenant_id=tenant_id,
                usage_type=parsed.value,
                quantity=quantity,
                error=e.message,
            )
            return RefundResult(ok=False, error=e.message)

        if not result.ok:
            return RefundResult(ok=False, error=result.status.value.lower())

        self._refunds += 1
        return RefundResult(ok=True, remaining=result.remaining)

    def get_metrics(self) -> Dict[str, Any]:
        """Get gate metrics."""
        return {
            "total_requests": self._total_requests,
            "allowed": self._allowed_count,
            "denied": self._denied_count,
            "non_consuming": self._non_consuming_count,
            "store_errors": self._store_errors,
            "refunds": self._refunds,
            "reasons": dict(self._reasons),
            "allow_rate": self._allowed_count / self._total_requests if self._total_requests > 0 else 0,
        }

    def _deny(
        self,
        reason: ReasonCode,
        start_time: float,
        remaining: int = 0,
        message: Optional[str] = None,
    ) -> EntitlementDecision:
        self._denied_count += 1
        logger.info("entitlement_denied", reason_code=reason.value, message=message)
        return self._finish(EntitlementDecision(
            allow=False,
            reason_code=reason,
            remaining=remaining,
            consumed=0,
            message=message,
        ), start_time)

    def _finish(self, decision: EntitlementDecision, start_time: float) -> EntitlementDecision:
        self._reasons[decision.reason_code.value] = self._reasons.get(decision.reason_code.value, 0) + 1
        decision.latency_ms = (time.perf_counter() - start_time) * 1000
        return decision
