"""
Repository Layer for Entitlement Rail

Row access for every persisted entity except the quota balances themselves,
which only change through `QuotaLedger`.
"""

from typing import Any, Callable, Dict, List, Optional, Tuple
from datetime import datetime, timedelta, timezone
import uuid
import structlog

from ..core.errors import NotFoundError
from ..core.period import normalize_plan_type
from ..core.plans import monthly_allotment
from ..core.subscription import SubscriptionStatus, assert_transition
from .database import Database, Transaction, get_database, to_db_ts, now_ts
from .models import (
    AuditLogRecord,
    BillingPeriodRecord,
    PauseRecord,
    PlanLimitRecord,
    ReservationRecord,
    SubscriptionRecord,
    TenantRecord,
    UsageEventRecord,
)

logger = structlog.get_logger()


def month_bucket(instant: datetime) -> str:
    """Calendar-month key for usage counters ("2026-10-01")."""
    return instant.astimezone(timezone.utc).strftime("%Y-%m-01")


class TenantRepository:
    """Repository for tenant records."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(self, tenant: TenantRecord) -> TenantRecord:
        """Create a tenant. Monthly allotments default to the plan catalog."""
        tier = normalize_plan_type(tenant.subscription_plan)
        if tier and not tenant.unit_monthly_allotment and not tenant.sscc_monthly_allotment:
            allotment = monthly_allotment(tier)
            tenant.unit_monthly_allotment = allotment["unit"]
            tenant.sscc_monthly_allotment = allotment["sscc"]

        self.db.execute(
            """INSERT INTO tenants
               (tenant_id, name, subscription_status, subscription_plan, billing_cycle,
                trial_start_date, trial_end_date, extra_user_seats,
                unit_quota_balance, sscc_quota_balance, add_on_unit_balance, add_on_sscc_balance,
                unit_monthly_allotment, sscc_monthly_allotment, last_quota_rollover_at,
                max_pause_days, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            tenant.to_db_tuple()
        )
        logger.info("tenant_created", tenant_id=tenant.tenant_id, plan=tenant.subscription_plan)
        return tenant

    def get(self, tenant_id: str) -> Optional[TenantRecord]:
        results = self.db.execute(
            "SELECT * FROM tenants WHERE tenant_id = ?",
            (tenant_id,)
        )
        return TenantRecord.from_row(results[0]) if results else None

    def require(self, tenant_id: str) -> TenantRecord:
        tenant = self.get(tenant_id)
        if tenant is None:
            raise NotFoundError(f"Tenant not found: {tenant_id}", {"tenant_id": tenant_id})
        return tenant

    def update_status(self, tenant_id: str, status: str) -> None:
        self.db.execute(
            "UPDATE tenants SET subscription_status = ?, updated_at = ? WHERE tenant_id = ?",
            (status, now_ts(), tenant_id)
        )
        logger.info("tenant_status_updated", tenant_id=tenant_id, status=status)

    def update_plan(
        self,
        tenant_id: str,
        plan: str,
        billing_cycle: Optional[str] = None,
        tx: Optional[Transaction] = None,
    ) -> None:
        """Set plan code, cycle and monthly allotments. Runs inside tx when given."""
        tier = normalize_plan_type(plan)
        allotment = monthly_allotment(tier) if tier else {"unit": 0, "sscc": 0}
        (tx or self.db).execute(
            """UPDATE tenants
               SET subscription_plan = ?, billing_cycle = COALESCE(?, billing_cycle),
                   unit_monthly_allotment = ?, sscc_monthly_allotment = ?, updated_at = ?
               WHERE tenant_id = ?""",
            (plan, billing_cycle, allotment["unit"], allotment["sscc"], now_ts(), tenant_id)
        )
        logger.info("tenant_plan_updated", tenant_id=tenant_id, plan=plan, billing_cycle=billing_cycle)

    def list_ids(self, limit: int = 1000, offset: int = 0) -> List[str]:
        results = self.db.execute(
            "SELECT tenant_id FROM tenants ORDER BY tenant_id LIMIT ? OFFSET ?",
            (limit, offset)
        )
        return [r["tenant_id"] for r in results]


class SubscriptionRepository:
    """Repository for subscription records. Status changes go through the state machine."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(self, subscription: SubscriptionRecord) -> SubscriptionRecord:
        self.db.execute(
            """INSERT INTO subscriptions
               (subscription_id, tenant_id, plan_code, status, is_trial,
                current_period_end, grace_period_end, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            subscription.to_db_tuple()
        )
        logger.info(
            "subscription_created",
            subscription_id=subscription.subscription_id,
            tenant_id=subscription.tenant_id,
            status=subscription.status,
        )
        return subscription

    def get(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        results = self.db.execute(
            "SELECT * FROM subscriptions WHERE subscription_id = ?",
            (subscription_id,)
        )
        return SubscriptionRecord.from_row(results[0]) if results else None

    def get_by_tenant(self, tenant_id: str) -> Optional[SubscriptionRecord]:
        results = self.db.execute(
            "SELECT * FROM subscriptions WHERE tenant_id = ?",
            (tenant_id,)
        )
        return SubscriptionRecord.from_row(results[0]) if results else None

    def require(self, subscription_id: str) -> SubscriptionRecord:
        subscription = self.get(subscription_id)
        if subscription is None:
            raise NotFoundError(
                f"Subscription not found: {subscription_id}",
                {"subscription_id": subscription_id},
            )
        return subscription

    def transition(
        self,
        subscription_id: str,
        to_status: Any,
        grace_period_end: Optional[datetime] = None,
        current_period_end: Optional[datetime] = None,
        tenant_id: Optional[str] = None,
    ) -> SubscriptionRecord:
        """
        Move a subscription to a new status.

        The status row is re-read under lock and the change applied only if
        the transition table allows it. When tenant_id is given the
        subscription must belong to that tenant.

        Raises:
            NotFoundError: unknown subscription, or owned by another tenant
            InvalidTransitionError: transition not in the table
        """
        with self.db.transaction() as tx:
            current = self._lock(tx, subscription_id, tenant_id)
            target = self._apply_transition(tx, current, to_status, grace_period_end, current_period_end)

        logger.info(
            "subscription_transitioned",
            subscription_id=subscription_id,
            from_status=current.status,
            to_status=target.value,
        )
        return self.require(subscription_id)

    def enter_grace(
        self,
        subscription_id: str,
        tenant_id: str,
        grace_days: Callable[[SubscriptionRecord], int],
        now: datetime,
    ) -> Tuple[SubscriptionRecord, bool]:
        """
        Expire the subscription with grace_period_end = now + grace_days(row).

        Checks run against the locked row. A subscription already EXPIRED with
        a grace end after now is returned unchanged. The flag tells whether
        a new window was opened.

        Raises:
            NotFoundError: unknown subscription, or owned by another tenant
            InvalidTransitionError: status cannot move to EXPIRED
        """
        with self.db.transaction() as tx:
            current = self._lock(tx, subscription_id, tenant_id)
            if (
                SubscriptionStatus.parse(current.status) is SubscriptionStatus.EXPIRED
                and current.grace_period_end is not None
                and current.grace_period_end > now
            ):
                return current, False

            grace_end = now + timedelta(days=grace_days(current))
            self._apply_transition(tx, current, SubscriptionStatus.EXPIRED, grace_end, None)

        logger.info(
            "subscription_transitioned",
            subscription_id=subscription_id,
            from_status=current.status,
            to_status=SubscriptionStatus.EXPIRED.value,
        )
        return self.require(subscription_id), True

    def _lock(self, tx: Transaction, subscription_id: str, tenant_id: Optional[str]) -> SubscriptionRecord:
        rows = tx.select_for_update(
            "SELECT * FROM subscriptions WHERE subscription_id = ?",
            (subscription_id,)
        )
        if not rows or (tenant_id is not None and rows[0]["tenant_id"] != tenant_id):
            raise NotFoundError(
                f"Subscription not found: {subscription_id}",
                {"subscription_id": subscription_id, "tenant_id": tenant_id},
            )
        return SubscriptionRecord.from_row(rows[0])

    def _apply_transition(
        self,
        tx: Transaction,
        current: SubscriptionRecord,
        to_status: Any,
        grace_period_end: Optional[datetime],
        current_period_end: Optional[datetime],
    ) -> SubscriptionStatus:
        target = assert_transition(current.status, to_status)
        tx.execute(
            """UPDATE subscriptions
               SET status = ?,
                   grace_period_end = COALESCE(?, grace_period_end),
                   current_period_end = COALESCE(?, current_period_end),
                   updated_at = ?
               WHERE subscription_id = ?""",
            (
                target.value,
                to_db_ts(grace_period_end),
                to_db_ts(current_period_end),
                now_ts(),
                current.subscription_id,
            )
        )
        tx.execute(
            "UPDATE tenants SET subscription_status = ?, updated_at = ? WHERE tenant_id = ?",
            (_tenant_status_for(target), now_ts(), current.tenant_id)
        )
        return target


def _tenant_status_for(status: SubscriptionStatus) -> str:
    """Tenant rows carry lower-case status strings."""
    if status in (SubscriptionStatus.TRIAL, SubscriptionStatus.TRIALING):
        return "trial"
    return status.value.lower()


class BillingPeriodRepository:
    """Repository for billing period snapshots."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def get_active(self, tenant_id: str, now: datetime) -> Optional[BillingPeriodRecord]:
        ts = to_db_ts(now)
        results = self.db.execute(
            """SELECT * FROM billing_periods
               WHERE tenant_id = ? AND period_start <= ? AND period_end > ?
               ORDER BY period_start DESC LIMIT 1""",
            (tenant_id, ts, ts)
        )
        return BillingPeriodRecord.from_row(results[0]) if results else None

    def upsert(self, tx: Transaction, period: BillingPeriodRecord) -> Tuple[BillingPeriodRecord, bool]:
        """
        Insert a period keyed by (tenant_id, period_start) inside the caller's
        transaction; on conflict keep the existing row.

        Returns (stored row, whether this call inserted it).
        """
        now = now_ts()
        inserted = tx.execute_rowcount(
            """INSERT INTO billing_periods
               (tenant_id, period_start, period_end, plan,
                unit_labels_quota, box_labels_quota, carton_labels_quota,
                pallet_labels_quota, sscc_labels_quota, user_seats_quota,
                user_seats_used, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT (tenant_id, period_start) DO NOTHING""",
            (
                period.tenant_id,
                to_db_ts(period.period_start),
                to_db_ts(period.period_end),
                period.plan,
                period.unit_labels_quota,
                period.box_labels_quota,
                period.carton_labels_quota,
                period.pallet_labels_quota,
                period.sscc_labels_quota,
                period.user_seats_quota,
                period.user_seats_used,
                now,
                now,
            )
        )
        rows = tx.execute(
            "SELECT * FROM billing_periods WHERE tenant_id = ? AND period_start = ?",
            (period.tenant_id, to_db_ts(period.period_start))
        )
        return BillingPeriodRecord.from_row(rows[0]), inserted == 1

    def list_for_tenant(self, tenant_id: str, limit: int = 24) -> List[BillingPeriodRecord]:
        results = self.db.execute(
            "SELECT * FROM billing_periods WHERE tenant_id = ? ORDER BY period_start DESC LIMIT ?",
            (tenant_id, limit)
        )
        return [BillingPeriodRecord.from_row(r) for r in results]


class UsageRepository:
    """Repository for usage telemetry, monthly counters and plan limits."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def record_event(self, event: UsageEventRecord) -> UsageEventRecord:
        """Append a usage event and bump the monthly counter in one transaction."""
        with self.db.transaction() as tx:
            tx.execute(
                """INSERT INTO usage_events
                   (event_id, tenant_id, metric_type, quantity, source, reference_id, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                event.to_db_tuple()
            )
            tx.execute(
                """INSERT INTO usage_counters (tenant_id, metric_type, period_start, used_quantity)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT (tenant_id, metric_type, period_start)
                   DO UPDATE SET used_quantity = usage_counters.used_quantity + excluded.used_quantity""",
                (event.tenant_id, event.metric_type, month_bucket(event.created_at), event.quantity)
            )
        return event

    def get_current_usage(
        self,
        tenant_id: str,
        now: datetime,
        metric_type: Optional[str] = None,
    ) -> Dict[str, int]:
        """Usage per metric for the calendar month containing now."""
        query = "SELECT metric_type, used_quantity FROM usage_counters WHERE tenant_id = ? AND period_start = ?"
        params: tuple = (tenant_id, month_bucket(now))
        if metric_type:
            query += " AND metric_type = ?"
            params = params + (metric_type,)
        results = self.db.execute(query, params)
        return {r["metric_type"]: int(r["used_quantity"] or 0) for r in results}

    def list_events(self, tenant_id: str, limit: int = 100) -> List[UsageEventRecord]:
        results = self.db.execute(
            "SELECT * FROM usage_events WHERE tenant_id = ? ORDER BY created_at DESC LIMIT ?",
            (tenant_id, limit)
        )
        return [UsageEventRecord.from_row(r) for r in results]

    def get_plan_limits(self, plan_code: str) -> Dict[str, PlanLimitRecord]:
        results = self.db.execute(
            "SELECT * FROM plan_limits WHERE plan_code = ? AND limit_value IS NOT NULL",
            (plan_code,)
        )
        return {r["metric_type"]: PlanLimitRecord.from_row(r) for r in results}

    def set_plan_limit(self, limit: PlanLimitRecord) -> None:
        """Seed or replace a plan limit (administrative; the core only reads)."""
        self.db.execute(
            """INSERT INTO plan_limits (plan_code, metric_type, limit_value, limit_type)
               VALUES (?, ?, ?, ?)
               ON CONFLICT (plan_code, metric_type)
               DO UPDATE SET limit_value = excluded.limit_value, limit_type = excluded.limit_type""",
            (limit.plan_code, limit.metric_type, limit.limit_value, limit.limit_type)
        )


class AuditRepository:
    """Repository for the audit trail."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def write(self, record: AuditLogRecord) -> None:
        self.db.execute(
            """INSERT INTO audit_logs (tenant_id, action, actor, metadata, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            record.to_db_tuple()
        )

    def list_for_tenant(self, tenant_id: str, action: Optional[str] = None, limit: int = 100) -> List[AuditLogRecord]:
        query = "SELECT * FROM audit_logs WHERE tenant_id = ?"
        params: tuple = (tenant_id,)
        if action:
            query += " AND action = ?"
            params = params + (action,)
        query += " ORDER BY id DESC LIMIT ?"
        results = self.db.execute(query, params + (limit,))
        return [AuditLogRecord.from_row(r) for r in results]


class ReservationRepository:
    """Repository for quota reservations."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(self, reservation: ReservationRecord) -> ReservationRecord:
        self.db.execute(
            """INSERT INTO reservations
               (reservation_id, tenant_id, usage_type, quota_kind, quantity, status, created_at, settled_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            reservation.to_db_tuple()
        )
        return reservation

    def get(self, reservation_id: str) -> Optional[ReservationRecord]:
        results = self.db.execute(
            "SELECT * FROM reservations WHERE reservation_id = ?",
            (reservation_id,)
        )
        return ReservationRecord.from_row(results[0]) if results else None

    def settle(self, reservation_id: str, status: str) -> bool:
        """Move a RESERVED row to a final status. False if it was already settled."""
        count = self.db.execute_rowcount(
            """UPDATE reservations SET status = ?, settled_at = ?
               WHERE reservation_id = ? AND status = 'RESERVED'""",
            (status, now_ts(), reservation_id)
        )
        return count == 1

    def reopen(self, reservation_id: str) -> bool:
        """Put a REFUNDED row back to RESERVED after its refund failed."""
        count = self.db.execute_rowcount(
            """UPDATE reservations SET status = 'RESERVED', settled_at = NULL
               WHERE reservation_id = ? AND status = 'REFUNDED'""",
            (reservation_id,)
        )
        return count == 1

    def list_stale(self, cutoff: datetime, limit: int = 500) -> List[ReservationRecord]:
        results = self.db.execute(
            """SELECT * FROM reservations
               WHERE status = 'RESERVED' AND created_at < ?
               ORDER BY created_at ASC LIMIT ?""",
            (to_db_ts(cutoff), limit)
        )
        return [ReservationRecord.from_row(r) for r in results]


class PauseHistoryRepository:
    """Repository for subscription pause windows."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def create(self, record: PauseRecord) -> PauseRecord:
        self.db.execute(
            """INSERT INTO pause_history
               (subscription_id, tenant_id, pause_start_date, pause_end_date, reason, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (
                record.subscription_id,
                record.tenant_id,
                to_db_ts(record.pause_start_date),
                to_db_ts(record.pause_end_date),
                record.reason or "User requested pause",
                now_ts(),
            )
        )
        logger.info(
            "pause_recorded",
            subscription_id=record.subscription_id,
            pause_end_date=to_db_ts(record.pause_end_date),
        )
        return record

    def list_since(self, subscription_id: str, since: datetime) -> List[PauseRecord]:
        results = self.db.execute(
            """SELECT * FROM pause_history
               WHERE subscription_id = ? AND pause_start_date >= ?
               ORDER BY pause_start_date ASC""",
            (subscription_id, to_db_ts(since))
        )
        return [PauseRecord.from_row(r) for r in results]


class SeatRepository:
    """Repository for activated seats."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def count_active(self, tenant_id: str) -> int:
        results = self.db.execute(
            "SELECT COUNT(*) AS cnt FROM seats WHERE tenant_id = ? AND active = ?",
            (tenant_id, True)
        )
        return int(results[0]["cnt"]) if results else 0

    def activate_if_available(self, tenant_id: str, max_seats: int, user_ref: Optional[str] = None) -> Optional[str]:
        """Insert an active seat unless max_seats are already active. Atomic."""
        seat_id = f"seat_{uuid.uuid4().hex[:16]}"
        with self.db.transaction() as tx:
            tx.select_for_update("SELECT tenant_id FROM tenants WHERE tenant_id = ?", (tenant_id,))
            rows = tx.execute(
                "SELECT COUNT(*) AS cnt FROM seats WHERE tenant_id = ? AND active = ?",
                (tenant_id, True)
            )
            if rows and int(rows[0]["cnt"]) >= max_seats:
                return None
            tx.execute(
                "INSERT INTO seats (seat_id, tenant_id, user_ref, active, created_at) VALUES (?, ?, ?, ?, ?)",
                (seat_id, tenant_id, user_ref, True, now_ts())
            )
        return seat_id

    def deactivate(self, seat_id: str) -> bool:
        return self.db.execute_rowcount(
            "UPDATE seats SET active = ? WHERE seat_id = ? AND active = ?",
            (False, seat_id, True)
        ) == 1


class CreditWalletRepository:
    """Tenant credit balance receiving proration credits."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def add_credit(self, tenant_id: str, amount: int) -> int:
        """Atomically add credit and return the new balance."""
        with self.db.transaction() as tx:
            tx.execute(
                """INSERT INTO credit_wallets (tenant_id, balance, updated_at) VALUES (?, ?, ?)
                   ON CONFLICT (tenant_id)
                   DO UPDATE SET balance = credit_wallets.balance + excluded.balance,
                                 updated_at = excluded.updated_at""",
                (tenant_id, amount, now_ts())
            )
            rows = tx.execute("SELECT balance FROM credit_wallets WHERE tenant_id = ?", (tenant_id,))
        return int(rows[0]["balance"])

    def get_balance(self, tenant_id: str) -> int:
        rows = self.db.execute("SELECT balance FROM credit_wallets WHERE tenant_id = ?", (tenant_id,))
        return int(rows[0]["balance"]) if rows else 0
