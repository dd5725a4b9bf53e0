"""
Quota Ledger

Per-tenant base and addon balances for the "unit" and "sscc" quota kinds.

Every primitive here is one transaction against the store: the tenant row is
locked, the rollover checkpoint is applied, and the balance change is written
with a guarded UPDATE. Callers get a typed `LedgerResult` back instead of an
exception for the expected outcomes (insufficient quota, bad quantity, unknown
tenant). Store failures still raise `StoreError`.

Rollover (yearly plans only) credits `months_elapsed * monthly_allotment` to the
base pool and advances `last_quota_rollover_at` by exactly the months credited,
so two triggers racing over the same elapsed window credit it once.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
import structlog

from ..core.errors import NoActiveSubscriptionError
from ..core.period import (
    add_months,
    normalize_plan_type,
    parse_dt,
    resolve_billing_window,
    utcnow,
    whole_months_between,
)
from ..core.plans import BillingCycle, PlanQuotas, monthly_allotment
from ..core.usage_types import QuotaKind, parse_quota_kind
from .database import Database, Transaction, get_database, to_db_ts, now_ts
from .models import BillingPeriodRecord, QuotaBalances
from .repository import BillingPeriodRepository, TenantRepository

logger = structlog.get_logger()


class LedgerStatus(Enum):
    """Outcome of a ledger primitive."""
    OK = "OK"
    INSUFFICIENT_QUOTA = "INSUFFICIENT_QUOTA"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    INVALID_KIND = "INVALID_KIND"
    TENANT_NOT_FOUND = "TENANT_NOT_FOUND"
    UNKNOWN_PLAN = "UNKNOWN_PLAN"


@dataclass
class LedgerResult:
    """Typed result of consume / refund / rollover / credit operations."""
    status: LedgerStatus
    balances: Optional[QuotaBalances] = None
    kind: Optional[QuotaKind] = None
    months_rolled: int = 0
    drawn_from_base: int = 0
    drawn_from_addon: int = 0
    unlimited: bool = False

    @property
    def ok(self) -> bool:
        return self.status == LedgerStatus.OK

    @property
    def remaining(self) -> int:
        """Combined balance for the kind; -1 for unlimited plans."""
        if self.unlimited:
            return -1
        if self.balances is None or self.kind is None:
            return 0
        return self.balances.remaining(self.kind.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "kind": self.kind.value if self.kind else None,
            "remaining": self.remaining,
            "months_rolled": self.months_rolled,
            "drawn_from_base": self.drawn_from_base,
            "drawn_from_addon": self.drawn_from_addon,
            "balances": self.balances.to_dict() if self.balances else None,
        }


_BASE_COLUMN = {
    QuotaKind.UNIT: "unit_quota_balance",
    QuotaKind.SSCC: "sscc_quota_balance",
}

_ADDON_COLUMN = {
    QuotaKind.UNIT: "add_on_unit_balance",
    QuotaKind.SSCC: "add_on_sscc_balance",
}

_USED_COLUMN = {
    QuotaKind.UNIT: "unit_labels_used",
    QuotaKind.SSCC: "sscc_labels_used",
}

# Per-label usage columns tracked alongside the consolidated sscc counter
DETAIL_COLUMNS = frozenset({"box_labels_used", "carton_labels_used", "pallet_labels_used"})


def _valid_quantity(quantity: Any) -> bool:
    return isinstance(quantity, int) and not isinstance(quantity, bool) and quantity > 0


class QuotaLedger:
    """
    Atomic balance operations for one store.

    Usage:
        ledger = QuotaLedger(db)
        result = ledger.consume("tenant_1", QuotaKind.UNIT, 500)
        if not result.ok:
            ...
    """

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()
        self.tenants = TenantRepository(self.db)
        self.periods = BillingPeriodRepository(self.db)

    # ------------------------------------------------------------------
    # Billing periods
    # ------------------------------------------------------------------

    def ensure_active_period(self, tenant_id: str, now: Optional[datetime] = None) -> BillingPeriodRecord:
        """
        Return the billing period covering now, creating it if needed.

        Creation is an upsert keyed by (tenant_id, period_start), so concurrent
        callers converge on one row. A freshly created period on a monthly or
        quarterly plan resets the base pools to the plan quotas in the same
        transaction. Yearly plans are fed by rollover instead, except that a
        tenant never checkpointed receives its first monthly allotment up
        front and is checkpointed at trial end.

        Raises:
            NotFoundError: unknown tenant
            TrialExpiredError: tenant still in trial status past its trial end
            NoActiveSubscriptionError: missing trial dates or unknown plan
        """
        now = now or utcnow()
        tenant = self.tenants.require(tenant_id)
        cycle = BillingCycle.parse(tenant.billing_cycle)
        window = resolve_billing_window(
            tenant.subscription_status,
            tenant.trial_end_date,
            now,
            cycle,
        )

        existing = self.periods.get_active(tenant_id, now)
        if existing is not None:
            return existing

        tier = normalize_plan_type(tenant.subscription_plan)
        if tier is None:
            raise NoActiveSubscriptionError(
                "No active subscription: unknown plan",
                {"tenant_id": tenant_id, "plan": tenant.subscription_plan},
            )

        quotas = PlanQuotas.for_tier(tier)
        record = BillingPeriodRecord(
            tenant_id=tenant_id,
            period_start=window.start,
            period_end=window.end,
            plan=tier.value,
            unit_labels_quota=quotas.unit_labels_quota,
            box_labels_quota=quotas.box_labels_quota,
            carton_labels_quota=quotas.carton_labels_quota,
            pallet_labels_quota=quotas.pallet_labels_quota,
            sscc_labels_quota=quotas.sscc_labels_quota,
            user_seats_quota=quotas.max_seats + tenant.extra_user_seats,
        )

        with self.db.transaction() as tx:
            stored, inserted = self.periods.upsert(tx, record)
            if inserted and not quotas.is_unlimited:
                if cycle is BillingCycle.YEARLY:
                    self._grant_first_allotment(tx, tenant_id, now)
                else:
                    self._write_base(
                        tx,
                        tenant_id,
                        quotas.unit_labels_quota,
                        quotas.sscc_labels_quota,
                        now,
                    )

        if inserted:
            logger.info(
                "billing_period_created",
                tenant_id=tenant_id,
                plan=tier.value,
                period_start=to_db_ts(window.start),
                period_end=to_db_ts(window.end),
                is_trial=window.is_trial,
            )
        return stored

    # ------------------------------------------------------------------
    # Balance primitives
    # ------------------------------------------------------------------

    def get_balances(self, tenant_id: str) -> Optional[QuotaBalances]:
        tenant = self.tenants.get(tenant_id)
        return tenant.balances if tenant else None

    def consume(
        self,
        tenant_id: str,
        kind: Any,
        quantity: int,
        now: Optional[datetime] = None,
        usage_column: Optional[str] = None,
    ) -> LedgerResult:
        """
        Deduct quantity from base first, then addon. All or nothing.

        Rollover is applied inside the same transaction before the balance is
        read. Plans without label quotas (trial) always succeed and report an
        unlimited remaining balance.
        """
        quota_kind = parse_quota_kind(kind)
        if quota_kind is None:
            return LedgerResult(status=LedgerStatus.INVALID_KIND)
        if not _valid_quantity(quantity):
            return LedgerResult(status=LedgerStatus.INVALID_QUANTITY, kind=quota_kind)
        now = now or utcnow()

        base_col = _BASE_COLUMN[quota_kind]
        addon_col = _ADDON_COLUMN[quota_kind]

        with self.db.transaction() as tx:
            row = self._lock_tenant(tx, tenant_id)
            if row is None:
                return LedgerResult(status=LedgerStatus.TENANT_NOT_FOUND, kind=quota_kind)

            months = self._rollover_locked(tx, row, now)
            if months:
                row = self._lock_tenant(tx, tenant_id)

            if _is_unlimited(row):
                self._bump_usage(tx, tenant_id, quota_kind, quantity, now, usage_column)
                return LedgerResult(
                    status=LedgerStatus.OK,
                    balances=QuotaBalances.from_row(row),
                    kind=quota_kind,
                    months_rolled=months,
                    unlimited=True,
                )

            base = int(row[base_col] or 0)
            addon = int(row[addon_col] or 0)
            if base + addon < quantity:
                return LedgerResult(
                    status=LedgerStatus.INSUFFICIENT_QUOTA,
                    balances=QuotaBalances.from_row(row),
                    kind=quota_kind,
                    months_rolled=months,
                )

            from_base = min(base, quantity)
            from_addon = quantity - from_base
            updated = tx.execute_rowcount(
                f"""UPDATE tenants
                    SET {base_col} = {base_col} - ?, {addon_col} = {addon_col} - ?, updated_at = ?
                    WHERE tenant_id = ? AND {base_col} >= ? AND {addon_col} >= ?""",
                (from_base, from_addon, now_ts(), tenant_id, from_base, from_addon)
            )
            if updated != 1:
                return LedgerResult(
                    status=LedgerStatus.INSUFFICIENT_QUOTA,
                    balances=QuotaBalances.from_row(row),
                    kind=quota_kind,
                    months_rolled=months,
                )

            self._bump_usage(tx, tenant_id, quota_kind, quantity, now, usage_column)
            balances = QuotaBalances.from_row(self._lock_tenant(tx, tenant_id))

        logger.info(
            "quota_consumed",
            tenant_id=tenant_id,
            kind=quota_kind.value,
            quantity=quantity,
            from_base=from_base,
            from_addon=from_addon,
            remaining=balances.remaining(quota_kind.value),
        )
        return LedgerResult(
            status=LedgerStatus.OK,
            balances=balances,
            kind=quota_kind,
            months_rolled=months,
            drawn_from_base=from_base,
            drawn_from_addon=from_addon,
        )

    def refund(
        self,
        tenant_id: str,
        kind: Any,
        quantity: int,
        now: Optional[datetime] = None,
        usage_column: Optional[str] = None,
    ) -> LedgerResult:
        """
        Return quantity to the tenant. The addon pool is credited, since it is
        the pool drawn from last, and the period usage counters are lowered.
        """
        quota_kind = parse_quota_kind(kind)
        if quota_kind is None:
            return LedgerResult(status=LedgerStatus.INVALID_KIND)
        if not _valid_quantity(quantity):
            return LedgerResult(status=LedgerStatus.INVALID_QUANTITY, kind=quota_kind)
        now = now or utcnow()
        addon_col = _ADDON_COLUMN[quota_kind]

        with self.db.transaction() as tx:
            row = self._lock_tenant(tx, tenant_id)
            if row is None:
                return LedgerResult(status=LedgerStatus.TENANT_NOT_FOUND, kind=quota_kind)

            unlimited = _is_unlimited(row)
            if not unlimited:
                tx.execute(
                    f"UPDATE tenants SET {addon_col} = {addon_col} + ?, updated_at = ? WHERE tenant_id = ?",
                    (quantity, now_ts(), tenant_id)
                )
            self._bump_usage(tx, tenant_id, quota_kind, -quantity, now, usage_column)
            balances = QuotaBalances.from_row(self._lock_tenant(tx, tenant_id))

        logger.info(
            "quota_refunded",
            tenant_id=tenant_id,
            kind=quota_kind.value,
            quantity=quantity,
            unlimited=unlimited,
        )
        return LedgerResult(
            status=LedgerStatus.OK,
            balances=balances,
            kind=quota_kind,
            unlimited=unlimited,
        )

    def credit_addon(self, tenant_id: str, kind: Any, quantity: int) -> LedgerResult:
        """Credit purchased add-on quota. The addon pool never resets."""
        quota_kind = parse_quota_kind(kind)
        if quota_kind is None:
            return LedgerResult(status=LedgerStatus.INVALID_KIND)
        if not _valid_quantity(quantity):
            return LedgerResult(status=LedgerStatus.INVALID_QUANTITY, kind=quota_kind)
        addon_col = _ADDON_COLUMN[quota_kind]

        with self.db.transaction() as tx:
            updated = tx.execute_rowcount(
                f"UPDATE tenants SET {addon_col} = {addon_col} + ?, updated_at = ? WHERE tenant_id = ?",
                (quantity, now_ts(), tenant_id)
            )
            if updated != 1:
                return LedgerResult(status=LedgerStatus.TENANT_NOT_FOUND, kind=quota_kind)
            balances = QuotaBalances.from_row(self._lock_tenant(tx, tenant_id))

        logger.info("addon_credited", tenant_id=tenant_id, kind=quota_kind.value, quantity=quantity)
        return LedgerResult(status=LedgerStatus.OK, balances=balances, kind=quota_kind)

    def reset_base(
        self,
        tenant_id: str,
        unit: int,
        sscc: int,
        now: Optional[datetime] = None,
    ) -> LedgerResult:
        """
        Overwrite both base pools and set the rollover checkpoint to now.

        `activate_plan` applies the same reset together with the plan change.
        """
        if not all(isinstance(v, int) and not isinstance(v, bool) and v >= 0 for v in (unit, sscc)):
            return LedgerResult(status=LedgerStatus.INVALID_QUANTITY)
        now = now or utcnow()

        with self.db.transaction() as tx:
            if self._lock_tenant(tx, tenant_id) is None:
                return LedgerResult(status=LedgerStatus.TENANT_NOT_FOUND)
            self._write_base(tx, tenant_id, unit, sscc, now)
            balances = QuotaBalances.from_row(self._lock_tenant(tx, tenant_id))

        logger.info("base_quota_reset", tenant_id=tenant_id, unit=unit, sscc=sscc)
        return LedgerResult(status=LedgerStatus.OK, balances=balances)

    def activate_plan(
        self,
        tenant_id: str,
        plan: str,
        billing_cycle: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> LedgerResult:
        """
        Switch the tenant to plan and reset its base pools, in one transaction.

        Monthly and quarterly plans get the full plan quotas, yearly plans one
        monthly allotment (rollover supplies the rest). Unlimited plans get
        zero base. The rollover checkpoint moves to now; addon pools are kept.
        """
        tier = normalize_plan_type(plan)
        if tier is None:
            return LedgerResult(status=LedgerStatus.UNKNOWN_PLAN)
        now = now or utcnow()

        with self.db.transaction() as tx:
            row = self._lock_tenant(tx, tenant_id)
            if row is None:
                return LedgerResult(status=LedgerStatus.TENANT_NOT_FOUND)

            cycle = BillingCycle.parse(billing_cycle or row.get("billing_cycle"))
            self.tenants.update_plan(tenant_id, plan, cycle.value, tx=tx)
            if cycle is BillingCycle.YEARLY:
                allotment = monthly_allotment(tier)
                unit, sscc = allotment["unit"], allotment["sscc"]
            else:
                quotas = PlanQuotas.for_tier(tier)
                unit, sscc = quotas.unit_labels_quota or 0, quotas.sscc_labels_quota or 0
            self._write_base(tx, tenant_id, unit, sscc, now)
            balances = QuotaBalances.from_row(self._lock_tenant(tx, tenant_id))

        logger.info(
            "plan_activated",
            tenant_id=tenant_id,
            plan=plan,
            billing_cycle=cycle.value,
            unit=unit,
            sscc=sscc,
        )
        return LedgerResult(status=LedgerStatus.OK, balances=balances)

    # ------------------------------------------------------------------
    # Rollover
    # ------------------------------------------------------------------

    def apply_rollover(self, tenant_id: str, now: Optional[datetime] = None) -> LedgerResult:
        """Credit elapsed monthly allotments for a yearly plan. Idempotent per window."""
        now = now or utcnow()
        with self.db.transaction() as tx:
            row = self._lock_tenant(tx, tenant_id)
            if row is None:
                return LedgerResult(status=LedgerStatus.TENANT_NOT_FOUND)
            months = self._rollover_locked(tx, row, now)
            if months:
                row = self._lock_tenant(tx, tenant_id)

        return LedgerResult(
            status=LedgerStatus.OK,
            balances=QuotaBalances.from_row(row),
            months_rolled=months,
        )

    def _rollover_locked(self, tx: Transaction, row: Dict[str, Any], now: datetime) -> int:
        """Apply rollover to a locked tenant row; returns months credited."""
        if BillingCycle.parse(row.get("billing_cycle")) is not BillingCycle.YEARLY:
            return 0

        tenant_id = row["tenant_id"]
        checkpoint = parse_dt(row.get("last_quota_rollover_at")) or parse_dt(row.get("trial_end_date"))
        if checkpoint is None:
            tx.execute(
                "UPDATE tenants SET last_quota_rollover_at = ?, updated_at = ? WHERE tenant_id = ?",
                (to_db_ts(now), now_ts(), tenant_id)
            )
            return 0

        months = whole_months_between(checkpoint, now)
        if months <= 0:
            return 0

        unit_credit = months * int(row.get("unit_monthly_allotment") or 0)
        sscc_credit = months * int(row.get("sscc_monthly_allotment") or 0)
        next_checkpoint = add_months(checkpoint, months)

        tx.execute(
            """UPDATE tenants
               SET unit_quota_balance = unit_quota_balance + ?,
                   sscc_quota_balance = sscc_quota_balance + ?,
                   last_quota_rollover_at = ?,
                   updated_at = ?
               WHERE tenant_id = ?""",
            (unit_credit, sscc_credit, to_db_ts(next_checkpoint), now_ts(), tenant_id)
        )
        logger.info(
            "quota_rolled_over",
            tenant_id=tenant_id,
            months=months,
            unit_credit=unit_credit,
            sscc_credit=sscc_credit,
            checkpoint=to_db_ts(next_checkpoint),
        )
        return months

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _lock_tenant(self, tx: Transaction, tenant_id: str) -> Optional[Dict[str, Any]]:
        rows = tx.select_for_update("SELECT * FROM tenants WHERE tenant_id = ?", (tenant_id,))
        return rows[0] if rows else None

    def _grant_first_allotment(self, tx: Transaction, tenant_id: str, now: datetime) -> None:
        """Credit one monthly allotment to a yearly tenant with no rollover checkpoint."""
        row = self._lock_tenant(tx, tenant_id)
        if row is None or row.get("last_quota_rollover_at"):
            return

        checkpoint = parse_dt(row.get("trial_end_date")) or now
        unit_credit = int(row.get("unit_monthly_allotment") or 0)
        sscc_credit = int(row.get("sscc_monthly_allotment") or 0)
        tx.execute(
            """UPDATE tenants
               SET unit_quota_balance = unit_quota_balance + ?,
                   sscc_quota_balance = sscc_quota_balance + ?,
                   last_quota_rollover_at = ?,
                   updated_at = ?
               WHERE tenant_id = ?""",
            (unit_credit, sscc_credit, to_db_ts(checkpoint), now_ts(), tenant_id)
        )
        logger.info(
            "first_allotment_granted",
            tenant_id=tenant_id,
            unit_credit=unit_credit,
            sscc_credit=sscc_credit,
            checkpoint=to_db_ts(checkpoint),
        )

    def _write_base(
        self,
        tx: Transaction,
        tenant_id: str,
        unit: Optional[int],
        sscc: Optional[int],
        now: datetime,
    ) -> None:
        tx.execute(
            """UPDATE tenants
               SET unit_quota_balance = ?, sscc_quota_balance = ?,
                   last_quota_rollover_at = ?, updated_at = ?
               WHERE tenant_id = ?""",
            (unit or 0, sscc or 0, to_db_ts(now), now_ts(), tenant_id)
        )

    def _bump_usage(
        self,
        tx: Transaction,
        tenant_id: str,
        kind: QuotaKind,
        delta: int,
        now: datetime,
        usage_column: Optional[str],
    ) -> None:
        """Adjust the used counters of the period covering now, floored at zero."""
        columns = [_USED_COLUMN[kind]]
        if kind is QuotaKind.SSCC and usage_column in DETAIL_COLUMNS:
            columns.append(usage_column)

        assignments = ", ".join(
            f"{col} = CASE WHEN {col} + ? < 0 THEN 0 ELSE {col} + ? END" for col in columns
        )
        params: tuple = ()
        for _ in columns:
            params += (delta, delta)
        ts = to_db_ts(now)
        tx.execute(
            f"""UPDATE billing_periods SET {assignments}, updated_at = ?
                WHERE tenant_id = ? AND period_start <= ? AND period_end > ?""",
            params + (now_ts(), tenant_id, ts, ts)
        )


def _is_unlimited(row: Dict[str, Any]) -> bool:
    tier = normalize_plan_type(row.get("subscription_plan"))
    return tier is not None and PlanQuotas.for_tier(tier).is_unlimited
