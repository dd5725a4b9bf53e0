"""
Data Models for Persistence Layer

Row-level records for tenants, subscriptions, billing periods and the
supporting tables. Timestamps are aware UTC datetimes in memory and fixed-width
ISO strings (SQLite) or TIMESTAMPTZ (PostgreSQL) at rest.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import json

from ..core.period import parse_dt
from .database import to_db_ts


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class QuotaBalances:
    """Base and addon pools for both quota kinds."""
    unit_base: int = 0
    sscc_base: int = 0
    unit_addon: int = 0
    sscc_addon: int = 0

    def remaining(self, kind: str) -> int:
        if kind == "unit":
            return max(0, self.unit_base + self.unit_addon)
        return max(0, self.sscc_base + self.sscc_addon)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "unit_base": self.unit_base,
            "unit_addon": self.unit_addon,
            "unit_remaining": self.remaining("unit"),
            "sscc_base": self.sscc_base,
            "sscc_addon": self.sscc_addon,
            "sscc_remaining": self.remaining("sscc"),
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "QuotaBalances":
        return cls(
            unit_base=int(row.get("unit_quota_balance") or 0),
            sscc_base=int(row.get("sscc_quota_balance") or 0),
            unit_addon=int(row.get("add_on_unit_balance") or 0),
            sscc_addon=int(row.get("add_on_sscc_balance") or 0),
        )


@dataclass
class TenantRecord:
    """Persisted tenant (billed account)."""
    tenant_id: str
    subscription_status: str = "trial"
    subscription_plan: Optional[str] = None
    billing_cycle: str = "monthly"
    name: Optional[str] = None
    trial_start_date: Optional[datetime] = None
    trial_end_date: Optional[datetime] = None
    extra_user_seats: int = 0
    balances: QuotaBalances = field(default_factory=QuotaBalances)
    unit_monthly_allotment: int = 0
    sscc_monthly_allotment: int = 0
    last_quota_rollover_at: Optional[datetime] = None
    max_pause_days: Optional[int] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "name": self.name,
            "subscription_status": self.subscription_status,
            "subscription_plan": self.subscription_plan,
            "billing_cycle": self.billing_cycle,
            "trial_start_date": _iso(self.trial_start_date),
            "trial_end_date": _iso(self.trial_end_date),
            "extra_user_seats": self.extra_user_seats,
            "balances": self.balances.to_dict(),
            "unit_monthly_allotment": self.unit_monthly_allotment,
            "sscc_monthly_allotment": self.sscc_monthly_allotment,
            "last_quota_rollover_at": _iso(self.last_quota_rollover_at),
            "max_pause_days": self.max_pause_days,
        }

    def to_db_tuple(self) -> tuple:
        """Convert to database insert tuple."""
        return (
            self.tenant_id,
            self.name,
            self.subscription_status,
            self.subscription_plan,
            self.billing_cycle,
            to_db_ts(self.trial_start_date),
            to_db_ts(self.trial_end_date),
            self.extra_user_seats,
            self.balances.unit_base,
            self.balances.sscc_base,
            self.balances.unit_addon,
            self.balances.sscc_addon,
            self.unit_monthly_allotment,
            self.sscc_monthly_allotment,
            to_db_ts(self.last_quota_rollover_at),
            self.max_pause_days,
            to_db_ts(self.created_at),
            to_db_ts(self.updated_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "TenantRecord":
        return cls(
            tenant_id=row["tenant_id"],
            name=row.get("name"),
            subscription_status=row.get("subscription_status") or "trial",
            subscription_plan=row.get("subscription_plan"),
            billing_cycle=row.get("billing_cycle") or "monthly",
            trial_start_date=parse_dt(row.get("trial_start_date")),
            trial_end_date=parse_dt(row.get("trial_end_date")),
            extra_user_seats=int(row.get("extra_user_seats") or 0),
            balances=QuotaBalances.from_row(row),
            unit_monthly_allotment=int(row.get("unit_monthly_allotment") or 0),
            sscc_monthly_allotment=int(row.get("sscc_monthly_allotment") or 0),
            last_quota_rollover_at=parse_dt(row.get("last_quota_rollover_at")),
            max_pause_days=row.get("max_pause_days"),
            created_at=parse_dt(row["created_at"]),
            updated_at=parse_dt(row["updated_at"]),
        )


@dataclass
class SubscriptionRecord:
    """Persisted subscription row (one per tenant)."""
    subscription_id: str
    tenant_id: str
    status: str
    plan_code: Optional[str] = None
    is_trial: bool = False
    current_period_end: Optional[datetime] = None
    grace_period_end: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscription_id": self.subscription_id,
            "tenant_id": self.tenant_id,
            "status": self.status,
            "plan_code": self.plan_code,
            "is_trial": self.is_trial,
            "current_period_end": _iso(self.current_period_end),
            "grace_period_end": _iso(self.grace_period_end),
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.subscription_id,
            self.tenant_id,
            self.plan_code,
            self.status,
            bool(self.is_trial),
            to_db_ts(self.current_period_end),
            to_db_ts(self.grace_period_end),
            to_db_ts(self.created_at),
            to_db_ts(self.updated_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "SubscriptionRecord":
        return cls(
            subscription_id=row["subscription_id"],
            tenant_id=row["tenant_id"],
            status=row["status"],
            plan_code=row.get("plan_code"),
            is_trial=bool(row.get("is_trial")),
            current_period_end=parse_dt(row.get("current_period_end")),
            grace_period_end=parse_dt(row.get("grace_period_end")),
            created_at=parse_dt(row["created_at"]),
            updated_at=parse_dt(row["updated_at"]),
        )


@dataclass
class BillingPeriodRecord:
    """Snapshot of quotas and usage for one billing window."""
    tenant_id: str
    period_start: datetime
    period_end: datetime
    plan: str
    unit_labels_quota: Optional[int] = None
    box_labels_quota: Optional[int] = None
    carton_labels_quota: Optional[int] = None
    pallet_labels_quota: Optional[int] = None
    sscc_labels_quota: Optional[int] = None
    user_seats_quota: int = 1
    unit_labels_used: int = 0
    box_labels_used: int = 0
    carton_labels_used: int = 0
    pallet_labels_used: int = 0
    sscc_labels_used: int = 0
    user_seats_used: int = 0
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "plan": self.plan,
            "unit_labels_quota": self.unit_labels_quota,
            "box_labels_quota": self.box_labels_quota,
            "carton_labels_quota": self.carton_labels_quota,
            "pallet_labels_quota": self.pallet_labels_quota,
            "sscc_labels_quota": self.sscc_labels_quota,
            "user_seats_quota": self.user_seats_quota,
            "unit_labels_used": self.unit_labels_used,
            "box_labels_used": self.box_labels_used,
            "carton_labels_used": self.carton_labels_used,
            "pallet_labels_used": self.pallet_labels_used,
            "sscc_labels_used": self.sscc_labels_used,
            "user_seats_used": self.user_seats_used,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "BillingPeriodRecord":
        return cls(
            id=row.get("id"),
            tenant_id=row["tenant_id"],
            period_start=parse_dt(row["period_start"]),
            period_end=parse_dt(row["period_end"]),
            plan=row["plan"],
            unit_labels_quota=row.get("unit_labels_quota"),
            box_labels_quota=row.get("box_labels_quota"),
            carton_labels_quota=row.get("carton_labels_quota"),
            pallet_labels_quota=row.get("pallet_labels_quota"),
            sscc_labels_quota=row.get("sscc_labels_quota"),
            user_seats_quota=row.get("user_seats_quota") or 1,
            unit_labels_used=row.get("unit_labels_used") or 0,
            box_labels_used=row.get("box_labels_used") or 0,
            carton_labels_used=row.get("carton_labels_used") or 0,
            pallet_labels_used=row.get("pallet_labels_used") or 0,
            sscc_labels_used=row.get("sscc_labels_used") or 0,
            user_seats_used=row.get("user_seats_used") or 0,
        )


@dataclass
class PlanLimitRecord:
    """Per-plan, per-metric cap."""
    plan_code: str
    metric_type: str
    limit_value: Optional[int]
    limit_type: str = "NONE"

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PlanLimitRecord":
        return cls(
            plan_code=row["plan_code"],
            metric_type=row["metric_type"],
            limit_value=row.get("limit_value"),
            limit_type=(row.get("limit_type") or "NONE").upper(),
        )


@dataclass
class UsageEventRecord:
    """Append-only usage telemetry entry."""
    event_id: str
    tenant_id: str
    metric_type: str
    quantity: int
    source: str = "api"
    reference_id: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)

    def to_db_tuple(self) -> tuple:
        return (
            self.event_id,
            self.tenant_id,
            self.metric_type,
            self.quantity,
            self.source,
            self.reference_id,
            to_db_ts(self.created_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UsageEventRecord":
        return cls(
            event_id=row["event_id"],
            tenant_id=row["tenant_id"],
            metric_type=row["metric_type"],
            quantity=row["quantity"],
            source=row["source"],
            reference_id=row.get("reference_id"),
            created_at=parse_dt(row["created_at"]),
        )


@dataclass
class ReservationRecord:
    """A debit taken ahead of downstream generation."""
    reservation_id: str
    tenant_id: str
    usage_type: str
    quota_kind: str
    quantity: int
    status: str = "RESERVED"
    created_at: datetime = field(default_factory=_utcnow)
    settled_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reservation_id": self.reservation_id,
            "tenant_id": self.tenant_id,
            "usage_type": self.usage_type,
            "quota_kind": self.quota_kind,
            "quantity": self.quantity,
            "status": self.status,
            "created_at": self.created_at.isoformat(),
            "settled_at": _iso(self.settled_at),
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.reservation_id,
            self.tenant_id,
            self.usage_type,
            self.quota_kind,
            self.quantity,
            self.status,
            to_db_ts(self.created_at),
            to_db_ts(self.settled_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "ReservationRecord":
        return cls(
            reservation_id=row["reservation_id"],
            tenant_id=row["tenant_id"],
            usage_type=row["usage_type"],
            quota_kind=row["quota_kind"],
            quantity=row["quantity"],
            status=row["status"],
            created_at=parse_dt(row["created_at"]),
            settled_at=parse_dt(row.get("settled_at")),
        )


@dataclass
class AuditLogRecord:
    """Best-effort audit entry."""
    action: str
    tenant_id: Optional[str] = None
    actor: str = "system"
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=_utcnow)
    id: Optional[int] = None

    def to_db_tuple(self) -> tuple:
        return (
            self.tenant_id,
            self.action,
            self.actor,
            json.dumps(self.metadata, default=str),
            to_db_ts(self.created_at),
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AuditLogRecord":
        metadata = row.get("metadata")
        if isinstance(metadata, str) and metadata:
            metadata = json.loads(metadata)
        return cls(
            id=row.get("id"),
            tenant_id=row.get("tenant_id"),
            action=row["action"],
            actor=row.get("actor", "system"),
            metadata=metadata or {},
            created_at=parse_dt(row["created_at"]),
        )


@dataclass
class PauseRecord:
    """A pause window for a subscription."""
    subscription_id: str
    tenant_id: str
    pause_start_date: datetime
    pause_end_date: Optional[datetime] = None
    reason: Optional[str] = None
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "PauseRecord":
        return cls(
            id=row.get("id"),
            subscription_id=row["subscription_id"],
            tenant_id=row["tenant_id"],
            pause_start_date=parse_dt(row["pause_start_date"]),
            pause_end_date=parse_dt(row.get("pause_end_date")),
            reason=row.get("reason"),
        )
