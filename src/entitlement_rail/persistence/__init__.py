"""
Persistence Layer for Entitlement Rail

Supports SQLite (dev) and PostgreSQL (production).
"""

from .database import Database, Transaction, get_database
from .models import (
    QuotaBalances,
    TenantRecord,
    SubscriptionRecord,
    BillingPeriodRecord,
    PlanLimitRecord,
    UsageEventRecord,
    ReservationRecord,
    AuditLogRecord,
    PauseRecord,
)
from .repository import (
    TenantRepository,
    SubscriptionRepository,
    BillingPeriodRepository,
    UsageRepository,
    AuditRepository,
    ReservationRepository,
    PauseHistoryRepository,
    SeatRepository,
    CreditWalletRepository,
)
from .ledger import QuotaLedger, LedgerResult, LedgerStatus

__all__ = [
    "Database",
    "Transaction",
    "get_database",
    "QuotaBalances",
    "TenantRecord",
    "SubscriptionRecord",
    "BillingPeriodRecord",
    "PlanLimitRecord",
    "UsageEventRecord",
    "ReservationRecord",
    "AuditLogRecord",
    "PauseRecord",
    "TenantRepository",
    "SubscriptionRepository",
    "BillingPeriodRepository",
    "UsageRepository",
    "AuditRepository",
    "ReservationRepository",
    "PauseHistoryRepository",
    "SeatRepository",
    "CreditWalletRepository",
    "QuotaLedger",
    "LedgerResult",
    "LedgerStatus",
]
