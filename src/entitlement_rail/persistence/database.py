"""
Database Connection Layer

Supports SQLite (dev) and PostgreSQL (production). Ledger mutations run inside
`Database.transaction()`, which takes the write lock up front on SQLite
(BEGIN IMMEDIATE) and relies on row locks (SELECT ... FOR UPDATE) on
PostgreSQL, so every read-modify-write on a balance is a single atomic round
trip.
"""

import os
import sqlite3
from contextlib import contextmanager
from typing import Optional, Generator, Any, Dict, List
from datetime import datetime, timezone
import threading
import structlog

from ..core.errors import StoreError

logger = structlog.get_logger()

# Schema version for migrations
SCHEMA_VERSION = 1

SCHEMA_SQL = """
-- Tenants (billed accounts) with quota balances and rollover checkpoint
CREATE TABLE IF NOT EXISTS tenants (
    tenant_id TEXT PRIMARY KEY,
    name TEXT,
    subscription_status TEXT NOT NULL DEFAULT 'trial',
    subscription_plan TEXT,
    billing_cycle TEXT NOT NULL DEFAULT 'monthly',
    trial_start_date TEXT,
    trial_end_date TEXT,
    extra_user_seats INTEGER NOT NULL DEFAULT 0,
    unit_quota_balance INTEGER NOT NULL DEFAULT 0 CHECK (unit_quota_balance >= 0),
    sscc_quota_balance INTEGER NOT NULL DEFAULT 0 CHECK (sscc_quota_balance >= 0),
    add_on_unit_balance INTEGER NOT NULL DEFAULT 0 CHECK (add_on_unit_balance >= 0),
    add_on_sscc_balance INTEGER NOT NULL DEFAULT 0 CHECK (add_on_sscc_balance >= 0),
    unit_monthly_allotment INTEGER NOT NULL DEFAULT 0,
    sscc_monthly_allotment INTEGER NOT NULL DEFAULT 0,
    last_quota_rollover_at TEXT,
    max_pause_days INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

-- One active subscription row per tenant
CREATE TABLE IF NOT EXISTS subscriptions (
    subscription_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL UNIQUE,
    plan_code TEXT,
    status TEXT NOT NULL,
    is_trial INTEGER NOT NULL DEFAULT 0,
    current_period_end TEXT,
    grace_period_end TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    FOREIGN KEY (tenant_id) REFERENCES tenants(tenant_id)
);

-- Billing period snapshots
CREATE TABLE IF NOT EXISTS billing_periods (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id TEXT NOT NULL,
    period_start TEXT NOT NULL,
    period_end TEXT NOT NULL,
    plan TEXT NOT NULL,
    unit_labels_quota INTEGER,
    box_labels_quota INTEGER,
    carton_labels_quota INTEGER,
    pallet_labels_quota INTEGER,
    sscc_labels_quota INTEGER,
    user_seats_quota INTEGER NOT NULL DEFAULT 1,
    unit_labels_used INTEGER NOT NULL DEFAULT 0,
    box_labels_used INTEGER NOT NULL DEFAULT 0,
    carton_labels_used INTEGER NOT NULL DEFAULT 0,
    pallet_labels_used INTEGER NOT NULL DEFAULT 0,
    sscc_labels_used INTEGER NOT NULL DEFAULT 0,
    user_seats_used INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE (tenant_id, period_start),
    FOREIGN KEY (tenant_id) REFERENCES tenants(tenant_id)
);

-- Append-only usage telemetry
CREATE TABLE IF NOT EXISTS usage_events (
    event_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    metric_type TEXT NOT NULL,
    quantity INTEGER NOT NULL,
    source TEXT NOT NULL,
    reference_id TEXT,
    created_at TEXT NOT NULL
);

-- Monthly usage aggregates read by plan-limit checks
CREATE TABLE IF NOT EXISTS usage_counters (
    tenant_id TEXT NOT NULL,
    metric_type TEXT NOT NULL,
    period_start TEXT NOT NULL,
    used_quantity INTEGER NOT NULL DEFAULT 0,
    PRIMARY KEY (tenant_id, metric_type, period_start)
);

-- Plan limits (read-only to the core)
CREATE TABLE IF NOT EXISTS plan_limits (
    plan_code TEXT NOT NULL,
    metric_type TEXT NOT NULL,
    limit_value INTEGER,
    limit_type TEXT NOT NULL DEFAULT 'NONE',
    PRIMARY KEY (plan_code, metric_type)
);

-- Reservations awaiting generation or refund
CREATE TABLE IF NOT EXISTS reservations (
    reservation_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    usage_type TEXT NOT NULL,
    quota_kind TEXT NOT NULL,
    quantity INTEGER NOT NULL,
    status TEXT NOT NULL DEFAULT 'RESERVED',
    created_at TEXT NOT NULL,
    settled_at TEXT
);

-- Best-effort audit trail
CREATE TABLE IF NOT EXISTS audit_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    tenant_id TEXT,
    action TEXT NOT NULL,
    actor TEXT NOT NULL DEFAULT 'system',
    metadata TEXT,
    created_at TEXT NOT NULL
);

-- Pause history
CREATE TABLE IF NOT EXISTS pause_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    subscription_id TEXT NOT NULL,
    tenant_id TEXT NOT NULL,
    pause_start_date TEXT NOT NULL,
    pause_end_date TEXT,
    reason TEXT,
    created_at TEXT NOT NULL
);

-- Seats
CREATE TABLE IF NOT EXISTS seats (
    seat_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    user_ref TEXT,
    active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

-- Tenant credit wallet (proration credits)
CREATE TABLE IF NOT EXISTS credit_wallets (
    tenant_id TEXT PRIMARY KEY,
    balance INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);

-- Indexes for performance
CREATE INDEX IF NOT EXISTS idx_periods_tenant ON billing_periods(tenant_id, period_start);
CREATE INDEX IF NOT EXISTS idx_usage_events_tenant ON usage_events(tenant_id);
CREATE INDEX IF NOT EXISTS idx_reservations_status ON reservations(status, created_at);
CREATE INDEX IF NOT EXISTS idx_audit_tenant ON audit_logs(tenant_id);
CREATE INDEX IF NOT EXISTS idx_pause_subscription ON pause_history(subscription_id);
CREATE INDEX IF NOT EXISTS idx_seats_tenant ON seats(tenant_id);
"""

POSTGRES_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS tenants (
    tenant_id TEXT PRIMARY KEY,
    name TEXT,
    subscription_status TEXT NOT NULL DEFAULT 'trial',
    subscription_plan TEXT,
    billing_cycle TEXT NOT NULL DEFAULT 'monthly',
    trial_start_date TIMESTAMPTZ,
    trial_end_date TIMESTAMPTZ,
    extra_user_seats INTEGER NOT NULL DEFAULT 0,
    unit_quota_balance BIGINT NOT NULL DEFAULT 0 CHECK (unit_quota_balance >= 0),
    sscc_quota_balance BIGINT NOT NULL DEFAULT 0 CHECK (sscc_quota_balance >= 0),
    add_on_unit_balance BIGINT NOT NULL DEFAULT 0 CHECK (add_on_unit_balance >= 0),
    add_on_sscc_balance BIGINT NOT NULL DEFAULT 0 CHECK (add_on_sscc_balance >= 0),
    unit_monthly_allotment BIGINT NOT NULL DEFAULT 0,
    sscc_monthly_allotment BIGINT NOT NULL DEFAULT 0,
    last_quota_rollover_at TIMESTAMPTZ,
    max_pause_days INTEGER,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS subscriptions (
    subscription_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL UNIQUE REFERENCES tenants(tenant_id),
    plan_code TEXT,
    status TEXT NOT NULL,
    is_trial BOOLEAN NOT NULL DEFAULT FALSE,
    current_period_end TIMESTAMPTZ,
    grace_period_end TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS billing_periods (
    id SERIAL PRIMARY KEY,
    tenant_id TEXT NOT NULL REFERENCES tenants(tenant_id),
    period_start TIMESTAMPTZ NOT NULL,
    period_end TIMESTAMPTZ NOT NULL,
    plan TEXT NOT NULL,
    unit_labels_quota BIGINT,
    box_labels_quota BIGINT,
    carton_labels_quota BIGINT,
    pallet_labels_quota BIGINT,
    sscc_labels_quota BIGINT,
    user_seats_quota INTEGER NOT NULL DEFAULT 1,
    unit_labels_used BIGINT NOT NULL DEFAULT 0,
    box_labels_used BIGINT NOT NULL DEFAULT 0,
    carton_labels_used BIGINT NOT NULL DEFAULT 0,
    pallet_labels_used BIGINT NOT NULL DEFAULT 0,
    sscc_labels_used BIGINT NOT NULL DEFAULT 0,
    user_seats_used INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    UNIQUE (tenant_id, period_start)
);

CREATE TABLE IF NOT EXISTS usage_events (
    event_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    metric_type TEXT NOT NULL,
    quantity BIGINT NOT NULL,
    source TEXT NOT NULL,
    reference_id TEXT,
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS usage_counters (
    tenant_id TEXT NOT NULL,
    metric_type TEXT NOT NULL,
    period_start TEXT NOT NULL,
    used_quantity BIGINT NOT NULL DEFAULT 0,
    PRIMARY KEY (tenant_id, metric_type, period_start)
);

CREATE TABLE IF NOT EXISTS plan_limits (
    plan_code TEXT NOT NULL,
    metric_type TEXT NOT NULL,
    limit_value BIGINT,
    limit_type TEXT NOT NULL DEFAULT 'NONE',
    PRIMARY KEY (plan_code, metric_type)
);

CREATE TABLE IF NOT EXISTS reservations (
    reservation_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    usage_type TEXT NOT NULL,
    quota_kind TEXT NOT NULL,
    quantity BIGINT NOT NULL,
    status TEXT NOT NULL DEFAULT 'RESERVED',
    created_at TIMESTAMPTZ NOT NULL,
    settled_at TIMESTAMPTZ
);

CREATE TABLE IF NOT EXISTS audit_logs (
    id SERIAL PRIMARY KEY,
    tenant_id TEXT,
    action TEXT NOT NULL,
    actor TEXT NOT NULL DEFAULT 'system',
    metadata JSONB,
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS pause_history (
    id SERIAL PRIMARY KEY,
    subscription_id TEXT NOT NULL,
    tenant_id TEXT NOT NULL,
    pause_start_date TIMESTAMPTZ NOT NULL,
    pause_end_date TIMESTAMPTZ,
    reason TEXT,
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS seats (
    seat_id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    user_ref TEXT,
    active BOOLEAN NOT NULL DEFAULT TRUE,
    created_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS credit_wallets (
    tenant_id TEXT PRIMARY KEY,
    balance BIGINT NOT NULL DEFAULT 0,
    updated_at TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_periods_tenant ON billing_periods(tenant_id, period_start);
CREATE INDEX IF NOT EXISTS idx_usage_events_tenant ON usage_events(tenant_id);
CREATE INDEX IF NOT EXISTS idx_reservations_status ON reservations(status, created_at);
CREATE INDEX IF NOT EXISTS idx_audit_tenant ON audit_logs(tenant_id);
CREATE INDEX IF NOT EXISTS idx_pause_subscription ON pause_history(subscription_id);
CREATE INDEX IF NOT EXISTS idx_seats_tenant ON seats(tenant_id);
"""


def to_db_ts(value: Optional[datetime]) -> Optional[str]:
    """Fixed-width UTC ISO timestamp so SQLite text comparison orders correctly."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def now_ts() -> str:
    return to_db_ts(datetime.now(timezone.utc))


class Transaction:
    """
    Cursor wrapper handed out by `Database.transaction()`.

    Queries are written with "?" placeholders and adapted for PostgreSQL.
    """

    def __init__(self, conn: Any, is_postgres: bool):
        self.conn = conn
        self.is_postgres = is_postgres

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        query = _adapt_query(query, self.is_postgres)
        if self.is_postgres:
            cursor = self.conn.cursor()
            cursor.execute(query, params)
        else:
            cursor = self.conn.execute(query, params)
        if cursor.description:
            return [dict(row) for row in cursor.fetchall()]
        return []

    def execute_rowcount(self, query: str, params: tuple = ()) -> int:
        query = _adapt_query(query, self.is_postgres)
        if self.is_postgres:
            cursor = self.conn.cursor()
            cursor.execute(query, params)
        else:
            cursor = self.conn.execute(query, params)
        return cursor.rowcount

    def select_for_update(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Row-locking select. SQLite already holds the write lock."""
        if self.is_postgres:
            query = f"{query} FOR UPDATE"
        return self.execute(query, params)


def _adapt_query(query: str, is_postgres: bool) -> str:
    if is_postgres:
        return query.replace("?", "%s")
    return query


class Database:
    """
    Database connection manager with SQLite and PostgreSQL support.

    Usage:
        db = Database()  # Uses DATABASE_URL env or defaults to SQLite
        with db.transaction() as tx:
            tx.select_for_update("SELECT * FROM tenants WHERE tenant_id = ?", (tid,))
    """

    _instance: Optional["Database"] = None
    _lock = threading.Lock()

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or os.environ.get(
            "DATABASE_URL",
            "sqlite:///entitlement_rail.db"
        )
        self.is_postgres = self.database_url.startswith("postgres")
        self._local = threading.local()
        self._initialized = False

    @classmethod
    def get_instance(cls, database_url: Optional[str] = None) -> "Database":
        """Get singleton database instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls(database_url)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Drop the singleton (tests and CLI re-configuration)."""
        with cls._lock:
            if cls._instance is not None:
                cls._instance.close()
            cls._instance = None

    def _get_sqlite_path(self) -> str:
        """Extract SQLite file path from URL."""
        if self.database_url.startswith("sqlite:///"):
            return self.database_url[10:]
        return "entitlement_rail.db"

    @contextmanager
    def connection(self) -> Generator[Any, None, None]:
        """Get a database connection (thread-safe). Commits on success."""
        try:
            if self.is_postgres:
                with self._postgres_connection() as conn:
                    yield conn
            else:
                with self._sqlite_connection() as conn:
                    yield conn
        except sqlite3.Error as e:
            logger.error("store_error", error=str(e), backend="sqlite")
            raise StoreError(f"Store operation failed: {e}") from e
        except Exception as e:
            if _is_psycopg_error(e):
                logger.error("store_error", error=str(e), backend="postgres")
                raise StoreError(f"Store operation failed: {e}") from e
            raise

    @contextmanager
    def _sqlite_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """SQLite connection with WAL mode for concurrency."""
        if not hasattr(self._local, 'conn') or self._local.conn is None:
            db_path = self._get_sqlite_path()
            self._local.conn = sqlite3.connect(
                db_path,
                check_same_thread=False,
                timeout=30.0,
            )
            self._local.conn.row_factory = sqlite3.Row
            # Enable WAL mode for better concurrency
            self._local.conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn.execute("PRAGMA synchronous=NORMAL")
            self._local.conn.execute("PRAGMA foreign_keys=ON")

        try:
            yield self._local.conn
            self._local.conn.commit()
        except Exception:
            self._local.conn.rollback()
            raise

    @contextmanager
    def _postgres_connection(self) -> Generator[Any, None, None]:
        """PostgreSQL connection, one per unit of work."""
        try:
            import psycopg2
            from psycopg2.extras import RealDictCursor
        except ImportError:
            raise ImportError("psycopg2 required for PostgreSQL. Install with: pip install psycopg2-binary")

        conn = psycopg2.connect(self.database_url, cursor_factory=RealDictCursor)
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Generator[Transaction, None, None]:
        """
        Atomic unit of work.

        SQLite: BEGIN IMMEDIATE acquires the database write lock before the
        first read, so concurrent read-modify-write sequences serialize.
        PostgreSQL: callers lock rows with `Transaction.select_for_update`.
        """
        with self.connection() as conn:
            if not self.is_postgres:
                conn.execute("BEGIN IMMEDIATE")
            yield Transaction(conn, self.is_postgres)

    def initialize(self) -> None:
        """Initialize database schema."""
        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            schema = POSTGRES_SCHEMA_SQL if self.is_postgres else SCHEMA_SQL

            with self.connection() as conn:
                if self.is_postgres:
                    cursor = conn.cursor()
                    cursor.execute(schema)
                    cursor.execute(
                        "INSERT INTO schema_version (version, applied_at) VALUES (%s, %s) ON CONFLICT (version) DO NOTHING",
                        (SCHEMA_VERSION, now_ts())
                    )
                else:
                    conn.executescript(schema)
                    conn.execute(
                        "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
                        (SCHEMA_VERSION, now_ts())
                    )

            self._initialized = True
            logger.info("database_initialized", url=self.database_url[:20] + "...", is_postgres=self.is_postgres)

    def execute(self, query: str, params: tuple = ()) -> List[Dict[str, Any]]:
        """Execute a query in its own transaction and return rows as dicts."""
        with self.connection() as conn:
            return Transaction(conn, self.is_postgres).execute(query, params)

    def execute_rowcount(self, query: str, params: tuple = ()) -> int:
        with self.connection() as conn:
            return Transaction(conn, self.is_postgres).execute_rowcount(query, params)

    def close(self) -> None:
        """Close database connections."""
        if hasattr(self._local, 'conn') and self._local.conn:
            self._local.conn.close()
            self._local.conn = None


def _is_psycopg_error(error: Exception) -> bool:
    try:
        import psycopg2
    except ImportError:
        return False
    return isinstance(error, psycopg2.Error)


def get_database(database_url: Optional[str] = None) -> Database:
    """Get the database singleton instance."""
    db = Database.get_instance(database_url)
    db.initialize()
    return db
