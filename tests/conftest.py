"""
Pytest Configuration and Fixtures
"""

import os
import sys
import pytest
import tempfile
from datetime import datetime, timedelta, timezone

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["API_KEY"] = "test-key-12345"
os.environ["LOG_LEVEL"] = "WARNING"

from entitlement_rail.config import reset_settings
from entitlement_rail.persistence.database import Database, get_database
from entitlement_rail.persistence.models import SubscriptionRecord, TenantRecord
from entitlement_rail.persistence.repository import SubscriptionRepository, TenantRepository

NOW = datetime(2026, 10, 15, 12, 0, tzinfo=timezone.utc)

_SUBSCRIPTION_STATUS = {
    "trial": "TRIAL",
    "active": "ACTIVE",
    "paused": "PAUSED",
    "pending": "PENDING",
    "cancelled": "CANCELLED",
    "expired": "EXPIRED",
    "past_due": "ACTIVE",
}


@pytest.fixture
def temp_db():
    """Create a temporary file database and make it the process singleton."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    os.environ["DATABASE_URL"] = f"sqlite:///{db_path}"
    Database.reset_instance()
    reset_settings()
    db = get_database(f"sqlite:///{db_path}")

    yield db

    # Cleanup
    Database.reset_instance()
    reset_settings()
    for path in (db_path, db_path + "-wal", db_path + "-shm"):
        try:
            os.unlink(path)
        except OSError:
            pass


@pytest.fixture
def now():
    """Fixed evaluation instant."""
    return NOW


@pytest.fixture
def make_tenant(temp_db):
    """
    Factory for a tenant plus its subscription row.

    Paid tenants get a trial that ended 10 days before NOW, so the active
    monthly period is [NOW - 10d, NOW - 10d + 1 month).
    """
    tenants = TenantRepository(temp_db)
    subscriptions = SubscriptionRepository(temp_db)

    def _make(
        tenant_id="tenant_1",
        plan="starter_monthly",
        status="active",
        billing_cycle="monthly",
        trial_end=None,
        **fields,
    ):
        if trial_end is None:
            trial_end = NOW + timedelta(days=14) if status == "trial" else NOW - timedelta(days=10)
        tenant = tenants.create(TenantRecord(
            tenant_id=tenant_id,
            name=f"{tenant_id} Pharma",
            subscription_status=status,
            subscription_plan=plan,
            billing_cycle=billing_cycle,
            trial_start_date=trial_end - timedelta(days=15),
            trial_end_date=trial_end,
            **fields,
        ))
        subscriptions.create(SubscriptionRecord(
            subscription_id=f"sub_{tenant_id}",
            tenant_id=tenant_id,
            status=_SUBSCRIPTION_STATUS.get(status, "ACTIVE"),
            plan_code=plan,
            is_trial=status == "trial",
            current_period_end=NOW + timedelta(days=20),
        ))
        return tenant

    return _make
