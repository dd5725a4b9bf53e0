"""
Tests for FastAPI Endpoints

Integration tests for the entitlement API.
"""

import pytest
from fastapi.testclient import TestClient

from entitlement_rail.api.server import app


@pytest.fixture
def client(temp_db):
    """Create test client with the lifespan running."""
    with TestClient(app) as c:
        yield c


@pytest.fixture
def auth_headers():
    """Headers with valid API key."""
    return {"X-API-Key": "test-key-12345"}


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_no_auth_required(self, client):
        """Health check should not require authentication."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["backend"] == "sqlite"
        assert "version" in data
        assert "uptime_seconds" in data


class TestEnforceEndpoint:
    """Test the entitlement gate endpoint."""

    def test_requires_auth(self, client):
        """Enforce endpoint should require API key."""
        response = client.post("/entitlements/enforce", json={
            "tenant_id": "t_api",
            "usage_type": "UNIT_LABEL",
            "quantity": 1,
        })

        assert response.status_code == 422  # Missing header

    def test_invalid_api_key(self, client):
        """Invalid API key should be rejected."""
        response = client.post(
            "/entitlements/enforce",
            json={"tenant_id": "t_api", "usage_type": "UNIT_LABEL", "quantity": 1},
            headers={"X-API-Key": "wrong-key"},
        )

        assert response.status_code == 401

    def test_allowed(self, client, auth_headers, make_tenant):
        """Valid request consumes quota."""
        make_tenant("t_api")

        response = client.post(
            "/entitlements/enforce",
            json={"tenant_id": "t_api", "usage_type": "UNIT_LABEL", "quantity": 500},
            headers=auth_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["allow"] is True
        assert data["reason_code"] == "ALLOWED"
        assert data["consumed"] == 500
        assert data["remaining"] == 199_500

    def test_preview_is_non_consuming(self, client, auth_headers):
        response = client.post(
            "/entitlements/enforce",
            json={"tenant_id": "t_anyone", "usage_type": "LABEL_PREVIEW", "quantity": 3},
            headers=auth_headers,
        )

        data = response.json()
        assert data["allow"] is True
        assert data["reason_code"] == "NON_CONSUMING"
        assert data["remaining"] == -1

    def test_denial_is_a_decision(self, client, auth_headers):
        """Denials are 200 responses with a reason code."""
        response = client.post(
            "/entitlements/enforce",
            json={"tenant_id": "t_unknown", "usage_type": "UNIT_LABEL", "quantity": 1},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["allow"] is False
        assert response.json()["reason_code"] == "NO_ACTIVE_SUBSCRIPTION"


class TestRefundEndpoint:
    """Test refunds."""

    def test_refund(self, client, auth_headers, make_tenant):
        make_tenant("t_refund_api")
        client.post(
            "/entitlements/enforce",
            json={"tenant_id": "t_refund_api", "usage_type": "BOX_LABEL", "quantity": 100},
            headers=auth_headers,
        )

        response = client.post(
            "/entitlements/refund",
            json={"tenant_id": "t_refund_api", "usage_type": "BOX_LABEL", "quantity": 100},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["ok"] is True
        assert response.json()["remaining"] == 22_500

    def test_invalid_refund(self, client, auth_headers):
        response = client.post(
            "/entitlements/refund",
            json={"tenant_id": "t_x", "usage_type": "UNIT_LABEL", "quantity": 0},
            headers=auth_headers,
        )

        assert response.status_code == 400


class TestTenantEndpoints:
    """Test quota, rollover and addon endpoints."""

    def test_quota(self, client, auth_headers, make_tenant):
        make_tenant("t_quota")
        client.post(
            "/entitlements/enforce",
            json={"tenant_id": "t_quota", "usage_type": "UNIT_LABEL", "quantity": 10},
            headers=auth_headers,
        )

        response = client.get("/tenants/t_quota/quota", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["balances"]["unit_remaining"] == 199_990
        assert data["period"]["unit_labels_used"] == 10
        assert data["usage"] == {"UNIT": 10}

    def test_quota_unknown_tenant(self, client, auth_headers):
        response = client.get("/tenants/t_ghost/quota", headers=auth_headers)

        assert response.status_code == 404
        assert response.json()["error"] == "NotFoundError"

    def test_addon_credit(self, client, auth_headers, make_tenant):
        make_tenant("t_buy")

        response = client.post(
            "/tenants/t_buy/addons",
            json={"kind": "sscc", "quantity": 1_000},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["balances"]["sscc_addon"] == 1_000

    def test_addon_bad_kind(self, client, auth_headers, make_tenant):
        make_tenant("t_buy_bad")

        response = client.post(
            "/tenants/t_buy_bad/addons",
            json={"kind": "pallet", "quantity": 10},
            headers=auth_headers,
        )

        assert response.status_code == 400

    def test_addon_zero_quantity(self, client, auth_headers):
        response = client.post(
            "/tenants/t_any/addons",
            json={"kind": "unit", "quantity": 0},
            headers=auth_headers,
        )

        assert response.status_code == 422

    def test_rollover_monthly_is_noop(self, client, auth_headers, make_tenant):
        make_tenant("t_roll_api")

        response = client.post("/tenants/t_roll_api/rollover", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["months_rolled"] == 0

    def test_rollover_unknown_tenant(self, client, auth_headers):
        response = client.post("/tenants/t_ghost/rollover", headers=auth_headers)

        assert response.status_code == 404

    def test_activate_plan(self, client, auth_headers, make_tenant):
        make_tenant("t_upgrade_api")

        response = client.post(
            "/tenants/t_upgrade_api/plan",
            json={"plan": "growth_monthly"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["balances"]["unit_base"] == 1_000_000

    def test_activate_plan_unknown_tenant(self, client, auth_headers):
        response = client.post(
            "/tenants/t_ghost/plan",
            json={"plan": "growth_monthly"},
            headers=auth_headers,
        )

        assert response.status_code == 404

    def test_activate_unknown_plan(self, client, auth_headers, make_tenant):
        make_tenant("t_platinum")

        response = client.post(
            "/tenants/t_platinum/plan",
            json={"plan": "platinum"},
            headers=auth_headers,
        )

        assert response.status_code == 400


class TestSubscriptionEndpoints:
    """Test transitions and grace."""

    def test_transition(self, client, auth_headers, make_tenant):
        make_tenant("t_move_api")

        response = client.post(
            "/subscriptions/sub_t_move_api/transition",
            json={"to_status": "PAUSED"},
            headers=auth_headers,
        )

        assert response.status_code == 200
        assert response.json()["subscription"]["status"] == "PAUSED"
        assert response.json()["description"] == "Subscription paused temporarily"

    def test_invalid_transition(self, client, auth_headers, make_tenant):
        make_tenant("t_stuck_api", status="cancelled")

        response = client.post(
            "/subscriptions/sub_t_stuck_api/transition",
            json={"to_status": "PAUSED"},
            headers=auth_headers,
        )

        assert response.status_code == 409

    def test_transition_unknown_subscription(self, client, auth_headers):
        response = client.post(
            "/subscriptions/sub_ghost/transition",
            json={"to_status": "ACTIVE"},
            headers=auth_headers,
        )

        assert response.status_code == 404

    def test_apply_grace(self, client, auth_headers, make_tenant):
        make_tenant("t_grace_api")

        first = client.post(
            "/tenants/t_grace_api/grace",
            json={"subscription_id": "sub_t_grace_api"},
            headers=auth_headers,
        )
        second = client.post(
            "/tenants/t_grace_api/grace",
            json={"subscription_id": "sub_t_grace_api"},
            headers=auth_headers,
        )

        assert first.status_code == 200
        assert first.json()["grace_period_days"] == 3
        assert second.json()["already_in_grace"] is True

        status = client.get("/tenants/t_grace_api/grace", headers=auth_headers)
        assert status.status_code == 200
        assert status.json()["status"] == "EXPIRED"

    def test_apply_grace_rejected(self, client, auth_headers, make_tenant):
        make_tenant("t_grace_cancelled", status="cancelled")

        response = client.post(
            "/tenants/t_grace_cancelled/grace",
            json={"subscription_id": "sub_t_grace_cancelled"},
            headers=auth_headers,
        )

        assert response.status_code == 409

    def test_apply_grace_other_tenant(self, client, auth_headers, make_tenant):
        make_tenant("t_grace_owner")
        make_tenant("t_grace_intruder")

        response = client.post(
            "/tenants/t_grace_intruder/grace",
            json={"subscription_id": "sub_t_grace_owner"},
            headers=auth_headers,
        )

        assert response.status_code == 409


class TestBillingEndpoints:
    """Test proration, sweep and metrics."""

    def test_proration(self, client, auth_headers):
        response = client.post(
            "/proration",
            json={"old_price": 3000, "new_price": 6000, "remaining_days": 15, "total_days": 30},
            headers=auth_headers,
        )

        assert response.status_code == 200
        data = response.json()
        assert data["charge_amount"] == 1500
        assert data["credit_amount"] == 0
        assert data["breakdown"]["new_plan_daily_rate"] == 200
        assert data["formatted"]["charge_amount_formatted"] == "INR 15.00"

    def test_proration_invalid(self, client, auth_headers):
        response = client.post(
            "/proration",
            json={"old_price": 3000, "new_price": 6000, "remaining_days": 40, "total_days": 30},
            headers=auth_headers,
        )

        assert response.status_code == 400
        assert response.json()["error"] == "ProrationError"

    def test_proration_nan_price(self, client, auth_headers):
        response = client.post(
            "/proration",
            content='{"old_price": NaN, "new_price": 6000, "remaining_days": 15, "total_days": 30}',
            headers={**auth_headers, "Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "ProrationError"

    def test_sweep(self, client, auth_headers):
        response = client.post("/reservations/sweep", json={}, headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {"examined": 0, "refunded": 0, "failed": 0}

    def test_metrics(self, client, auth_headers):
        client.post(
            "/entitlements/enforce",
            json={"tenant_id": "t_m", "usage_type": "LABEL_PREVIEW", "quantity": 1},
            headers=auth_headers,
        )

        response = client.get("/metrics", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["gate"]["non_consuming"] == 1
