"""
ENTITLEMENT RAIL - Production FastAPI Server

Quota accounting API for the serialization platform.

Endpoints:
- POST /entitlements/enforce - Check and consume quota for a metered action
- POST /entitlements/refund - Return quota after a failed generation
- GET /tenants/{id}/quota - Balances, active period and month usage
- POST /tenants/{id}/rollover - Apply yearly-plan rollover
- POST /tenants/{id}/addons - Credit purchased add-on quota
- POST /tenants/{id}/plan - Switch plan and reset base quota
- GET/POST /tenants/{id}/grace - Grace status / apply grace period
- POST /subscriptions/{id}/transition - Subscription status change
- POST /proration - Plan change proration
- POST /reservations/sweep - Refund stale reservations
- GET /metrics - Gate metrics
"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import structlog

from fastapi import FastAPI, HTTPException, Depends, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .. import __version__
from ..config import Settings, get_settings
from ..core.errors import (
    AuthorizationGap,
    EntitlementError,
    InvalidTransitionError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from ..logging import setup_logging

logger = structlog.get_logger()


# ============================================================================
# Pydantic Models
# ============================================================================

class EnforceRequest(BaseModel):
    """Request to check and consume quota."""
    tenant_id: str = Field(..., description="Billed tenant identifier")
    usage_type: str = Field(..., description="UNIT_LABEL, SSCC_LABEL, BOX_LABEL, CARTON_LABEL, PALLET_LABEL, ...")
    quantity: int = Field(..., description="Number of labels requested")
    metadata: Dict[str, Any] = Field(default_factory=dict)


class RefundRequest(BaseModel):
    """Request to return consumed quota."""
    tenant_id: str
    usage_type: str
    quantity: int


class AddonRequest(BaseModel):
    kind: str = Field(..., description="Quota kind: unit or sscc")
    quantity: int = Field(..., gt=0)


class PlanRequest(BaseModel):
    plan: str = Field(..., description="Plan code, e.g. growth_monthly")
    billing_cycle: Optional[str] = Field(None, description="monthly, quarterly or yearly; defaults to current")


class GraceRequest(BaseModel):
    subscription_id: str


class TransitionRequest(BaseModel):
    to_status: str = Field(..., description="Target status, e.g. ACTIVE, PAUSED, EXPIRED")


class ProrationRequest(BaseModel):
    old_price: float = Field(..., description="Current plan price in minor units")
    new_price: float = Field(..., description="New plan price in minor units")
    remaining_days: int
    total_days: int
    currency: str = Field(default="INR")


class SweepRequest(BaseModel):
    older_than_minutes: Optional[int] = Field(None, gt=0, description="Defaults to RESERVATION_SWEEP_MINUTES")


class EntitlementResponse(BaseModel):
    """Response from the entitlement gate."""
    allow: bool
    reason_code: str
    remaining: int
    consumed: int
    fallback_used: Optional[str]
    message: Optional[str]


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str
    backend: str
    uptime_seconds: float


# ============================================================================
# Application State
# ============================================================================

class AppState:
    """Application state container."""

    def __init__(self, settings: Settings):
        from ..persistence.database import get_database
        from ..persistence.ledger import QuotaLedger
        from ..persistence.repository import SubscriptionRepository, TenantRepository, UsageRepository
        from ..billing.grace import GracePeriodManager
        from ..enforcement.gate import EntitlementEnforcer, EnforcerConfig
        from ..enforcement.compensation import ReservationSaga

        self.settings = settings
        self.db = get_database(settings.database_url)
        self.ledger = QuotaLedger(self.db)
        self.tenants = TenantRepository(self.db)
        self.subscriptions = SubscriptionRepository(self.db)
        self.usage = UsageRepository(self.db)
        self.grace = GracePeriodManager(self.db)
        self.enforcer = EntitlementEnforcer(
            config=EnforcerConfig(fail_closed=settings.enforcer_fail_closed),
            db=self.db,
            ledger=self.ledger,
        )
        self.saga = ReservationSaga(self.enforcer)
        self.start_time = datetime.now(timezone.utc)


app_state: Optional[AppState] = None


# ============================================================================
# Application Factory
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    global app_state
    settings = get_settings()
    setup_logging()
    logger.info("entitlement_rail_starting", version=__version__)
    app_state = AppState(settings)
    yield
    logger.info("entitlement_rail_stopping")
    app_state = None


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Entitlement Rail",
        description="""
# Quota Accounting for Serialization

Every metered action is gated by an atomic ledger consumption.

## Features
- **Entitlement gate**: tenant status, plan limits and quota in one decision
- **Quota ledger**: base and add-on pools for unit and SSCC labels
- **Rollover**: yearly plans receive their monthly allotment idempotently
- **Compensation**: reservations are refunded when generation fails
        """,
        version=__version__,
        lifespan=lifespan,
    )

    # CORS middleware
    application.add_middleware(
        CORSMiddleware,
        allow_origins=get_settings().cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @application.exception_handler(EntitlementError)
    async def entitlement_error_handler(request: Request, exc: EntitlementError):
        if isinstance(exc, NotFoundError):
            status_code = 404
        elif isinstance(exc, InvalidTransitionError):
            status_code = 409
        elif isinstance(exc, ValidationError):
            status_code = 400
        elif isinstance(exc, AuthorizationGap):
            status_code = 403
        elif isinstance(exc, StoreError):
            status_code = 503
        else:
            status_code = 409
        logger.warning("request_failed", path=request.url.path, error=exc.message, status_code=status_code)
        return JSONResponse(status_code=status_code, content=exc.to_dict())

    return application


app = create_app()


# ============================================================================
# Dependencies
# ============================================================================

def get_state() -> AppState:
    """Get application state."""
    if app_state is None:
        raise HTTPException(status_code=503, detail="Application not initialized")
    return app_state


def verify_api_key(x_api_key: str = Header(..., alias="X-API-Key")) -> str:
    """Verify API key."""
    expected = get_settings().api_key or "dev-key-change-in-production"
    if x_api_key != expected:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return x_api_key


# ============================================================================
# Endpoints
# ============================================================================

@app.get("/health", response_model=HealthResponse, tags=["System"])
async def health_check(state: AppState = Depends(get_state)):
    """Health check endpoint."""
    uptime = (datetime.now(timezone.utc) - state.start_time).total_seconds()
    return HealthResponse(
        status="healthy",
        version=__version__,
        backend="postgres" if state.db.is_postgres else "sqlite",
        uptime_seconds=uptime,
    )


@app.post("/entitlements/enforce", response_model=EntitlementResponse, tags=["Entitlements"])
async def enforce_entitlement(
    request: EnforceRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """
    Check and consume quota for a metered action.

    Denials are returned as decisions with a reason code, not HTTP errors.
    """
    decision = state.enforcer.enforce(
        request.tenant_id,
        request.usage_type,
        request.quantity,
        request.metadata,
    )
    return EntitlementResponse(**decision.to_dict())


@app.post("/entitlements/refund", tags=["Entitlements"])
async def refund_entitlement(
    request: RefundRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Return quota after a downstream generation failure."""
    result = state.enforcer.refund(request.tenant_id, request.usage_type, request.quantity)
    if not result.ok and result.error in ("invalid_refund_input", "invalid_usage_type"):
        raise HTTPException(status_code=400, detail=result.error)
    return result.to_dict()


@app.get("/tenants/{tenant_id}/quota", tags=["Tenants"])
async def get_quota(
    tenant_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Balances, active billing period and this month's usage."""
    tenant = state.tenants.require(tenant_id)
    now = datetime.now(timezone.utc)
    period = state.ledger.periods.get_active(tenant_id, now)
    return {
        "tenant_id": tenant_id,
        "plan": tenant.subscription_plan,
        "billing_cycle": tenant.billing_cycle,
        "subscription_status": tenant.subscription_status,
        "balances": tenant.balances.to_dict(),
        "last_quota_rollover_at": (
            tenant.last_quota_rollover_at.isoformat() if tenant.last_quota_rollover_at else None
        ),
        "period": period.to_dict() if period else None,
        "usage": state.usage.get_current_usage(tenant_id, now),
    }


@app.post("/tenants/{tenant_id}/rollover", tags=["Tenants"])
async def apply_rollover(
    tenant_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Credit elapsed monthly allotments (yearly plans)."""
    from ..persistence.ledger import LedgerStatus

    result = state.ledger.apply_rollover(tenant_id)
    if result.status is LedgerStatus.TENANT_NOT_FOUND:
        raise HTTPException(status_code=404, detail=f"Tenant not found: {tenant_id}")
    return result.to_dict()


@app.post("/tenants/{tenant_id}/addons", tags=["Tenants"])
async def credit_addon(
    tenant_id: str,
    request: AddonRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Credit purchased add-on quota."""
    from ..persistence.ledger import LedgerStatus

    result = state.ledger.credit_addon(tenant_id, request.kind, request.quantity)
    if result.status is LedgerStatus.TENANT_NOT_FOUND:
        raise HTTPException(status_code=404, detail=f"Tenant not found: {tenant_id}")
    if not result.ok:
        raise HTTPException(status_code=400, detail=result.status.value)
    return result.to_dict()


@app.post("/tenants/{tenant_id}/plan", tags=["Tenants"])
async def activate_plan(
    tenant_id: str,
    request: PlanRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Switch the tenant's plan and reset its base quota."""
    from ..persistence.ledger import LedgerStatus

    result = state.ledger.activate_plan(tenant_id, request.plan, request.billing_cycle)
    if result.status is LedgerStatus.TENANT_NOT_FOUND:
        raise HTTPException(status_code=404, detail=f"Tenant not found: {tenant_id}")
    if not result.ok:
        raise HTTPException(status_code=400, detail=result.status.value)
    return result.to_dict()


@app.get("/tenants/{tenant_id}/grace", tags=["Subscriptions"])
async def get_grace(
    tenant_id: str,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Subscription status with grace window and access level."""
    return state.grace.status_with_grace(tenant_id)


@app.post("/tenants/{tenant_id}/grace", tags=["Subscriptions"])
async def apply_grace(
    tenant_id: str,
    request: GraceRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Expire the subscription and open its grace window."""
    result = state.grace.apply_grace_period(tenant_id, request.subscription_id)
    if not result.success:
        raise HTTPException(status_code=409, detail=result.error)
    return result.to_dict()


@app.post("/subscriptions/{subscription_id}/transition", tags=["Subscriptions"])
async def transition_subscription(
    subscription_id: str,
    request: TransitionRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Change subscription status through the transition table."""
    from ..core.subscription import transition_description

    before = state.subscriptions.require(subscription_id)
    record = state.subscriptions.transition(subscription_id, request.to_status)
    return {
        "subscription": record.to_dict(),
        "description": transition_description(before.status, record.status),
    }


@app.post("/proration", tags=["Billing"])
async def proration(
    request: ProrationRequest,
    api_key: str = Depends(verify_api_key),
):
    """Credit or charge for a mid-cycle plan change."""
    from ..billing.proration import calculate_proration_detailed, calculate_proration, format_proration

    result = calculate_proration(
        request.old_price, request.new_price, request.remaining_days, request.total_days
    )
    detailed = calculate_proration_detailed(
        request.old_price, request.new_price, request.remaining_days, request.total_days
    )
    return {
        **result.to_dict(),
        "breakdown": detailed["breakdown"],
        "formatted": format_proration(result, request.currency),
    }


@app.post("/reservations/sweep", tags=["Entitlements"])
async def sweep_reservations(
    request: SweepRequest,
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Refund reservations that were never committed nor refunded."""
    minutes = request.older_than_minutes or state.settings.reservation_sweep_minutes
    return state.saga.sweep_stale_reservations(timedelta(minutes=minutes))


@app.get("/metrics", tags=["System"])
async def get_metrics(
    state: AppState = Depends(get_state),
    api_key: str = Depends(verify_api_key),
):
    """Entitlement gate metrics."""
    return {"gate": state.enforcer.get_metrics()}


# ============================================================================
# Run
# ============================================================================

def run():
    """Run the server."""
    import uvicorn
    settings = get_settings()
    uvicorn.run(
        "entitlement_rail.api.server:app",
        host="0.0.0.0",
        port=settings.port,
    )


if __name__ == "__main__":
    run()
