"""
Seat Limits

A tenant may activate up to plan seats plus purchased extra seats.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional
import structlog

from ..core.period import normalize_plan_type
from ..core.plans import PlanQuotas
from ..persistence.database import Database, get_database
from ..persistence.models import AuditLogRecord
from ..persistence.repository import AuditRepository, SeatRepository, TenantRepository

logger = structlog.get_logger()


@dataclass
class SeatLimits:
    max_seats: int
    used_seats: int
    seats_from_plan: int
    seats_from_addons: int

    @property
    def available_seats(self) -> int:
        return max(0, self.max_seats - self.used_seats)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_seats": self.max_seats,
            "used_seats": self.used_seats,
            "available_seats": self.available_seats,
            "seats_from_plan": self.seats_from_plan,
            "seats_from_addons": self.seats_from_addons,
        }


class SeatManager:
    """Seat limit checks and activation."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()
        self.tenants = TenantRepository(self.db)
        self.seats = SeatRepository(self.db)
        self.audit = AuditRepository(self.db)

    def get_seat_limits(self, tenant_id: str) -> SeatLimits:
        """
        Raises:
            NotFoundError: unknown tenant
        """
        tenant = self.tenants.require(tenant_id)
        tier = normalize_plan_type(tenant.subscription_plan)
        from_plan = PlanQuotas.for_tier(tier).max_seats if tier else 1
        from_addons = tenant.extra_user_seats
        return SeatLimits(
            max_seats=from_plan + from_addons,
            used_seats=self.seats.count_active(tenant_id),
            seats_from_plan=from_plan,
            seats_from_addons=from_addons,
        )

    def can_create_seat(self, tenant_id: str) -> Dict[str, Any]:
        limits = self.get_seat_limits(tenant_id)
        if limits.used_seats >= limits.max_seats:
            self._record_limit_reached(tenant_id, limits)
            return {
                "allowed": False,
                "reason": f"Seat limit reached. Used: {limits.used_seats}, Allowed: {limits.max_seats}",
                **limits.to_dict(),
            }
        return {"allowed": True, **limits.to_dict()}

    def activate_seat(self, tenant_id: str, user_ref: Optional[str] = None) -> Optional[str]:
        """Activate a seat if one is available. Returns the seat id or None."""
        limits = self.get_seat_limits(tenant_id)
        seat_id = self.seats.activate_if_available(tenant_id, limits.max_seats, user_ref)
        if seat_id is None:
            self._record_limit_reached(tenant_id, self.get_seat_limits(tenant_id))
            return None
        logger.info("seat_activated", tenant_id=tenant_id, seat_id=seat_id)
        return seat_id

    def deactivate_seat(self, seat_id: str) -> bool:
        return self.seats.deactivate(seat_id)

    def _record_limit_reached(self, tenant_id: str, limits: SeatLimits) -> None:
        logger.warning(
            "seat_limit_reached",
            tenant_id=tenant_id,
            max_seats=limits.max_seats,
            used_seats=limits.used_seats,
        )
        try:
            self.audit.write(AuditLogRecord(
                action="SEAT_LIMIT_REACHED",
                tenant_id=tenant_id,
                metadata={
                    "max_seats": limits.max_seats,
                    "used_seats": limits.used_seats,
                    "available_seats": limits.available_seats,
                },
            ))
        except Exception as e:
            logger.warning("audit_write_failed", action="SEAT_LIMIT_REACHED", error=str(e))
