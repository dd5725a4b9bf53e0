"""
Reservation and Compensation

Generation runs outside the ledger transaction, so a request is handled as
reserve -> attempt -> compensate:

    saga = ReservationSaga(enforcer)
    outcome = saga.run("tenant_1", [(UsageType.UNIT_LABEL, 500)], generate_labels)

or step by step when generation is driven elsewhere:

    outcome = saga.reserve("tenant_1", lines)
    try:
        generate_labels()
    except Exception:
        saga.compensate("tenant_1", outcome.reservations)
        raise
    saga.commit(outcome.reservations)

Each consumed line is written to `reservations` as RESERVED. Success marks the
rows COMMITTED; a failure refunds every reserved line and marks it REFUNDED.
Rows left RESERVED are treated as abandoned and refunded by the sweep.
Rows are claimed (RESERVED -> REFUNDED) before the refund is issued, so the
compensation path and the stale-reservation sweep never refund the same row
twice. A refund that fails puts the row back to RESERVED for the next sweep.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple
import uuid
import structlog

from ..core.errors import ReasonCode, StoreError
from ..core.period import utcnow
from ..core.usage_types import USAGE_TO_QUOTA_KIND, parse_usage_type
from ..persistence.models import ReservationRecord
from ..persistence.repository import ReservationRepository
from .gate import EntitlementDecision, EntitlementEnforcer

logger = structlog.get_logger()

RESERVED = "RESERVED"
COMMITTED = "COMMITTED"
REFUNDED = "REFUNDED"

ReservationLine = Tuple[Any, int]


@dataclass
class ReservationOutcome:
    """Result of reserving (and optionally generating) a batch of lines."""
    ok: bool
    reservations: List[ReservationRecord] = field(default_factory=list)
    denial: Optional[EntitlementDecision] = None
    result: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "reservations": [r.to_dict() for r in self.reservations],
            "denial": self.denial.to_dict() if self.denial else None,
        }


class ReservationSaga:
    """Reserve quota ahead of generation and compensate on failure."""

    def __init__(
        self,
        enforcer: Optional[EntitlementEnforcer] = None,
        reservations: Optional[ReservationRepository] = None,
    ):
        self.enforcer = enforcer or EntitlementEnforcer()
        self.reservations = reservations or ReservationRepository(self.enforcer.db)

    def reserve(
        self,
        tenant_id: str,
        lines: Iterable[ReservationLine],
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> ReservationOutcome:
        """
        Enforce every line. If any line is denied, lines already reserved are
        refunded and the denial is returned.
        """
        now = now or utcnow()
        reserved: List[ReservationRecord] = []

        for usage_type, quantity in lines:
            decision = self.enforcer.enforce(tenant_id, usage_type, quantity, metadata, now)
            if not decision.allow:
                logger.info(
                    "reservation_denied",
                    tenant_id=tenant_id,
                    usage_type=str(usage_type),
                    reason_code=decision.reason_code.value,
                    rolled_back=len(reserved),
                )
                self.compensate(tenant_id, reserved)
                return ReservationOutcome(ok=False, denial=decision)

            if decision.reason_code is ReasonCode.NON_CONSUMING:
                continue

            parsed = parse_usage_type(usage_type)
            record = ReservationRecord(
                reservation_id=f"rsv_{uuid.uuid4().hex[:16]}",
                tenant_id=tenant_id,
                usage_type=parsed.value,
                quota_kind=USAGE_TO_QUOTA_KIND[parsed].value,
                quantity=quantity,
                status=RESERVED,
                created_at=now,
            )
            try:
                self.reservations.create(record)
            except Exception:
                self.enforcer.refund(tenant_id, parsed, quantity)
                self.compensate(tenant_id, reserved)
                raise
            reserved.append(record)

        return ReservationOutcome(ok=True, reservations=reserved)

    def run(
        self,
        tenant_id: str,
        lines: Iterable[ReservationLine],
        generate: Callable[[], Any],
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> ReservationOutcome:
        """
        Reserve, generate, then commit. Any exception from generate() refunds
        every reservation and is re-raised.
        """
        outcome = self.reserve(tenant_id, lines, metadata, now)
        if not outcome.ok:
            return outcome

        try:
            outcome.result = generate()
        except Exception as e:
            logger.warning(
                "generation_failed",
                tenant_id=tenant_id,
                reservations=len(outcome.reservations),
                error=str(e),
            )
            self.compensate(tenant_id, outcome.reservations)
            raise

        self.commit(outcome.reservations)
        return outcome

    def commit(self, reservations: List[ReservationRecord]) -> int:
        """
        Mark reservations COMMITTED after a successful generation.

        Store failures are logged, not raised: the labels already exist and
        the quota stays consumed. Returns how many rows were committed.
        """
        committed = 0
        for record in reservations:
            try:
                settled = self.reservations.settle(record.reservation_id, COMMITTED)
            except StoreError as e:
                logger.error(
                    "reservation_commit_failed",
                    reservation_id=record.reservation_id,
                    tenant_id=record.tenant_id,
                    error=e.message,
                )
                continue
            if settled:
                record.status = COMMITTED
                committed += 1
            else:
                logger.warning(
                    "reservation_commit_skipped",
                    reservation_id=record.reservation_id,
                    tenant_id=record.tenant_id,
                )
        return committed

    def compensate(self, tenant_id: str, reservations: List[ReservationRecord]) -> int:
        """Refund each reservation. Returns how many were refunded."""
        refunded = 0
        for record in reservations:
            try:
                if self._refund_one(record):
                    refunded += 1
            except StoreError as e:
                logger.error(
                    "compensation_store_error",
                    reservation_id=record.reservation_id,
                    tenant_id=tenant_id,
                    error=e.message,
                )
        return refunded

    def sweep_stale_reservations(
        self,
        older_than: timedelta,
        now: Optional[datetime] = None,
    ) -> Dict[str, int]:
        """Refund reservations still RESERVED after the cutoff."""
        now = now or utcnow()
        stale = self.reservations.list_stale(now - older_than)
        refunded = 0
        for record in stale:
            if self._refund_one(record):
                refunded += 1

        logger.info(
            "reservations_swept",
            examined=len(stale),
            refunded=refunded,
            cutoff=(now - older_than).isoformat(),
        )
        return {"examined": len(stale), "refunded": refunded, "failed": len(stale) - refunded}

    def _refund_one(self, record: ReservationRecord) -> bool:
        if not self.reservations.settle(record.reservation_id, REFUNDED):
            return False

        result = self.enforcer.refund(
            record.tenant_id, record.usage_type, record.quantity, now=record.created_at
        )
        if not result.ok:
            logger.error(
                "compensation_refund_failed",
                reservation_id=record.reservation_id,
                tenant_id=record.tenant_id,
                quantity=record.quantity,
                error=result.error,
            )
            self.reservations.reopen(record.reservation_id)
            return False

        record.status = REFUNDED
        logger.info(
            "reservation_refunded",
            reservation_id=record.reservation_id,
            tenant_id=record.tenant_id,
            quantity=record.quantity,
        )
        return True
