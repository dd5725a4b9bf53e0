"""
Tests for Reservation and Compensation

Reserve -> generate -> commit, with refunds on failure and a sweep for
reservations that were never settled.
"""

import pytest
from datetime import timedelta

from entitlement_rail.core.errors import ReasonCode, StoreError
from entitlement_rail.core.usage_types import UsageType
from entitlement_rail.enforcement.compensation import COMMITTED, REFUNDED, RESERVED, ReservationSaga
from entitlement_rail.enforcement.gate import EntitlementEnforcer, RefundResult


@pytest.fixture
def saga(temp_db):
    return ReservationSaga(EntitlementEnforcer(db=temp_db))


def remaining(saga, tenant_id, kind):
    return saga.enforcer.ledger.get_balances(tenant_id).remaining(kind)


class TestRun:
    """Test the full reserve/generate/commit flow."""

    def test_success_commits(self, saga, make_tenant, now):
        make_tenant("t_gen")

        outcome = saga.run(
            "t_gen",
            [(UsageType.UNIT_LABEL, 500), ("BOX_LABEL", 100)],
            generate=lambda: "labels.zip",
            now=now,
        )

        assert outcome.ok is True
        assert outcome.result == "labels.zip"
        assert [r.status for r in outcome.reservations] == [COMMITTED, COMMITTED]
        for record in outcome.reservations:
            assert saga.reservations.get(record.reservation_id).status == COMMITTED
        assert remaining(saga, "t_gen", "unit") == 199_500
        assert remaining(saga, "t_gen", "sscc") == 22_400

    def test_failure_refunds_and_reraises(self, saga, make_tenant, now):
        make_tenant("t_fail")

        def generate():
            raise RuntimeError("printer offline")

        with pytest.raises(RuntimeError):
            saga.run("t_fail", [("UNIT_LABEL", 500), ("PALLET_LABEL", 10)], generate, now=now)

        assert remaining(saga, "t_fail", "unit") == 200_000
        assert remaining(saga, "t_fail", "sscc") == 22_500

    def test_denial_skips_generation(self, saga, make_tenant, now):
        make_tenant("t_denied")
        calls = []

        outcome = saga.run(
            "t_denied",
            [("UNIT_LABEL", 500), ("SSCC_LABEL", 1_000_000)],
            generate=lambda: calls.append(1),
            now=now,
        )

        assert outcome.ok is False
        assert outcome.denial.reason_code is ReasonCode.QUOTA_EXCEEDED
        assert calls == []
        assert remaining(saga, "t_denied", "unit") == 200_000


class TestReserve:
    """Test reservation rows."""

    def test_non_consuming_lines_not_reserved(self, saga, make_tenant, now):
        make_tenant("t_preview")

        outcome = saga.reserve("t_preview", [("LABEL_PREVIEW", 10), ("UNIT_LABEL", 1)], now=now)

        assert outcome.ok is True
        assert len(outcome.reservations) == 1
        assert outcome.reservations[0].quota_kind == "unit"
        assert outcome.reservations[0].status == RESERVED

    def test_compensate_ignores_settled_rows(self, saga, make_tenant, now):
        make_tenant("t_settled")
        outcome = saga.run("t_settled", [("UNIT_LABEL", 40)], generate=lambda: None, now=now)

        assert saga.compensate("t_settled", outcome.reservations) == 0
        assert remaining(saga, "t_settled", "unit") == 199_960

    def test_compensate_is_single_shot(self, saga, make_tenant, now):
        make_tenant("t_once")
        outcome = saga.reserve("t_once", [("UNIT_LABEL", 40)], now=now)

        assert saga.compensate("t_once", outcome.reservations) == 1
        assert saga.compensate("t_once", outcome.reservations) == 0
        assert remaining(saga, "t_once", "unit") == 200_000
        assert outcome.reservations[0].status == REFUNDED


class TestSweep:
    """Test the stale reservation sweep."""

    def test_refunds_stale_rows(self, saga, make_tenant, now):
        make_tenant("t_stale")
        saga.reserve("t_stale", [("UNIT_LABEL", 250)], now=now - timedelta(hours=1))
        saga.reserve("t_stale", [("UNIT_LABEL", 5)], now=now)

        stats = saga.sweep_stale_reservations(timedelta(minutes=30), now=now)

        assert stats == {"examined": 1, "refunded": 1, "failed": 0}
        assert remaining(saga, "t_stale", "unit") == 199_995

    def test_sweep_twice_refunds_once(self, saga, make_tenant, now):
        make_tenant("t_sweep_twice")
        saga.reserve("t_sweep_twice", [("CARTON_LABEL", 20)], now=now - timedelta(hours=2))

        saga.sweep_stale_reservations(timedelta(minutes=30), now=now)
        stats = saga.sweep_stale_reservations(timedelta(minutes=30), now=now)

        assert stats["examined"] == 0
        assert remaining(saga, "t_sweep_twice", "sscc") == 22_500

    def test_failed_refund_is_reopened(self, saga, make_tenant, now, monkeypatch):
        make_tenant("t_reopen")
        outcome = saga.reserve("t_reopen", [("UNIT_LABEL", 10)], now=now - timedelta(hours=1))
        monkeypatch.setattr(
            saga.enforcer, "refund", lambda *args, **kwargs: RefundResult(ok=False, error="store down")
        )

        stats = saga.sweep_stale_reservations(timedelta(minutes=30), now=now)

        assert stats == {"examined": 1, "refunded": 0, "failed": 1}
        assert saga.reservations.get(outcome.reservations[0].reservation_id).status == RESERVED


class TestCommit:
    """Test committing reservations made with reserve()."""

    def test_committed_rows_survive_sweep(self, saga, make_tenant, now):
        make_tenant("t_manual")
        outcome = saga.reserve("t_manual", [("UNIT_LABEL", 1_000)], now=now)

        assert saga.commit(outcome.reservations) == 1
        stats = saga.sweep_stale_reservations(timedelta(minutes=30), now=now + timedelta(hours=1))

        assert stats["examined"] == 0
        assert outcome.reservations[0].status == COMMITTED
        assert remaining(saga, "t_manual", "unit") == 199_000

    def test_commit_after_refund_is_skipped(self, saga, make_tenant, now):
        make_tenant("t_late_commit")
        outcome = saga.reserve("t_late_commit", [("UNIT_LABEL", 10)], now=now)
        saga.compensate("t_late_commit", outcome.reservations)

        assert saga.commit(outcome.reservations) == 0
        assert saga.reservations.get(outcome.reservations[0].reservation_id).status == REFUNDED

    def test_commit_store_error_does_not_fail_run(self, saga, make_tenant, now, monkeypatch):
        make_tenant("t_commit_down")

        def settle(reservation_id, status):
            raise StoreError("store unavailable")

        monkeypatch.setattr(saga.reservations, "settle", settle)

        outcome = saga.run("t_commit_down", [("UNIT_LABEL", 20)], generate=lambda: "ok", now=now)

        assert outcome.ok is True
        assert outcome.result == "ok"
        assert outcome.reservations[0].status == RESERVED
        assert remaining(saga, "t_commit_down", "unit") == 199_980


class TestRefundPeriod:
    """Refunds lower the counters of the period the reservation was made in."""

    def test_sweep_refunds_into_original_period(self, saga, make_tenant, now):
        make_tenant("t_old_period")
        saga.reserve("t_old_period", [("UNIT_LABEL", 250)], now=now)
        later = now + timedelta(days=40)
        saga.enforcer.enforce("t_old_period", "UNIT_LABEL", 7, now=later)

        saga.sweep_stale_reservations(timedelta(minutes=30), now=later)

        periods = saga.enforcer.ledger.periods
        assert periods.get_active("t_old_period", now).unit_labels_used == 0
        assert periods.get_active("t_old_period", later).unit_labels_used == 7
