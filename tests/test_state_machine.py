"""
Tests for the Subscription State Machine

The transition table is fixed; every one of the 49 status pairs is checked.
"""

import pytest
from datetime import timedelta

from entitlement_rail.core.errors import InvalidTransitionError, NotFoundError
from entitlement_rail.core.subscription import (
    SubscriptionStatus as S,
    allowed_transitions,
    assert_transition,
    features_for_status,
    is_valid_transition,
    status_priority,
    transition_description,
)
from entitlement_rail.persistence.repository import SubscriptionRepository, TenantRepository

EXPECTED = {
    S.TRIAL: {S.TRIALING, S.ACTIVE, S.PENDING, S.EXPIRED},
    S.TRIALING: {S.TRIAL, S.ACTIVE, S.PENDING, S.EXPIRED},
    S.PENDING: {S.ACTIVE, S.CANCELLED, S.EXPIRED},
    S.ACTIVE: {S.PAUSED, S.CANCELLED, S.EXPIRED, S.PENDING},
    S.PAUSED: {S.ACTIVE, S.CANCELLED, S.EXPIRED},
    S.CANCELLED: {S.ACTIVE, S.PENDING},
    S.EXPIRED: {S.ACTIVE, S.PENDING, S.TRIAL},
}

ALL_PAIRS = [(a, b) for a in S for b in S]


class TestTransitionTable:
    """Test the adjacency table."""

    def test_covers_49_pairs(self):
        assert len(ALL_PAIRS) == 49

    @pytest.mark.parametrize("source,target", ALL_PAIRS, ids=lambda s: s.name)
    def test_pair(self, source, target):
        assert is_valid_transition(source, target) is (target in EXPECTED[source])

    def test_self_transitions_rejected(self):
        for status in S:
            assert is_valid_transition(status, status) is False

    def test_string_statuses(self):
        assert is_valid_transition("active", "paused") is True
        assert is_valid_transition("ACTIVE", "TRIAL") is False
        assert is_valid_transition("trialing", "TRIAL") is True

    def test_unknown_status_rejected(self):
        assert is_valid_transition("ACTIVE", "SUSPENDED") is False
        assert is_valid_transition(None, "ACTIVE") is False

    def test_assert_transition_raises(self):
        with pytest.raises(InvalidTransitionError) as exc:
            assert_transition("CANCELLED", "PAUSED")

        assert exc.value.from_status == "CANCELLED"
        assert exc.value.to_status == "PAUSED"

    def test_assert_transition_returns_target(self):
        assert assert_transition("PAUSED", "active") is S.ACTIVE


class TestTransitionMetadata:
    """Test descriptions, features and ordering."""

    def test_description(self):
        assert transition_description("PAUSED", "ACTIVE") == "Subscription resumed"

    def test_description_fallback(self):
        assert transition_description("ACTIVE", "TRIAL") == "ACTIVE -> TRIAL"

    def test_features(self):
        assert "API access" in features_for_status("ACTIVE")
        assert features_for_status("bogus") == []

    def test_allowed_transitions_sorted_by_priority(self):
        assert allowed_transitions("ACTIVE") == [S.PENDING, S.PAUSED, S.CANCELLED, S.EXPIRED]

    def test_unknown_status_sorts_last(self):
        assert status_priority("bogus") > status_priority("EXPIRED")


class TestSubscriptionRepositoryTransition:
    """Test persisted transitions."""

    def test_transition_updates_subscription_and_tenant(self, temp_db, make_tenant):
        make_tenant("t_move")
        subs = SubscriptionRepository(temp_db)

        record = subs.transition("sub_t_move", "PAUSED")

        assert record.status == "PAUSED"
        assert TenantRepository(temp_db).get("t_move").subscription_status == "paused"

    def test_invalid_transition_leaves_row_unchanged(self, temp_db, make_tenant):
        make_tenant("t_stuck", status="cancelled")
        subs = SubscriptionRepository(temp_db)

        with pytest.raises(InvalidTransitionError):
            subs.transition("sub_t_stuck", "PAUSED")

        assert subs.get("sub_t_stuck").status == "CANCELLED"

    def test_transition_sets_grace_end(self, temp_db, make_tenant, now):
        make_tenant("t_grace")
        subs = SubscriptionRepository(temp_db)

        record = subs.transition("sub_t_grace", "EXPIRED", grace_period_end=now + timedelta(days=7))

        assert record.grace_period_end == now + timedelta(days=7)

    def test_unknown_subscription(self, temp_db):
        with pytest.raises(NotFoundError):
            SubscriptionRepository(temp_db).transition("sub_missing", "ACTIVE")
