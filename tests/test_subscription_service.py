"""
Tests for the subscription manager: lazy creation, usage gating,
plan upgrades from PayPal and feature access
"""

import pytest
from datetime import timedelta
from unittest.mock import MagicMock

from app.core.exceptions import StoreUnavailable
from app.models.subscription import PlanTier, SubscriptionStatus, UNLIMITED
from app.services.subscription_service import (
    Feature,
    FeatureAccess,
    SubscriptionManager,
    describe_subscription,
    trial_days_remaining,
)

USER_ID = "user_abc"


def assert_flags_consistent(record):
    """Calendar access and unlimited usage both follow the plan tier"""
    paid = record.plan_id != PlanTier.FREE
    assert record.has_calendar_access == paid
    assert (record.assignment_limit == UNLIMITED) == paid


def use_assignments(manager, user_id, count):
    for _ in range(count):
        manager.record_assignment_created(user_id)


class TestScenarios:
    """End-to-end flow of a free user hitting the cap and upgrading"""

    def test_scenario_a_new_user_gets_free_plan(self, manager):
        record = manager.get_or_create_subscription(USER_ID)

        assert record.plan_id == PlanTier.FREE
        assert record.assignments_used == 0
        assert record.assignment_limit == 4
        assert manager.can_create_assignment(USER_ID) is True

    def test_scenario_b_cap_reached_after_fourth_assignment(self, manager):
        use_assignments(manager, USER_ID, 3)
        assert manager.can_create_assignment(USER_ID) is True

        manager.record_assignment_created(USER_ID)

        assert manager.can_create_assignment(USER_ID) is False

    def test_scenario_c_upgrade_lifts_cap(self, manager):
        use_assignments(manager, USER_ID, 4)

        record = manager.apply_plan_upgrade(USER_ID, "basic", "SUB-123")

        assert manager.can_create_assignment(USER_ID) is True
        assert record.has_calendar_access is True
        assert record.assignment_limit == -1
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.provider_subscription_id == "SUB-123"
        assert record.assignments_used == 4

    def test_scenario_d_replayed_upgrade_is_noop(self, manager, clock):
        use_assignments(manager, USER_ID, 4)
        first = manager.apply_plan_upgrade(USER_ID, "basic", "SUB-123")

        clock.now = clock.now + timedelta(hours=1)
        second = manager.apply_plan_upgrade(USER_ID, "basic", "SUB-123")

        assert second == first
        assert second.upgraded_at == first.upgraded_at

    def test_scenario_e_unknown_feature_is_denied(self, manager):
        access = manager.check_feature_access(USER_ID, "nonexistent_feature")

        assert access == FeatureAccess.DENIED
        assert access.allowed is False


class TestLazyCreation:
    """Test default record creation"""

    def test_defaults(self, manager, clock):
        record = manager.get_or_create_subscription(USER_ID)

        assert record.status == SubscriptionStatus.FREE
        assert record.has_calendar_access is False
        assert record.provider_subscription_id is None
        assert record.upgraded_at is None
        assert record.trial_end_date == clock.now + timedelta(days=14)
        assert record.created_at == clock.now

    def test_second_call_returns_same_record(self, manager, clock):
        first = manager.get_or_create_subscription(USER_ID)
        clock.now = clock.now + timedelta(days=1)
        second = manager.get_or_create_subscription(USER_ID)

        assert first == second

    def test_creation_writes_history_and_event(self, manager, published_events):
        manager.get_or_create_subscription(USER_ID)
        manager.get_or_create_subscription(USER_ID)

        history = manager.get_subscription_history(USER_ID)
        assert [entry['action'] for entry in history] == ['created']
        assert [event.action for event in published_events] == ['created']

    def test_empty_user_id_rejected(self, manager):
        with pytest.raises(ValueError):
            manager.get_or_create_subscription("")

    def test_lost_creation_race_returns_existing_row(self, manager, store, session_factory, monkeypatch):
        """Another request inserts the row between our read and insert"""
        from app.services.subscription_store import SubscriptionStore
        from app.services.subscription_service import SubscriptionManager as OtherManager

        other_session = session_factory()
        try:
            winner = OtherManager(SubscriptionStore(other_session), analytics=MagicMock())
            real_get = store.get_by_key
            pending = [None]

            def racing_get(user_id):
                if pending:
                    winner.get_or_create_subscription(user_id)
                    return pending.pop()
                return real_get(user_id)

            monkeypatch.setattr(store, "get_by_key", racing_get)

            record = manager.get_or_create_subscription(USER_ID)

            assert record.plan_id == PlanTier.FREE
            assert record.assignments_used == 0
        finally:
            other_session.close()


class TestGating:
    """canCreateAssignment boundaries"""

    @pytest.mark.parametrize("used", [0, 1, 2, 3])
    def test_below_cap_allowed(self, manager, store, used):
        manager.get_or_create_subscription(USER_ID)
        store.update_by_key(USER_ID, {"assignments_used": used})

        assert manager.can_create_assignment(USER_ID) is True

    @pytest.mark.parametrize("used", [4, 5, 50])
    def test_at_or_above_cap_denied(self, manager, store, used):
        manager.get_or_create_subscription(USER_ID)
        store.update_by_key(USER_ID, {"assignments_used": used})

        assert manager.can_create_assignment(USER_ID) is False

    @pytest.mark.parametrize("plan", ["basic", "pro"])
    def test_paid_plan_always_allowed(self, manager, store, plan):
        manager.apply_plan_upgrade(USER_ID, plan, "SUB-1")
        store.update_by_key(USER_ID, {"assignments_used": 10_000})

        assert manager.can_create_assignment(USER_ID) is True

    def test_check_does_not_mutate(self, manager):
        manager.get_or_create_subscription(USER_ID)
        before = manager.get_or_create_subscription(USER_ID)

        manager.can_create_assignment(USER_ID)

        assert manager.get_or_create_subscription(USER_ID) == before


class TestUsage:
    """Test usage counting"""

    def test_usage_counts_each_call(self, manager):
        use_assignments(manager, USER_ID, 7)

        usage = manager.get_assignment_usage(USER_ID)
        assert usage == {'used': 7, 'limit': 4, 'remaining': 0, 'unlimited': False}

    def test_record_creates_missing_subscription(self, manager):
        manager.record_assignment_created("brand_new_user")

        assert manager.get_or_create_subscription("brand_new_user").assignments_used == 1

    def test_paid_usage_reports_unlimited(self, manager):
        manager.apply_plan_upgrade(USER_ID, "pro", "SUB-9")
        manager.record_assignment_created(USER_ID)

        usage = manager.get_assignment_usage(USER_ID)
        assert usage == {'used': 1, 'limit': UNLIMITED, 'remaining': UNLIMITED, 'unlimited': True}

    def test_record_publishes_usage_event(self, manager, published_events, mock_analytics):
        manager.record_assignment_created(USER_ID)

        assert published_events[-1].action == 'usage'
        mock_analytics.log_success.assert_any_call(
            action='record_assignment_created',
            user_id=USER_ID,
            parameters={'assignments_used': 1}
        )

    def test_reset_usage(self, manager, published_events):
        use_assignments(manager, USER_ID, 4)

        record = manager.reset_usage(USER_ID, reason="support ticket")

        assert record.assignments_used == 0
        assert manager.can_create_assignment(USER_ID) is True
        assert published_events[-1].action == 'usage_reset'
        entry = next(e for e in manager.get_subscription_history(USER_ID) if e['action'] == 'usage_reset')
        assert entry['details'] == {'previous_used': 4, 'reason': 'support ticket'}


class TestPlanUpgrade:
    """Test transitions driven by PayPal confirmations"""

    def test_upgrade_creates_missing_record(self, manager, clock):
        record = manager.apply_plan_upgrade("never_seen", "pro", "SUB-77")

        assert record.plan_id == PlanTier.PRO
        assert record.upgraded_at == clock.now

    def test_upgrade_accepts_tier_case_insensitively(self, manager):
        record = manager.apply_plan_upgrade(USER_ID, "BASIC", "SUB-1")

        assert record.plan_id == PlanTier.BASIC

    @pytest.mark.parametrize("plan", ["free", "enterprise", ""])
    def test_invalid_plan_rejected(self, manager, plan, mock_analytics):
        with pytest.raises(ValueError):
            manager.apply_plan_upgrade(USER_ID, plan, "SUB-1")

        mock_analytics.log_failure.assert_called_once()

    def test_missing_provider_id_rejected(self, manager):
        with pytest.raises(ValueError):
            manager.apply_plan_upgrade(USER_ID, "basic", "")

        assert manager.get_or_create_subscription(USER_ID).plan_id == PlanTier.FREE

    def test_duplicate_callback_writes_nothing(self, manager, published_events):
        manager.apply_plan_upgrade(USER_ID, "basic", "SUB-123")
        manager.apply_plan_upgrade(USER_ID, "basic", "SUB-123")

        actions = [entry['action'] for entry in manager.get_subscription_history(USER_ID)]
        assert actions.count('upgraded') == 1
        assert [e.action for e in published_events].count('upgraded') == 1

    def test_basic_to_pro_keeps_first_upgrade_time(self, manager, clock):
        basic = manager.apply_plan_upgrade(USER_ID, "basic", "SUB-1")
        clock.now = clock.now + timedelta(days=10)

        pro = manager.apply_plan_upgrade(USER_ID, "pro", "SUB-2")

        assert pro.plan_id == PlanTier.PRO
        assert pro.provider_subscription_id == "SUB-2"
        assert pro.upgraded_at == basic.upgraded_at

    def test_upgrade_history_entry(self, manager):
        manager.apply_plan_upgrade(USER_ID, "pro", "SUB-5")

        entry = next(e for e in manager.get_subscription_history(USER_ID) if e['action'] == 'upgraded')
        assert entry['from_plan'] == 'free'
        assert entry['to_plan'] == 'pro'
        assert entry['provider_subscription_id'] == 'SUB-5'

    def test_late_activation_of_cancelled_subscription_ignored(self, manager):
        manager.apply_plan_upgrade(USER_ID, "basic", "SUB-1")
        manager.apply_provider_cancellation(USER_ID, "SUB-1")

        record = manager.apply_plan_upgrade(USER_ID, "basic", "SUB-1")

        assert record.status == SubscriptionStatus.CANCELLED

    def test_concurrent_duplicate_callback_writes_once(self, manager, published_events, monkeypatch):
        stale = manager.get_or_create_subscription(USER_ID)
        manager.apply_plan_upgrade(USER_ID, "basic", "SUB-1")
        # Second delivery read the row before the first one committed
        monkeypatch.setattr(manager, "get_or_create_subscription", lambda user_id: stale)

        record = manager.apply_plan_upgrade(USER_ID, "basic", "SUB-1")

        assert record.status == SubscriptionStatus.ACTIVE
        monkeypatch.undo()
        actions = [entry['action'] for entry in manager.get_subscription_history(USER_ID)]
        assert actions.count('upgraded') == 1
        assert [e.action for e in published_events].count('upgraded') == 1

    def test_provider_id_of_another_account_rejected(self, manager, mock_analytics):
        manager.apply_plan_upgrade("alice", "basic", "SUB-1")

        with pytest.raises(ValueError):
            manager.apply_plan_upgrade(USER_ID, "pro", "SUB-1")

        assert manager.get_or_create_subscription(USER_ID).plan_id == PlanTier.FREE
        assert manager.get_or_create_subscription("alice").provider_subscription_id == "SUB-1"
        mock_analytics.log_failure.assert_called()

    def test_activation_after_early_cancellation_is_cancelled(self, manager):
        manager.apply_provider_cancellation(USER_ID, "SUB-9")

        record = manager.apply_plan_upgrade(USER_ID, "basic", "SUB-9")

        assert record.status == SubscriptionStatus.CANCELLED
        assert record.plan_id == PlanTier.BASIC
        assert_flags_consistent(record)

    def test_early_cancellation_does_not_replace_live_subscription(self, manager):
        manager.apply_plan_upgrade(USER_ID, "pro", "SUB-2")
        manager.apply_provider_cancellation(USER_ID, "SUB-OLD")

        record = manager.apply_plan_upgrade(USER_ID, "basic", "SUB-OLD")

        assert record.status == SubscriptionStatus.ACTIVE
        assert record.provider_subscription_id == "SUB-2"

    def test_late_activation_of_replaced_subscription_ignored(self, manager):
        manager.apply_plan_upgrade(USER_ID, "basic", "SUB-1")
        manager.apply_provider_cancellation(USER_ID, "SUB-1")
        manager.apply_plan_upgrade(USER_ID, "pro", "SUB-2")

        record = manager.apply_plan_upgrade(USER_ID, "basic", "SUB-1")

        assert record.plan_id == PlanTier.PRO
        assert record.provider_subscription_id == "SUB-2"

    def test_new_subscription_after_expiry_upgrades(self, manager):
        manager.apply_plan_upgrade(USER_ID, "basic", "SUB-1")
        manager.apply_provider_expiry(USER_ID, "SUB-1")

        record = manager.apply_plan_upgrade(USER_ID, "pro", "SUB-2")

        assert record.plan_id == PlanTier.PRO
        assert record.status == SubscriptionStatus.ACTIVE


class TestProviderCancellationAndExpiry:
    """Test cancellation and expiry reported by PayPal"""

    def test_cancellation_keeps_paid_access(self, manager):
        manager.apply_plan_upgrade(USER_ID, "pro", "SUB-1")

        record = manager.apply_provider_cancellation(USER_ID, "SUB-1")

        assert record.status == SubscriptionStatus.CANCELLED
        assert record.plan_id == PlanTier.PRO
        assert manager.check_feature_access(USER_ID, "pro_features") == FeatureAccess.GRANTED

    def test_cancellation_for_other_subscription_ignored(self, manager, published_events):
        manager.apply_plan_upgrade(USER_ID, "basic", "SUB-2")

        record = manager.apply_provider_cancellation(USER_ID, "SUB-OLD")

        assert record.status == SubscriptionStatus.ACTIVE
        assert published_events[-1].action == 'upgraded'

    def test_early_cancellation_recorded_once(self, manager, published_events):
        manager.apply_provider_cancellation(USER_ID, "SUB-9")
        manager.apply_provider_cancellation(USER_ID, "SUB-9")

        actions = [entry['action'] for entry in manager.get_subscription_history(USER_ID)]
        assert actions.count('cancelled_before_activation') == 1
        assert manager.get_or_create_subscription(USER_ID).status == SubscriptionStatus.FREE
        assert [e.action for e in published_events] == ['created']

    def test_early_expiry_blocks_activation(self, manager):
        manager.apply_provider_expiry(USER_ID, "SUB-9")

        record = manager.apply_plan_upgrade(USER_ID, "basic", "SUB-9")

        assert record.plan_id == PlanTier.FREE
        assert record.provider_subscription_id is None

    def test_expiry_reverts_to_free(self, manager):
        use_assignments(manager, USER_ID, 6)
        manager.apply_plan_upgrade(USER_ID, "basic", "SUB-1")

        record = manager.apply_provider_expiry(USER_ID, "SUB-1")

        assert record.plan_id == PlanTier.FREE
        assert record.status == SubscriptionStatus.EXPIRED
        assert record.assignment_limit == 4
        assert record.assignments_used == 6
        assert manager.can_create_assignment(USER_ID) is False

    def test_expiry_is_idempotent(self, manager):
        manager.apply_plan_upgrade(USER_ID, "basic", "SUB-1")
        first = manager.apply_provider_expiry(USER_ID, "SUB-1")
        second = manager.apply_provider_expiry(USER_ID, "SUB-1")

        assert first == second
        actions = [entry['action'] for entry in manager.get_subscription_history(USER_ID)]
        assert actions.count('expired') == 1


class TestFeatureAccess:
    """Feature table per plan"""

    @pytest.mark.parametrize("feature", list(Feature))
    def test_free_user_has_no_features(self, manager, feature):
        assert manager.check_feature_access(USER_ID, feature.value) == FeatureAccess.DENIED

    @pytest.mark.parametrize("feature,expected", [
        ("calendar", FeatureAccess.GRANTED),
        ("unlimited_assignments", FeatureAccess.GRANTED),
        ("advanced_export", FeatureAccess.GRANTED),
        ("basic_features", FeatureAccess.GRANTED),
        ("pro_features", FeatureAccess.DENIED),
    ])
    def test_basic_user(self, manager, feature, expected):
        manager.apply_plan_upgrade(USER_ID, "basic", "SUB-1")

        assert manager.check_feature_access(USER_ID, feature) == expected

    @pytest.mark.parametrize("feature", list(Feature))
    def test_pro_user_has_every_feature(self, manager, feature):
        manager.apply_plan_upgrade(USER_ID, "pro", "SUB-1")

        assert manager.check_feature_access(USER_ID, feature.value) == FeatureAccess.GRANTED

    def test_empty_user_denied(self, manager):
        assert manager.check_feature_access("", "calendar") == FeatureAccess.DENIED

    def test_store_outage_is_unknown_and_locked(self, mock_analytics, clock):
        store = MagicMock()
        store.get_by_key.side_effect = StoreUnavailable("down")
        manager = SubscriptionManager(store, analytics=mock_analytics, clock=clock)

        access = manager.check_feature_access(USER_ID, "calendar")

        assert access == FeatureAccess.UNKNOWN
        assert access.allowed is False


class TestFlagConsistency:
    """Calendar access and assignment limit follow plan_id after every operation"""

    def test_flags_hold_through_lifecycle(self, manager):
        steps = [
            lambda: manager.get_or_create_subscription(USER_ID),
            lambda: manager.record_assignment_created(USER_ID) or manager.get_or_create_subscription(USER_ID),
            lambda: manager.apply_plan_upgrade(USER_ID, "basic", "SUB-1"),
            lambda: manager.apply_plan_upgrade(USER_ID, "basic", "SUB-1"),
            lambda: manager.apply_plan_upgrade(USER_ID, "pro", "SUB-2"),
            lambda: manager.apply_provider_cancellation(USER_ID, "SUB-2"),
            lambda: manager.apply_provider_expiry(USER_ID, "SUB-2"),
            lambda: manager.reset_usage(USER_ID),
        ]
        for step in steps:
            assert_flags_consistent(step())


class TestStoreOutage:
    """StoreUnavailable propagates out of gating and mutation paths"""

    @pytest.fixture
    def down_manager(self, mock_analytics, clock):
        store = MagicMock()
        store.get_by_key.side_effect = StoreUnavailable("timeout")
        return SubscriptionManager(store, analytics=mock_analytics, clock=clock)

    def test_can_create_assignment_raises(self, down_manager):
        with pytest.raises(StoreUnavailable):
            down_manager.can_create_assignment(USER_ID)

    def test_record_assignment_created_raises(self, down_manager, mock_analytics):
        with pytest.raises(StoreUnavailable):
            down_manager.record_assignment_created(USER_ID)

        mock_analytics.log_failure.assert_called_once()

    def test_upgrade_raises(self, down_manager):
        with pytest.raises(StoreUnavailable):
            down_manager.apply_plan_upgrade(USER_ID, "basic", "SUB-1")


class TestDescribeSubscription:
    """Display view used by plan badges and the paywall"""

    def test_free_user_in_trial(self, manager, clock):
        record = manager.get_or_create_subscription(USER_ID)

        view = describe_subscription(record, clock.now + timedelta(days=3, hours=1))

        assert view['badge'] == 'Free'
        assert view['trial_days_remaining'] == 11
        assert view['trial_expired'] is False
        assert view['requires_payment_method'] is False
        assert view['usage']['remaining'] == 4

    def test_trial_over(self, manager, clock):
        record = manager.get_or_create_subscription(USER_ID)

        assert trial_days_remaining(record, clock.now + timedelta(days=15)) == 0
        view = describe_subscription(record, clock.now + timedelta(days=15))
        assert view['trial_expired'] is True

    def test_capped_user_requires_payment(self, manager, clock):
        use_assignments(manager, USER_ID, 4)

        view = describe_subscription(manager.get_or_create_subscription(USER_ID), clock.now)

        assert view['requires_payment_method'] is True

    def test_paid_user_has_no_trial(self, manager, clock):
        record = manager.apply_plan_upgrade(USER_ID, "pro", "SUB-1")

        view = describe_subscription(record, clock.now)

        assert view['badge'] == 'Pro'
        assert view['plan_name'] == 'Pro Plan'
        assert view['trial_end_date'] is None
        assert view['trial_days_remaining'] == 0
        assert view['upgraded_at'] == clock.now.isoformat()
