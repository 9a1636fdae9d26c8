"""
Unit tests for DowngradeService.

Tests cover:
- Habit limit enforcement archives the tail in sort order
- Restore unarchives up to the new limit
- Downgrade is idempotent
- Soft-deleted habits and completions are never touched
"""

from datetime import timedelta

import pytest

from habit_billing.models import Habit, HabitCompletion
from habit_billing.services.downgrade_service import (
    REASON_GRACE_EXPIRED,
    DowngradeService,
)
from habit_billing.tests.helpers import add_habits, add_subscription, habit_states


@pytest.fixture
def service(db_session):
    return DowngradeService(db_session)


class TestEnforceHabitLimit:
    """Tests for archiving beyond a limit."""

    def test_archives_habits_beyond_limit(self, service, db_session):
        habits = add_habits(db_session, "user-1", 5)

        archived = service.enforce_habit_limit("user-1", 3)
        db_session.commit()

        assert archived == [habits[3].id, habits[4].id]
        assert habit_states(db_session, "user-1") == [False, False, False, True, True]

    def test_under_limit_is_noop(self, service, db_session):
        add_habits(db_session, "user-1", 2)

        assert service.enforce_habit_limit("user-1", 3) == []

    def test_unlimited_is_noop(self, service, db_session):
        add_habits(db_session, "user-1", 20)

        assert service.enforce_habit_limit("user-1", None) == []

    def test_sort_order_decides_what_is_kept(self, service, db_session):
        habits = add_habits(db_session, "user-1", 4)
        habits[0].sort_order = 10
        db_session.commit()

        archived = service.enforce_habit_limit("user-1", 3)

        assert archived == [habits[0].id]

    def test_soft_deleted_habits_are_ignored(self, service, db_session, clock):
        habits = add_habits(db_session, "user-1", 5)
        habits[0].deleted_at = clock.now
        db_session.commit()

        archived = service.enforce_habit_limit("user-1", 3)
        db_session.commit()

        assert archived == [habits[4].id]
        db_session.refresh(habits[0])
        assert habits[0].is_archived is False

    def test_other_users_are_untouched(self, service, db_session):
        add_habits(db_session, "user-1", 5)
        add_habits(db_session, "user-2", 5)

        service.enforce_habit_limit("user-1", 3)
        db_session.commit()

        assert habit_states(db_session, "user-2") == [False] * 5


class TestRestore:
    """Tests for unarchiving when the limit rises."""

    def test_restores_up_to_limit(self, service, db_session):
        add_habits(db_session, "user-1", 20)
        service.enforce_habit_limit("user-1", 3)
        db_session.commit()

        restored = service.restore("user-1", 15)
        db_session.commit()

        assert len(restored) == 12
        assert habit_states(db_session, "user-1") == [False] * 15 + [True] * 5

    def test_unlimited_restores_everything(self, service, db_session):
        add_habits(db_session, "user-1", 6)
        service.enforce_habit_limit("user-1", 3)
        db_session.commit()

        restored = service.restore("user-1", None)
        db_session.commit()

        assert len(restored) == 3
        assert habit_states(db_session, "user-1") == [False] * 6

    def test_restore_without_room_is_noop(self, service, db_session):
        add_habits(db_session, "user-1", 5)
        service.enforce_habit_limit("user-1", 3)
        db_session.commit()

        assert service.restore("user-1", 3) == []

    def test_restore_with_nothing_archived(self, service, db_session):
        add_habits(db_session, "user-1", 2)

        assert service.restore("user-1", 15) == []


class TestDowngrade:
    """Tests for subscription downgrade."""

    def test_downgrade_cancels_and_archives(self, service, db_session, clock):
        subscription = add_subscription(
            db_session, "user-1", tier="plus", status="past_due",
            grace_deadline=clock.now + timedelta(days=7),
        )
        add_habits(db_session, "user-1", 5)

        result = service.downgrade(subscription, REASON_GRACE_EXPIRED, clock.now)
        db_session.commit()

        assert subscription.status == "canceled"
        assert subscription.grace_deadline is None
        assert subscription.canceled_at == clock.now
        assert result.effective_tier == "free"
        assert result.previous_status == "past_due"
        assert len(result.archived_habit_ids) == 2
        assert habit_states(db_session, "user-1") == [False, False, False, True, True]

    def test_downgrade_is_idempotent(self, service, db_session, clock):
        subscription = add_subscription(db_session, "user-1", tier="plus")
        add_habits(db_session, "user-1", 5)
        service.downgrade(subscription, REASON_GRACE_EXPIRED, clock.now)
        db_session.commit()
        first_canceled_at = subscription.canceled_at

        clock.advance(hours=1)
        result = service.downgrade(subscription, REASON_GRACE_EXPIRED, clock.now)
        db_session.commit()

        assert result.already_canceled is True
        assert result.archived_habit_ids == []
        assert subscription.canceled_at == first_canceled_at
        assert habit_states(db_session, "user-1") == [False, False, False, True, True]

    def test_downgrade_never_deletes(self, service, db_session, clock):
        subscription = add_subscription(db_session, "user-1", tier="pro")
        add_habits(db_session, "user-1", 8)

        service.downgrade(subscription, REASON_GRACE_EXPIRED, clock.now)
        db_session.commit()

        assert db_session.query(Habit).filter(Habit.user_id == "user-1").count() == 8
        assert db_session.query(HabitCompletion).filter(
            HabitCompletion.user_id == "user-1"
        ).count() == 8
