"""
Habit repository used by downgrade and restore.

Only the is_archived flag is ever written. Soft-deleted habits
(deleted_at set) are invisible to every query here.
"""

import logging
from typing import Iterable, List

from sqlalchemy.orm import Session

from habit_billing.models.habit import Habit

logger = logging.getLogger(__name__)


class HabitRepository:
    """Habit data access on the caller's session."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def _ordered(self, user_id: str, archived: bool):
        return self.db.query(Habit).filter(
            Habit.user_id == user_id,
            Habit.deleted_at.is_(None),
            Habit.is_archived.is_(archived),
        ).order_by(Habit.sort_order.asc(), Habit.created_at.asc(), Habit.id.asc())

    def list_active_habits(self, user_id: str) -> List[Habit]:
        """Non-deleted, unarchived habits in (sort_order, created_at) order."""
        return self._ordered(user_id, False).all()

    def list_archived_habits(self, user_id: str) -> List[Habit]:
        """Non-deleted, archived habits in (sort_order, created_at) order."""
        return self._ordered(user_id, True).all()

    def count_active_habits(self, user_id: str) -> int:
        return self._ordered(user_id, False).count()

    def set_archived(self, habit_ids: Iterable[str], archived: bool) -> int:
        """
        Set is_archived on the given habits.

        Args:
            habit_ids: Habit IDs to update
            archived: New flag value

        Returns:
            Number of rows updated
        """
        habit_ids = list(habit_ids)
        if not habit_ids:
            return 0

        updated = self.db.query(Habit).filter(
            Habit.id.in_(habit_ids),
            Habit.deleted_at.is_(None),
        ).update({Habit.is_archived: archived}, synchronize_session="fetch")

        logger.debug(
            "Habits archive flag updated",
            extra={"count": updated, "archived": archived},
        )
        return updated
