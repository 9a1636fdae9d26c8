"""
Habit models owned by the habit CRUD surface.

The billing engine only toggles Habit.is_archived on downgrade/restore. It
never deletes a habit and never touches completions.
"""

from sqlalchemy import (
    Boolean, Column, Date, ForeignKey, Index, Integer, String,
)

from habit_billing.models.base import Base, TimestampMixin, UTCDateTime, generate_uuid


class Habit(Base, TimestampMixin):
    """A user's habit. Soft-deleted via deleted_at."""

    __tablename__ = "habits"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )
    user_id = Column(String(36), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    sort_order = Column(Integer, nullable=False, default=0)
    is_archived = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(UTCDateTime(), nullable=True)

    __table_args__ = (
        Index("ix_habits_user_active", "user_id", "is_archived", "sort_order"),
    )

    def __repr__(self) -> str:
        return f"<Habit(id={self.id}, user_id={self.user_id}, archived={self.is_archived})>"


class HabitCompletion(Base, TimestampMixin):
    """A single check-off of a habit on a given day."""

    __tablename__ = "habit_completions"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )
    habit_id = Column(
        String(36),
        ForeignKey("habits.id"),
        nullable=False,
        index=True
    )
    user_id = Column(String(36), nullable=False, index=True)
    completed_on = Column(Date, nullable=False)
