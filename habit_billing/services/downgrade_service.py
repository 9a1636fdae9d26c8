"""
Downgrade and restore of a user's paid state.

Downgrade moves a subscription row to canceled and archives habits beyond
the habit limit of the user's resulting effective tier. Restore unarchives
habits when the limit goes back up.

CRITICAL: Nothing is ever deleted. Habits are only archived/unarchived and
completions are never touched, so a later upgrade restores everything.
All methods run inside the caller's transaction and never commit.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from habit_billing.entitlements.service import effective_tier_for_user, habit_limit_for_tier
from habit_billing.models.subscription import Subscription, SubscriptionStatus
from habit_billing.repositories.habit_repository import HabitRepository

logger = logging.getLogger(__name__)

REASON_GRACE_EXPIRED = "grace_period_expired"
REASON_SUBSCRIPTION_DELETED = "subscription_deleted"
REASON_SUBSCRIPTION_ENDED = "subscription_ended"


@dataclass
class DowngradeResult:
    """Outcome of a downgrade."""
    subscription_id: str
    user_id: str
    reason: str
    previous_status: str
    effective_tier: str
    archived_habit_ids: List[str] = field(default_factory=list)

    @property
    def already_canceled(self) -> bool:
        return self.previous_status == SubscriptionStatus.CANCELED.value


class DowngradeService:
    """
    Applies downgrades and restores on the caller's session.

    Usage:
        service = DowngradeService(db)
        result = service.downgrade(subscription, reason="grace_period_expired", now=now)
        db.commit()
        cache.invalidate(result.user_id)
    """

    def __init__(self, db_session: Session):
        self.db = db_session
        self.habits = HabitRepository(db_session)

    def enforce_habit_limit(self, user_id: str, limit: Optional[int]) -> List[str]:
        """
        Archive unarchived habits beyond the limit.

        Habits are kept in (sort_order, created_at) order; the tail is
        archived.

        Args:
            user_id: User ID
            limit: Max unarchived habits, None for unlimited

        Returns:
            IDs of habits archived by this call
        """
        if limit is None:
            return []

        active = self.habits.list_active_habits(user_id)
        excess = [habit.id for habit in active[max(limit, 0):]]
        if not excess:
            return []

        self.habits.set_archived(excess, True)
        logger.info(
            "Archived habits over tier limit",
            extra={"user_id": user_id, "limit": limit, "archived": len(excess)},
        )
        return excess

    def restore(self, user_id: str, limit: Optional[int]) -> List[str]:
        """
        Unarchive habits until the unarchived count reaches the limit.

        Args:
            user_id: User ID
            limit: Max unarchived habits, None for unlimited

        Returns:
            IDs of habits unarchived by this call
        """
        archived = self.habits.list_archived_habits(user_id)
        if not archived:
            return []

        if limit is None:
            to_restore = archived
        else:
            room = limit - self.habits.count_active_habits(user_id)
            if room <= 0:
                return []
            to_restore = archived[:room]

        restored = [habit.id for habit in to_restore]
        self.habits.set_archived(restored, False)
        logger.info(
            "Restored archived habits",
            extra={"user_id": user_id, "limit": limit, "restored": len(restored)},
        )
        return restored

    def downgrade(
        self,
        subscription: Subscription,
        reason: str,
        now: datetime,
    ) -> DowngradeResult:
        """
        Cancel a subscription row and enforce the resulting habit limit.

        Idempotent: a second call on a canceled row changes nothing.

        Args:
            subscription: Row to cancel, ideally locked FOR UPDATE
            reason: Audit reason (e.g. grace_period_expired)
            now: Transition time

        Returns:
            DowngradeResult
        """
        previous_status = subscription.status

        if previous_status != SubscriptionStatus.CANCELED.value:
            subscription.status = SubscriptionStatus.CANCELED.value
            subscription.grace_deadline = None
            if subscription.canceled_at is None:
                subscription.canceled_at = now
        else:
            subscription.grace_deadline = None

        # Another live row may still grant access
        self.db.flush()
        tier = effective_tier_for_user(self.db, subscription.user_id)
        archived = self.enforce_habit_limit(
            subscription.user_id, habit_limit_for_tier(self.db, tier)
        )

        logger.info(
            "Subscription downgraded",
            extra={
                "subscription_id": subscription.id,
                "user_id": subscription.user_id,
                "reason": reason,
                "previous_status": previous_status,
                "effective_tier": tier,
                "archived": len(archived),
            },
        )

        return DowngradeResult(
            subscription_id=subscription.id,
            user_id=subscription.user_id,
            reason=reason,
            previous_status=previous_status,
            effective_tier=tier,
            archived_habit_ids=archived,
        )
