"""
Subscription repository for data access operations.

Encapsulates all database operations for subscriptions with:
- Row locking (SELECT ... FOR UPDATE) for read-modify-write transitions
- Consistent live-row lookups
- Grace-period sweep queries
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from habit_billing.models.subscription import (
    LIVE_STATUSES, Subscription, SubscriptionStatus,
)

logger = logging.getLogger(__name__)


class SubscriptionRepository:
    """
    Repository for subscription data access.

    All methods run on the caller's session and never commit.
    """

    def __init__(self, db_session: Session):
        """
        Initialize repository with database session.

        Args:
            db_session: SQLAlchemy database session
        """
        self.db = db_session

    def _query(self, for_update: bool):
        query = self.db.query(Subscription)
        if for_update:
            query = query.with_for_update()
        return query

    def lock(self, subscription_id: str) -> Optional[Subscription]:
        """
        Re-read a subscription row with a row lock.

        Args:
            subscription_id: Subscription ID

        Returns:
            Locked Subscription if found, None otherwise
        """
        return self._query(True).filter(Subscription.id == subscription_id).first()

    def get_by_external_ref(
        self,
        external_subscription_ref: str,
        for_update: bool = False,
    ) -> Optional[Subscription]:
        """
        Get the newest subscription row carrying a provider subscription ID.

        Args:
            external_subscription_ref: Provider subscription ID (sub_...)
            for_update: Lock the row for the current transaction

        Returns:
            Subscription if found, None otherwise
        """
        return self._query(for_update).filter(
            Subscription.external_subscription_ref == external_subscription_ref
        ).order_by(Subscription.created_at.desc()).first()

    def get_live_for_user(self, user_id: str, for_update: bool = False) -> Optional[Subscription]:
        """
        Get the live (active, trialing, past_due) subscription for a user.

        Args:
            user_id: User ID
            for_update: Lock the row for the current transaction

        Returns:
            Live subscription if found, None otherwise
        """
        return self._query(for_update).filter(
            Subscription.user_id == user_id,
            Subscription.status.in_(LIVE_STATUSES),
        ).first()

    def get_live_for_customer(
        self,
        external_customer_ref: str,
        for_update: bool = False,
    ) -> Optional[Subscription]:
        """
        Get the latest live subscription for a provider customer ID.

        Args:
            external_customer_ref: Provider customer ID (cus_...)
            for_update: Lock the row for the current transaction

        Returns:
            Live subscription if found, None otherwise
        """
        return self._query(for_update).filter(
            Subscription.external_customer_ref == external_customer_ref,
            Subscription.status.in_(LIVE_STATUSES),
        ).order_by(Subscription.created_at.desc()).first()

    def list_for_user(self, user_id: str) -> List[Subscription]:
        """All rows for a user, oldest first (audit trail)."""
        return self.db.query(Subscription).filter(
            Subscription.user_id == user_id
        ).order_by(Subscription.created_at.asc()).all()

    def list_grace_expired_ids(self, now: datetime) -> List[str]:
        """
        IDs of past_due rows whose grace deadline has elapsed.

        Args:
            now: Sweep time; rows with grace_deadline < now qualify

        Returns:
            List of subscription IDs
        """
        rows = self.db.query(Subscription.id).filter(
            Subscription.status == SubscriptionStatus.PAST_DUE.value,
            Subscription.grace_deadline.isnot(None),
            Subscription.grace_deadline < now,
        ).order_by(Subscription.grace_deadline.asc()).all()
        return [row[0] for row in rows]

    def add(self, subscription: Subscription) -> Subscription:
        """Stage a new subscription row and flush it."""
        self.db.add(subscription)
        self.db.flush()
        logger.info(
            "Subscription row created",
            extra={
                "subscription_id": subscription.id,
                "user_id": subscription.user_id,
                "tier": subscription.tier,
                "status": subscription.status,
            },
        )
        return subscription
