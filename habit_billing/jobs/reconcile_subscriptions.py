"""
Grace period reconciliation job.

Downgrades past_due subscriptions whose grace deadline has elapsed. Runs
on a fixed interval from the billing maintenance worker, or once from the
command line.

Usage:
    python -m habit_billing.jobs.reconcile_subscriptions

CRITICAL: Each row is handled in its own transaction with the row re-read
FOR UPDATE and the predicate re-checked, so the sweep is safe to run
concurrently with itself and with webhook processing.
"""

import logging
import sys
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session

from habit_billing.entitlements.cache import EntitlementCache
from habit_billing.models.subscription import SubscriptionStatus
from habit_billing.repositories.subscription_repository import SubscriptionRepository
from habit_billing.services.downgrade_service import REASON_GRACE_EXPIRED, DowngradeService

logger = logging.getLogger(__name__)


class ReconciliationStats:
    """Track reconciliation run statistics."""

    def __init__(self, start_time: Optional[datetime] = None):
        self.subscriptions_checked = 0
        self.subscriptions_downgraded = 0
        self.subscriptions_skipped = 0
        self.habits_archived = 0
        self.errors = 0
        self.start_time = start_time or datetime.now(timezone.utc)

    def to_dict(self) -> dict:
        duration = (datetime.now(timezone.utc) - self.start_time).total_seconds()
        return {
            "subscriptions_checked": self.subscriptions_checked,
            "subscriptions_downgraded": self.subscriptions_downgraded,
            "subscriptions_skipped": self.subscriptions_skipped,
            "habits_archived": self.habits_archived,
            "errors": self.errors,
            "duration_seconds": duration,
        }


def _expire_one(
    session: Session,
    subscription_id: str,
    now: datetime,
) -> Optional[tuple]:
    """
    Downgrade one row if it is still past_due with an elapsed deadline.

    Returns:
        (user_id, archived_count) if downgraded, None if the row moved on
    """
    subscription = SubscriptionRepository(session).lock(subscription_id)
    if subscription is None:
        return None
    if (
        subscription.status != SubscriptionStatus.PAST_DUE.value
        or subscription.grace_deadline is None
        or subscription.grace_deadline >= now
    ):
        return None

    logger.info("Grace period expired, downgrading subscription", extra={
        "subscription_id": subscription.id,
        "user_id": subscription.user_id,
        "grace_deadline": subscription.grace_deadline.isoformat(),
    })

    result = DowngradeService(session).downgrade(
        subscription, reason=REASON_GRACE_EXPIRED, now=now
    )
    subscription.updated_at = now
    return subscription.user_id, len(result.archived_habit_ids)


def run_grace_reconciliation(
    session_factory: Callable[[], Session],
    cache: Optional[EntitlementCache] = None,
    now: Optional[datetime] = None,
) -> ReconciliationStats:
    """
    Sweep past_due rows whose grace deadline is before now.

    A failure on one row is rolled back, logged and counted; the sweep
    continues with the next row.

    Args:
        session_factory: Callable returning new database sessions
        cache: Entitlement cache to invalidate per downgraded user
        now: Sweep time (defaults to current UTC time)

    Returns:
        ReconciliationStats
    """
    now = now or datetime.now(timezone.utc)
    stats = ReconciliationStats()

    session = session_factory()
    try:
        candidate_ids = SubscriptionRepository(session).list_grace_expired_ids(now)
    finally:
        session.close()

    for subscription_id in candidate_ids:
        stats.subscriptions_checked += 1
        session = session_factory()
        try:
            outcome = _expire_one(session, subscription_id, now)
            if outcome is None:
                session.rollback()
                stats.subscriptions_skipped += 1
                continue
            session.commit()
        except Exception:
            session.rollback()
            stats.errors += 1
            logger.error("Failed to downgrade expired subscription", extra={
                "subscription_id": subscription_id,
            }, exc_info=True)
            continue
        finally:
            session.close()

        user_id, archived = outcome
        stats.subscriptions_downgraded += 1
        stats.habits_archived += archived
        if cache is not None:
            cache.invalidate(user_id, reason=REASON_GRACE_EXPIRED)

    if candidate_ids:
        logger.info("Processed expired grace periods", extra=stats.to_dict())
    return stats


def main():
    """Entry point for running the grace sweep once from the command line."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    from habit_billing.database.session import get_session_factory
    from habit_billing.entitlements.service import get_entitlement_cache

    try:
        stats = run_grace_reconciliation(get_session_factory(), get_entitlement_cache())
        print(f"Reconciliation completed: {stats.to_dict()}")
        sys.exit(0)
    except Exception as e:
        print(f"Reconciliation failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
