"""
Entitlement service.

Resolves a user's effective tier from their subscription and maps it to an
EntitlementSet using the feature_entitlements table.

CRITICAL: past_due keeps full tier access until the grace deadline is
enforced by the reconciler. Only canceled/inactive rows (or no row) mean free.
"""

import logging
from threading import Lock
from typing import Callable, Optional

from sqlalchemy.orm import Session

from habit_billing.entitlements.cache import EntitlementCache
from habit_billing.entitlements.loader import default_entitlement_set
from habit_billing.entitlements.models import EntitlementSet, decode_feature_value
from habit_billing.models.feature_entitlement import FeatureEntitlement
from habit_billing.models.subscription import Subscription, SubscriptionTier
from habit_billing.repositories.subscription_repository import SubscriptionRepository

logger = logging.getLogger(__name__)


def effective_tier(subscription: Optional[Subscription]) -> str:
    """Stored tier while active/trialing/past_due, free otherwise."""
    if subscription is None:
        return SubscriptionTier.FREE.value
    return subscription.effective_tier


def effective_tier_for_user(db: Session, user_id: str) -> str:
    """Effective tier of the user's live row, or free when there is none."""
    return effective_tier(SubscriptionRepository(db).get_live_for_user(user_id))


def entitlements_for_tier(db: Session, tier: str) -> EntitlementSet:
    """
    Load the EntitlementSet for a tier from the database.

    Falls back to the built-in matrix if the tier has no seeded rows.
    """
    rows = db.query(FeatureEntitlement).filter(FeatureEntitlement.tier == tier).all()
    if not rows:
        logger.warning(
            "No seeded entitlements for tier, using built-in defaults",
            extra={"tier": tier},
        )
        return default_entitlement_set(tier)

    features = {
        row.feature_key: decode_feature_value(
            row.feature_key, row.value_int, row.value_bool, row.value_text
        )
        for row in rows
    }
    return EntitlementSet.from_features(tier, features)


def habit_limit_for_tier(db: Session, tier: str) -> Optional[int]:
    """Maximum unarchived habits for a tier; None means unlimited."""
    return entitlements_for_tier(db, tier).habit_limit


class EntitlementService:
    """
    Computes entitlements for users.

    Usage:
        service = EntitlementService(session_factory)
        cache = EntitlementCache(ttl_seconds=300, compute=service.compute)
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    @staticmethod
    def effective_tier(subscription: Optional[Subscription]) -> str:
        return effective_tier(subscription)

    def compute(self, user_id: str) -> EntitlementSet:
        """
        Compute the entitlement set for a user from the database.

        Args:
            user_id: User identifier

        Returns:
            EntitlementSet for the user's effective tier
        """
        db = self._session_factory()
        try:
            tier = effective_tier_for_user(db, user_id)
            result = entitlements_for_tier(db, tier)
        finally:
            db.close()

        logger.debug(
            "Computed entitlements",
            extra={"user_id": user_id, "tier": tier},
        )
        return result


# Module-level default used for wiring the FastAPI app and the worker
_cache_instance: Optional[EntitlementCache] = None
_cache_lock = Lock()


def get_entitlement_cache() -> EntitlementCache:
    """
    Get the process-wide EntitlementCache.

    The cache's compute function is bound to the configured session factory
    on first use.
    """
    global _cache_instance
    if _cache_instance is None:
        with _cache_lock:
            if _cache_instance is None:
                from habit_billing.config.settings import get_settings
                from habit_billing.database.session import get_session_factory

                service = EntitlementService(get_session_factory())
                _cache_instance = EntitlementCache(
                    ttl_seconds=get_settings().entitlement_cache_ttl,
                    compute=service.compute,
                )
    return _cache_instance


def set_entitlement_cache(cache: Optional[EntitlementCache]) -> None:
    """Install (or clear) the process-wide cache (for app wiring and tests)."""
    global _cache_instance
    with _cache_lock:
        _cache_instance = cache
