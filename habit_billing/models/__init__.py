"""
Database models.

Importing this package registers every table with Base.metadata.
"""

from habit_billing.db_base import Base
from habit_billing.models.subscription import (
    LIVE_STATUSES,
    Subscription,
    SubscriptionStatus,
    SubscriptionTier,
)
from habit_billing.models.processed_event import ProcessedEvent
from habit_billing.models.feature_entitlement import FeatureEntitlement
from habit_billing.models.habit import Habit, HabitCompletion

__all__ = [
    "Base",
    "LIVE_STATUSES",
    "Subscription",
    "SubscriptionStatus",
    "SubscriptionTier",
    "ProcessedEvent",
    "FeatureEntitlement",
    "Habit",
    "HabitCompletion",
]
