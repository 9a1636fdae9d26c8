"""
Entitlement computation and caching.

Entitlements are derived from the user's effective tier and the
FeatureEntitlement matrix, then served from an in-memory TTL cache that
is invalidated on every billing state change.
"""

from habit_billing.entitlements.models import DISABLED, UNLIMITED, EntitlementSet
from habit_billing.entitlements.cache import EntitlementCache
from habit_billing.entitlements.service import EntitlementService

__all__ = [
    "DISABLED",
    "UNLIMITED",
    "EntitlementSet",
    "EntitlementCache",
    "EntitlementService",
]
