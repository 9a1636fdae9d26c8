"""
Entitlement Cache - in-memory TTL cache with immediate invalidation.

Provides:
- EntitlementCache: user_id -> EntitlementSet with TTL expiry
- Per-user locking so concurrent misses compute once
- Generation counters so a value computed before an invalidation is
  never stored after it

CRITICAL: Billing state changes MUST invalidate cached entitlements immediately.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Callable, Dict, Optional

from habit_billing.entitlements.models import EntitlementSet

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 300  # 5 minutes


@dataclass
class EntitlementCacheEntry:
    """Cached entitlement set for a user."""

    value: EntitlementSet
    computed_at: datetime
    generation: int

    def is_expired(self, ttl_seconds: int, now: datetime) -> bool:
        return (now - self.computed_at).total_seconds() > ttl_seconds


class EntitlementCache:
    """
    Caching layer for user entitlements.

    Usage:
        cache = EntitlementCache(ttl_seconds=300, compute=service.compute)

        entitlements = cache.get_or_compute(user_id)

        # Invalidate on billing state change
        cache.invalidate(user_id, reason="payment_failed")
    """

    def __init__(
        self,
        ttl_seconds: int = DEFAULT_CACHE_TTL_SECONDS,
        compute: Optional[Callable[[str], EntitlementSet]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._ttl_seconds = ttl_seconds
        self._compute = compute
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._entries: Dict[str, EntitlementCacheEntry] = {}
        self._generations: Dict[str, int] = {}
        self._user_locks: Dict[str, Lock] = {}
        # user_id -> number of get_or_compute calls holding a reference to its lock
        self._pending: Dict[str, int] = {}
        self._meta_lock = Lock()

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def bind(self, compute: Callable[[str], EntitlementSet]) -> None:
        """Attach the compute function after construction."""
        self._compute = compute

    def _acquire_slot(self, user_id: str) -> Lock:
        with self._meta_lock:
            self._pending[user_id] = self._pending.get(user_id, 0) + 1
            return self._user_locks.setdefault(user_id, Lock())

    def _release_slot(self, user_id: str) -> None:
        with self._meta_lock:
            remaining = self._pending.get(user_id, 0) - 1
            if remaining > 0:
                self._pending[user_id] = remaining
            else:
                self._pending.pop(user_id, None)

    def get(self, user_id: str) -> Optional[EntitlementSet]:
        """
        Return the cached set if present and fresh.

        Args:
            user_id: User identifier

        Returns:
            EntitlementSet or None if not cached/expired
        """
        entry = self._entries.get(user_id)
        if entry is None:
            logger.debug("Cache miss", extra={"user_id": user_id})
            return None
        if entry.is_expired(self._ttl_seconds, self._clock()):
            logger.debug("Cache entry expired", extra={"user_id": user_id})
            return None
        return entry.value

    def get_or_compute(self, user_id: str) -> EntitlementSet:
        """
        Return cached entitlements, computing them on miss or expiry.

        A value computed while an invalidation for the same user happened
        is returned to the caller but not stored.

        Raises:
            RuntimeError: If no compute function is bound
        """
        cached = self.get(user_id)
        if cached is not None:
            return cached

        if self._compute is None:
            raise RuntimeError("EntitlementCache has no compute function bound")

        lock = self._acquire_slot(user_id)
        try:
            with lock:
                # Another thread may have filled the entry while we waited
                cached = self.get(user_id)
                if cached is not None:
                    return cached

                with self._meta_lock:
                    generation = self._generations.get(user_id, 0)
                value = self._compute(user_id)
                entry = EntitlementCacheEntry(
                    value=value,
                    computed_at=self._clock(),
                    generation=generation,
                )

                with self._meta_lock:
                    stored = self._generations.get(user_id, 0) == generation
                    if stored:
                        self._entries[user_id] = entry

                if not stored:
                    logger.info(
                        "Discarded entitlement computed across an invalidation",
                        extra={"user_id": user_id},
                    )
                return value
        finally:
            self._release_slot(user_id)

    def invalidate(self, user_id: str, reason: Optional[str] = None) -> bool:
        """
        Invalidate cached entitlements for a user.

        CRITICAL: Must be called after every committed billing state change.

        Args:
            user_id: User identifier
            reason: Optional reason for audit logging

        Returns:
            True if an entry was removed
        """
        with self._meta_lock:
            deleted = self._entries.pop(user_id, None) is not None
            if user_id in self._pending:
                self._generations[user_id] = self._generations.get(user_id, 0) + 1
            else:
                self._generations.pop(user_id, None)

        logger.info(
            "Invalidated entitlement cache for user",
            extra={"user_id": user_id, "reason": reason, "had_entry": deleted},
        )
        return deleted

    def invalidate_all(self, reason: Optional[str] = None) -> int:
        """
        Invalidate all cached entitlements.

        Use with caution - only for matrix reseeds or emergencies.
        """
        with self._meta_lock:
            count = len(self._entries)
            self._entries.clear()
            self._generations = {
                user_id: self._generations.get(user_id, 0) + 1
                for user_id in self._pending
            }

        logger.warning(
            "Mass invalidation of entitlement cache",
            extra={"count": count, "reason": reason},
        )
        return count

    def cleanup(self, now: Optional[datetime] = None) -> int:
        """
        Drop entries older than twice the TTL.

        Generation counters and locks of users with neither an entry nor a
        compute in flight are dropped as well.

        Returns:
            Number of entries removed
        """
        now = now or self._clock()
        horizon = timedelta(seconds=2 * self._ttl_seconds)
        with self._meta_lock:
            stale = [
                user_id for user_id, entry in self._entries.items()
                if now - entry.computed_at > horizon
            ]
            for user_id in stale:
                del self._entries[user_id]
            for registry in (self._generations, self._user_locks):
                for user_id in list(registry):
                    if user_id not in self._entries and user_id not in self._pending:
                        del registry[user_id]

        if stale:
            logger.debug("Entitlement cache cleanup", extra={"removed": len(stale)})
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._entries
