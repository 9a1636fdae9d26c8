"""
Billing Maintenance Worker.

Background loop that keeps billing state consistent by:
1. Downgrading past_due subscriptions whose grace period elapsed
2. Dropping stale entries from the entitlement cache
3. Purging old processed-event (dedup) records

Run as: python -m habit_billing.workers.billing_maintenance_worker

Configuration:
- GRACE_RECONCILE_INTERVAL: Seconds between cycles (default: 300)
- PROCESSED_EVENT_RETENTION_DAYS: Dedup record retention (default: 30)
- EVENT_PURGE_EVERY_CYCLES: Cycles between purges (default: 288, ~daily)
"""

import logging
import os
import signal
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.orm import Session

from habit_billing.config.settings import BillingSettings, get_settings
from habit_billing.entitlements.cache import EntitlementCache
from habit_billing.jobs.reconcile_subscriptions import run_grace_reconciliation
from habit_billing.services.event_deduplicator import EventDeduplicator

logger = logging.getLogger(__name__)

PURGE_EVERY_CYCLES = int(os.getenv("EVENT_PURGE_EVERY_CYCLES", "288"))

_shutdown = False


def _handle_signal(signum, frame):
    global _shutdown
    logger.info("Shutdown signal received", extra={"signal": signum})
    _shutdown = True


@dataclass
class MaintenanceStats:
    """Track one maintenance cycle."""
    subscriptions_downgraded: int = 0
    habits_archived: int = 0
    cache_entries_removed: int = 0
    events_purged: int = 0
    errors: int = 0
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        duration = (datetime.now(timezone.utc) - self.start_time).total_seconds()
        return {
            "subscriptions_downgraded": self.subscriptions_downgraded,
            "habits_archived": self.habits_archived,
            "cache_entries_removed": self.cache_entries_removed,
            "events_purged": self.events_purged,
            "errors": self.errors,
            "duration_seconds": round(duration, 2),
        }


def run_cycle(
    session_factory: Callable[[], Session],
    cache: EntitlementCache,
    settings: Optional[BillingSettings] = None,
    now: Optional[datetime] = None,
    purge: bool = False,
) -> MaintenanceStats:
    """Run one full maintenance cycle."""
    settings = settings or get_settings()
    now = now or datetime.now(timezone.utc)
    stats = MaintenanceStats()

    # Phase 1: Grace period expirations
    try:
        grace = run_grace_reconciliation(session_factory, cache, now=now)
        stats.subscriptions_downgraded = grace.subscriptions_downgraded
        stats.habits_archived = grace.habits_archived
        stats.errors += grace.errors
    except Exception:
        logger.error("Grace reconciliation failed", exc_info=True)
        stats.errors += 1

    # Phase 2: Cache cleanup
    stats.cache_entries_removed = cache.cleanup(now=now)

    # Phase 3: Dedup retention
    if purge:
        try:
            stats.events_purged = EventDeduplicator(session_factory).purge_processed_events(
                timedelta(days=settings.processed_event_retention_days), now=now
            )
        except Exception:
            logger.error("Processed event purge failed", exc_info=True)
            stats.errors += 1

    result = stats.to_dict()
    if any(v > 0 for k, v in result.items() if k != "duration_seconds"):
        logger.info("Maintenance cycle complete", extra=result)
    return stats


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    from habit_billing.database.session import get_session_factory
    from habit_billing.entitlements.service import get_entitlement_cache

    settings = get_settings()
    session_factory = get_session_factory()
    cache = get_entitlement_cache()
    interval = settings.reconcile_interval_seconds

    logger.info(
        "Billing maintenance worker started",
        extra={"poll_interval": interval, "purge_every_cycles": PURGE_EVERY_CYCLES},
    )

    cycle = 0
    while not _shutdown:
        run_cycle(
            session_factory,
            cache,
            settings=settings,
            purge=(cycle % max(PURGE_EVERY_CYCLES, 1) == 0),
        )
        cycle += 1
        # Sleep in 1-second increments for responsive shutdown
        for _ in range(interval):
            if _shutdown:
                break
            time.sleep(1)

    logger.info("Billing maintenance worker stopped")


if __name__ == "__main__":
    main()
