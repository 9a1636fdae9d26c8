"""
Subscription state machine driven by de-duplicated provider events.

Handles:
- checkout.session.completed: create or update the user's live row
- customer.subscription.created/updated: upsert tier, period and status
- customer.subscription.deleted: terminal downgrade
- invoice.payment_failed: start the grace period
- invoice.payment_succeeded / invoice.paid: recover from past_due

CRITICAL ordering rule: Subscription.updated_at holds the creation time of
the newest event applied to the row. An event created before it is stale and
skipped, so a delayed event can never undo a newer one. Invoice events
matched by subscription ID are sequenced against last_payment_event_at
instead. customer.subscription.deleted always applies.

Every applied transition runs in one transaction with the row selected
FOR UPDATE, re-establishes the habit limit for the resulting effective tier,
commits, then invalidates the user's entitlement cache entry.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple

from sqlalchemy.orm import Session

from habit_billing.config.settings import BillingSettings, get_settings
from habit_billing.entitlements.cache import EntitlementCache
from habit_billing.entitlements.service import effective_tier_for_user, habit_limit_for_tier
from habit_billing.integrations.stripe.events import (
    EVENT_CHECKOUT_COMPLETED,
    EVENT_INVOICE_PAID,
    EVENT_INVOICE_PAYMENT_FAILED,
    EVENT_INVOICE_PAYMENT_SUCCEEDED,
    EVENT_SUBSCRIPTION_CREATED,
    EVENT_SUBSCRIPTION_DELETED,
    EVENT_SUBSCRIPTION_UPDATED,
    ProviderEvent,
)
from habit_billing.models.subscription import Subscription, SubscriptionStatus, SubscriptionTier
from habit_billing.repositories.subscription_repository import SubscriptionRepository
from habit_billing.services.downgrade_service import (
    REASON_SUBSCRIPTION_DELETED,
    REASON_SUBSCRIPTION_ENDED,
    DowngradeService,
)

logger = logging.getLogger(__name__)

# Provider subscription statuses
PROVIDER_LIVE_STATUSES = ("active", "trialing")
PROVIDER_PAST_DUE = "past_due"
PROVIDER_ENDED_STATUSES = ("canceled", "unpaid", "paused")

# Skip reasons
SKIP_STALE = "stale"
SKIP_DUPLICATE = "duplicate"
SKIP_UNHANDLED_EVENT = "unhandled_event_type"
SKIP_IGNORED_STATUS = "ignored_status"
SKIP_UNATTRIBUTABLE = "unattributable"
SKIP_NO_SUBSCRIPTION = "no_subscription"
SKIP_UNSUPPORTED_MODE = "unsupported_mode"
SKIP_NOT_LIVE = "subscription_not_live"


@dataclass
class TransitionResult:
    """Result of applying one event."""
    event_id: str
    event_type: str
    applied: bool
    user_id: Optional[str] = None
    subscription_id: Optional[str] = None
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    previous_tier: Optional[str] = None
    new_tier: Optional[str] = None
    skipped_reason: Optional[str] = None
    archived_habit_ids: List[str] = field(default_factory=list)
    restored_habit_ids: List[str] = field(default_factory=list)
    cache_invalidated: bool = False

    @property
    def state_changed(self) -> bool:
        return self.applied and (
            self.previous_status != self.new_status or self.previous_tier != self.new_tier
        )


def _limit_rank(limit: Optional[int]) -> float:
    return float("inf") if limit is None else float(limit)


def _advance(current: Optional[datetime], candidate: datetime) -> datetime:
    """Watermarks only move forward."""
    if current is None or candidate > current:
        return candidate
    return current


def normalize_tier(value: Optional[str]) -> Optional[str]:
    """Map a metadata tier to a paid tier; unknown or free values become plus."""
    if value is None or value == "":
        return None
    if str(value).strip().lower() == SubscriptionTier.PRO.value:
        return SubscriptionTier.PRO.value
    return SubscriptionTier.PLUS.value


class SubscriptionStateMachine:
    """
    Applies provider events to subscription rows.

    Usage:
        machine = SubscriptionStateMachine(session_factory, cache=cache)
        result = machine.apply(event)
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        cache: Optional[EntitlementCache] = None,
        settings: Optional[BillingSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._session_factory = session_factory
        self._cache = cache
        self._settings = settings or get_settings()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    # =========================================================================
    # Entry point
    # =========================================================================

    def apply(self, event: ProviderEvent) -> TransitionResult:
        """
        Apply one de-duplicated event.

        Args:
            event: Parsed provider event

        Returns:
            TransitionResult; skipped events carry skipped_reason

        Raises:
            SQLAlchemyError: On store failure (transaction rolled back)
        """
        handlers = {
            EVENT_CHECKOUT_COMPLETED: self._apply_checkout_completed,
            EVENT_SUBSCRIPTION_CREATED: self._apply_subscription_upsert,
            EVENT_SUBSCRIPTION_UPDATED: self._apply_subscription_upsert,
            EVENT_SUBSCRIPTION_DELETED: self._apply_subscription_deleted,
            EVENT_INVOICE_PAYMENT_FAILED: self._apply_payment_failed,
            EVENT_INVOICE_PAYMENT_SUCCEEDED: self._apply_payment_succeeded,
            EVENT_INVOICE_PAID: self._apply_payment_succeeded,
        }
        handler = handlers.get(event.type)
        if handler is None:
            logger.info("Unhandled event type acknowledged", extra={
                "event_id": event.id,
                "event_type": event.type,
            })
            return self._skipped(event, SKIP_UNHANDLED_EVENT)

        db = self._session_factory()
        try:
            result = handler(db, event)
            if result.applied:
                db.commit()
            else:
                db.rollback()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        if result.applied and result.user_id:
            self._invalidate(result.user_id, event.type)
            result.cache_invalidated = self._cache is not None

        if result.applied:
            logger.info("Subscription transition applied", extra={
                "event_id": event.id,
                "event_type": event.type,
                "user_id": result.user_id,
                "subscription_id": result.subscription_id,
                "previous_status": result.previous_status,
                "new_status": result.new_status,
                "previous_tier": result.previous_tier,
                "new_tier": result.new_tier,
            })
        else:
            logger.info("Event skipped", extra={
                "event_id": event.id,
                "event_type": event.type,
                "skipped_reason": result.skipped_reason,
                "subscription_id": result.subscription_id,
            })
        return result

    def _invalidate(self, user_id: str, reason: str) -> None:
        if self._cache is not None:
            self._cache.invalidate(user_id, reason=reason)

    # =========================================================================
    # Helpers
    # =========================================================================

    def _skipped(
        self,
        event: ProviderEvent,
        reason: str,
        row: Optional[Subscription] = None,
    ) -> TransitionResult:
        return TransitionResult(
            event_id=event.id,
            event_type=event.type,
            applied=False,
            user_id=row.user_id if row is not None else None,
            subscription_id=row.id if row is not None else None,
            skipped_reason=reason,
        )

    def _applied(
        self,
        event: ProviderEvent,
        row: Subscription,
        previous: Tuple[Optional[str], Optional[str]],
    ) -> TransitionResult:
        return TransitionResult(
            event_id=event.id,
            event_type=event.type,
            applied=True,
            user_id=row.user_id,
            subscription_id=row.id,
            previous_status=previous[0],
            new_status=row.status,
            previous_tier=previous[1],
            new_tier=row.tier,
        )

    @staticmethod
    def _is_stale(row: Subscription, event: ProviderEvent) -> bool:
        return row.updated_at is not None and event.created < row.updated_at

    def _resolve_tier(self, event: ProviderEvent, existing_tier: Optional[str]) -> str:
        """metadata.tier -> configured price map -> existing paid tier -> plus."""
        tier = normalize_tier(event.metadata.get("tier"))
        if tier:
            return tier
        tier = self._settings.tier_for_price(event.price_id)
        if tier:
            return normalize_tier(tier)
        if existing_tier and existing_tier != SubscriptionTier.FREE.value:
            return existing_tier
        return SubscriptionTier.PLUS.value

    def _grace_deadline(self) -> datetime:
        return self._clock() + timedelta(days=self._settings.grace_period_days)

    def _habit_limit(self, db: Session, user_id: str) -> Optional[int]:
        db.flush()
        return habit_limit_for_tier(db, effective_tier_for_user(db, user_id))

    def _rebalance(
        self,
        db: Session,
        user_id: str,
        limit_before: Optional[int],
        result: TransitionResult,
    ) -> None:
        """Enforce the new effective limit and restore habits if it went up."""
        limit_after = self._habit_limit(db, user_id)
        downgrades = DowngradeService(db)
        if _limit_rank(limit_after) > _limit_rank(limit_before):
            result.restored_habit_ids = downgrades.restore(user_id, limit_after)
        result.archived_habit_ids = downgrades.enforce_habit_limit(user_id, limit_after)

    def _new_row(
        self,
        db: Session,
        event: ProviderEvent,
        user_id: str,
        tier: str,
        status: str,
    ) -> Subscription:
        row = Subscription(
            user_id=user_id,
            tier=tier,
            status=status,
            external_customer_ref=event.customer_ref,
            external_subscription_ref=event.subscription_ref,
            period_start=event.period_start,
            period_end=event.period_end,
            cancel_at_period_end=event.cancel_at_period_end,
            grace_deadline=None,
            created_at=self._clock(),
            updated_at=event.created,
        )
        return SubscriptionRepository(db).add(row)

    def _create_live_row(
        self,
        db: Session,
        event: ProviderEvent,
        user_id: str,
        tier: str,
        status: str,
    ) -> TransitionResult:
        limit_before = self._habit_limit(db, user_id)
        row = self._new_row(db, event, user_id, tier, status)
        result = self._applied(event, row, (None, None))
        self._rebalance(db, user_id, limit_before, result)
        return result

    def _resolve_row(
        self,
        db: Session,
        event: ProviderEvent,
        adopt_other_ref: bool = False,
    ) -> Tuple[Optional[Subscription], bool]:
        """
        Find and lock the row an event refers to.

        Order: subscription ID, then latest live row for the customer, then
        the live row of metadata.user_id. When the event names a subscription
        ID that matches no row, a fallback row tracking a different
        subscription ID is only accepted with adopt_other_ref.

        Args:
            db: Open session
            event: Event being applied
            adopt_other_ref: Let a live update take over the user's live row

        Returns:
            (row or None, matched_by_subscription_ref)
        """
        repo = SubscriptionRepository(db)
        if event.subscription_ref:
            row = repo.get_by_external_ref(event.subscription_ref, for_update=True)
            if row is not None:
                return row, True

        candidates = []
        if event.customer_ref:
            candidates.append(repo.get_live_for_customer(event.customer_ref, for_update=True))
        user_id = event.metadata.get("user_id")
        if isinstance(user_id, str) and user_id:
            candidates.append(repo.get_live_for_user(user_id, for_update=True))

        for row in candidates:
            if row is None:
                continue
            if adopt_other_ref or self._tracks_event_subscription(row, event):
                return row, False
            logger.warning("Event subscription does not match the live row", extra={
                "event_id": event.id,
                "event_type": event.type,
                "subscription_ref": event.subscription_ref,
                "row_subscription_ref": row.external_subscription_ref,
                "subscription_id": row.id,
            })
        return None, False

    @staticmethod
    def _tracks_event_subscription(row: Subscription, event: ProviderEvent) -> bool:
        return (
            not event.subscription_ref
            or row.external_subscription_ref is None
            or row.external_subscription_ref == event.subscription_ref
        )

    # =========================================================================
    # Transitions
    # =========================================================================

    def _apply_checkout_completed(self, db: Session, event: ProviderEvent) -> TransitionResult:
        if event.mode != "subscription":
            return self._skipped(event, SKIP_UNSUPPORTED_MODE)

        user_id = event.user_id
        if not user_id:
            logger.warning("Checkout session without user reference", extra={
                "event_id": event.id,
                "customer_ref": event.customer_ref,
            })
            return self._skipped(event, SKIP_UNATTRIBUTABLE)

        metadata_tier = normalize_tier(event.metadata.get("tier"))
        row = SubscriptionRepository(db).get_live_for_user(user_id, for_update=True)

        if row is None:
            return self._create_live_row(
                db, event, user_id,
                metadata_tier or SubscriptionTier.PLUS.value,
                SubscriptionStatus.ACTIVE.value,
            )

        if self._is_stale(row, event):
            return self._skipped(event, SKIP_STALE, row)

        limit_before = self._habit_limit(db, user_id)
        previous = (row.status, row.tier)
        row.tier = metadata_tier or self._resolve_tier(event, row.tier)
        row.status = SubscriptionStatus.ACTIVE.value
        row.grace_deadline = None
        row.external_customer_ref = event.customer_ref or row.external_customer_ref
        row.external_subscription_ref = event.subscription_ref or row.external_subscription_ref
        row.updated_at = _advance(row.updated_at, event.created)

        result = self._applied(event, row, previous)
        self._rebalance(db, user_id, limit_before, result)
        return result

    def _apply_subscription_upsert(self, db: Session, event: ProviderEvent) -> TransitionResult:
        status = event.status
        if status in PROVIDER_ENDED_STATUSES:
            return self._apply_subscription_ended(db, event)
        if status == PROVIDER_PAST_DUE:
            return self._apply_payment_failed(db, event)
        if status not in PROVIDER_LIVE_STATUSES:
            logger.info("Subscription status ignored", extra={
                "event_id": event.id,
                "status": status,
            })
            return self._skipped(event, SKIP_IGNORED_STATUS)

        row, _ = self._resolve_row(db, event, adopt_other_ref=True)

        if row is not None and row.status == SubscriptionStatus.CANCELED.value:
            # Canceled rows are kept for audit; a newer live event starts a fresh row
            if self._is_stale(row, event):
                return self._skipped(event, SKIP_STALE, row)
            live = SubscriptionRepository(db).get_live_for_user(row.user_id, for_update=True)
            if live is None:
                tier = self._resolve_tier(event, row.tier)
                return self._create_live_row(db, event, row.user_id, tier, status)
            row = live

        if row is None:
            user_id = event.user_id
            if not user_id:
                logger.warning("Subscription event cannot be attributed to a user", extra={
                    "event_id": event.id,
                    "subscription_ref": event.subscription_ref,
                    "customer_ref": event.customer_ref,
                })
                return self._skipped(event, SKIP_UNATTRIBUTABLE)
            return self._create_live_row(
                db, event, user_id, self._resolve_tier(event, None), status
            )

        if self._is_stale(row, event):
            return self._skipped(event, SKIP_STALE, row)

        limit_before = self._habit_limit(db, row.user_id)
        previous = (row.status, row.tier)
        row.tier = self._resolve_tier(event, row.tier)
        row.status = status
        row.grace_deadline = None
        row.external_customer_ref = event.customer_ref or row.external_customer_ref
        row.external_subscription_ref = event.subscription_ref or row.external_subscription_ref
        row.period_start = event.period_start or row.period_start
        row.period_end = event.period_end or row.period_end
        row.cancel_at_period_end = event.cancel_at_period_end
        row.updated_at = _advance(row.updated_at, event.created)

        result = self._applied(event, row, previous)
        self._rebalance(db, row.user_id, limit_before, result)
        return result

    def _downgrade(
        self,
        db: Session,
        event: ProviderEvent,
        row: Subscription,
        reason: str,
    ) -> TransitionResult:
        previous = (row.status, row.tier)
        outcome = DowngradeService(db).downgrade(row, reason=reason, now=self._clock())
        row.updated_at = _advance(row.updated_at, event.created)
        result = self._applied(event, row, previous)
        result.archived_habit_ids = outcome.archived_habit_ids
        return result

    def _apply_subscription_ended(self, db: Session, event: ProviderEvent) -> TransitionResult:
        row, _ = self._resolve_row(db, event)
        if row is None:
            return self._skipped(event, SKIP_NO_SUBSCRIPTION)
        if self._is_stale(row, event):
            return self._skipped(event, SKIP_STALE, row)
        return self._downgrade(db, event, row, REASON_SUBSCRIPTION_ENDED)

    def _apply_subscription_deleted(self, db: Session, event: ProviderEvent) -> TransitionResult:
        row, _ = self._resolve_row(db, event)
        if row is None:
            return self._skipped(event, SKIP_NO_SUBSCRIPTION)
        # Terminal: applies regardless of the ordering watermark
        return self._downgrade(db, event, row, REASON_SUBSCRIPTION_DELETED)

    def _invoice_is_stale(
        self,
        row: Subscription,
        event: ProviderEvent,
        matched_by_subscription_ref: bool,
    ) -> bool:
        if matched_by_subscription_ref and event.is_invoice_event:
            return (
                row.last_payment_event_at is not None
                and event.created < row.last_payment_event_at
            )
        return self._is_stale(row, event)

    def _apply_payment_failed(self, db: Session, event: ProviderEvent) -> TransitionResult:
        row, by_ref = self._resolve_row(db, event)
        if row is None:
            return self._skipped(event, SKIP_NO_SUBSCRIPTION)
        if self._invoice_is_stale(row, event, by_ref):
            return self._skipped(event, SKIP_STALE, row)
        if not row.is_live:
            return self._skipped(event, SKIP_NOT_LIVE, row)

        previous = (row.status, row.tier)
        if row.status != SubscriptionStatus.PAST_DUE.value:
            if row.tier == SubscriptionTier.FREE.value:
                logger.warning("Live subscription row on free tier, not starting grace", extra={
                    "subscription_id": row.id,
                })
                return self._skipped(event, SKIP_NOT_LIVE, row)
            row.status = SubscriptionStatus.PAST_DUE.value
            row.grace_deadline = self._grace_deadline()
        # Already past_due keeps the original deadline

        if event.is_invoice_event:
            row.last_payment_event_at = _advance(row.last_payment_event_at, event.created)
        row.updated_at = _advance(row.updated_at, event.created)
        return self._applied(event, row, previous)

    def _apply_payment_succeeded(self, db: Session, event: ProviderEvent) -> TransitionResult:
        row, by_ref = self._resolve_row(db, event)
        if row is None:
            return self._skipped(event, SKIP_NO_SUBSCRIPTION)
        if self._invoice_is_stale(row, event, by_ref):
            return self._skipped(event, SKIP_STALE, row)
        if not row.is_live:
            return self._skipped(event, SKIP_NOT_LIVE, row)

        previous = (row.status, row.tier)
        if row.status == SubscriptionStatus.PAST_DUE.value:
            row.status = SubscriptionStatus.ACTIVE.value
            row.grace_deadline = None

        row.last_payment_event_at = _advance(row.last_payment_event_at, event.created)
        row.updated_at = _advance(row.updated_at, event.created)
        return self._applied(event, row, previous)
