"""
Billing webhook handler with idempotency support.

Processes Stripe billing webhooks through the pipeline:
- Signature and freshness verification
- Envelope parsing
- Event deduplication (two-phase admission)
- Subscription state machine transition + entitlement invalidation

If the transition raises, the admission is abandoned so the provider's
retry is processed instead of being rejected as a duplicate.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Union

from sqlalchemy.orm import Session

from habit_billing.config.settings import BillingSettings, get_settings
from habit_billing.entitlements.cache import EntitlementCache
from habit_billing.errors import WebhookConfigurationError
from habit_billing.integrations.stripe.events import ProviderEvent, parse_event
from habit_billing.services.event_deduplicator import EventDeduplicator
from habit_billing.services.subscription_state_machine import (
    SKIP_DUPLICATE,
    SubscriptionStateMachine,
    TransitionResult,
)
from habit_billing.services.webhook_signature import verify_webhook_signature

logger = logging.getLogger(__name__)


@dataclass
class WebhookProcessingResult:
    """Result of webhook processing."""
    processed: bool
    message: str
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    duplicate: bool = False
    subscription_id: Optional[str] = None
    skipped_reason: Optional[str] = None
    transition: Optional[TransitionResult] = None


class BillingWebhookHandler:
    """
    Handler for Stripe billing webhooks with idempotency.

    Ensures each event is applied at most once using the provider event ID,
    and that stale events never overwrite newer state.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        cache: Optional[EntitlementCache] = None,
        settings: Optional[BillingSettings] = None,
        clock: Optional[Callable[[], datetime]] = None,
        deduplicator: Optional[EventDeduplicator] = None,
        state_machine: Optional[SubscriptionStateMachine] = None,
    ):
        """
        Initialize webhook handler.

        Args:
            session_factory: Callable returning new database sessions
            cache: Entitlement cache invalidated after each transition
            settings: Billing settings (defaults to environment)
            clock: Current-time callable, injectable for tests
        """
        self._settings = settings or get_settings()
        self._clock = clock
        self.deduplicator = deduplicator or EventDeduplicator(session_factory, clock=clock)
        self.state_machine = state_machine or SubscriptionStateMachine(
            session_factory,
            cache=cache,
            settings=self._settings,
            clock=clock,
        )

    def _now_unix(self) -> Optional[float]:
        if self._clock is None:
            return None
        return self._clock().timestamp()

    def verify(self, payload: Union[bytes, str], signature_header: Optional[str]) -> None:
        """
        Verify the delivery signature.

        Raises:
            WebhookConfigurationError: If no signing secret is configured
            WebhookSignatureError: If verification fails
        """
        secret = self._settings.stripe_webhook_secret
        if not secret:
            raise WebhookConfigurationError("STRIPE_WEBHOOK_SECRET not configured")

        verification = verify_webhook_signature(
            payload,
            signature_header,
            secret,
            tolerance_seconds=self._settings.webhook_tolerance_seconds,
            now=self._now_unix(),
        )
        if not verification.valid:
            logger.warning("Webhook signature rejected", extra={
                "reason": verification.reason,
            })
        verification.raise_for_failure()

    def handle(
        self,
        payload: Union[bytes, str],
        signature_header: Optional[str],
    ) -> WebhookProcessingResult:
        """
        Verify, parse and process one webhook delivery.

        Args:
            payload: Raw request body
            signature_header: Stripe-Signature header value

        Returns:
            WebhookProcessingResult

        Raises:
            WebhookConfigurationError: Missing signing secret
            WebhookSignatureError: Authentication failure
            EventParseError: Malformed envelope
            SQLAlchemyError: Store failure (dedup record already released)
        """
        self.verify(payload, signature_header)
        event = parse_event(payload)
        return self.process_event(event)

    def process_event(self, event: ProviderEvent) -> WebhookProcessingResult:
        """
        Deduplicate and apply an already verified event.

        Args:
            event: Parsed provider event

        Returns:
            WebhookProcessingResult
        """
        logger.info("Stripe webhook received", extra={
            "event_id": event.id,
            "event_type": event.type,
        })

        with self.deduplicator.admit(event.id, event.type) as admission:
            if admission.duplicate:
                logger.info("Duplicate webhook skipped", extra={
                    "event_id": event.id,
                    "event_type": event.type,
                })
                return WebhookProcessingResult(
                    processed=False,
                    message="Duplicate webhook - already processed",
                    event_id=event.id,
                    event_type=event.type,
                    duplicate=True,
                    skipped_reason=SKIP_DUPLICATE,
                )

            try:
                transition = self.state_machine.apply(event)
            except Exception:
                logger.error("Webhook processing failed", extra={
                    "event_id": event.id,
                    "event_type": event.type,
                }, exc_info=True)
                raise

            admission.commit()

        return WebhookProcessingResult(
            processed=transition.applied,
            message="Event applied" if transition.applied else "Event acknowledged",
            event_id=event.id,
            event_type=event.type,
            subscription_id=transition.subscription_id,
            skipped_reason=transition.skipped_reason,
            transition=transition,
        )
