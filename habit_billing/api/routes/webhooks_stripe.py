"""
Stripe webhook endpoint for billing events.

SECURITY: All webhooks MUST verify the Stripe-Signature header before
processing. Stripe signs webhooks with the endpoint's signing secret.

Responses:
    200 {received: true, duplicate: bool}  processed, skipped or duplicate
    400                                     signature or envelope failure
    500                                     processing failure, Stripe retries
    503                                     signing secret or database missing

Documentation: https://docs.stripe.com/webhooks
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel

from habit_billing.config.settings import get_settings
from habit_billing.errors import (
    EventParseError, WebhookConfigurationError, WebhookSignatureError,
)
from habit_billing.services.billing_webhook_handler import BillingWebhookHandler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


class WebhookResponse(BaseModel):
    """Standard webhook response."""
    received: bool = True
    duplicate: bool = False


def get_webhook_handler() -> BillingWebhookHandler:
    """
    FastAPI dependency building the webhook pipeline.

    Raises HTTP 503 if the database is not configured.
    """
    from habit_billing.database.session import get_session_factory
    from habit_billing.entitlements.service import get_entitlement_cache

    try:
        session_factory = get_session_factory()
    except ValueError:
        logger.error("DATABASE_URL not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured"
        )

    return BillingWebhookHandler(
        session_factory,
        cache=get_entitlement_cache(),
        settings=get_settings(),
    )


@router.post("/stripe", response_model=WebhookResponse)
async def handle_stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    handler: BillingWebhookHandler = Depends(get_webhook_handler),
):
    """
    Handle a Stripe billing webhook.

    Duplicates and stale or unhandled events are acknowledged with 200 so
    Stripe stops retrying them.
    """
    # Read raw body for signature verification
    body = await request.body()

    try:
        result = await run_in_threadpool(handler.handle, body, stripe_signature)
    except WebhookConfigurationError:
        logger.error("STRIPE_WEBHOOK_SECRET not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Webhook verification not configured"
        )
    except WebhookSignatureError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid signature: {e.reason}"
        )
    except EventParseError as e:
        logger.warning("Invalid webhook payload", extra={"error": str(e)})
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid event payload"
        )
    except Exception as e:
        logger.error("Error processing Stripe webhook", extra={
            "error": str(e),
            "error_type": type(e).__name__
        })
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed"
        )

    return WebhookResponse(received=True, duplicate=result.duplicate)
