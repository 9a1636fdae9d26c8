"""
FastAPI application entry point for the habit billing engine.

Exposes the Stripe webhook endpoint and a health probe. The entitlement
cache is created at startup and shared with the webhook pipeline.
"""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI

from habit_billing import __version__
from habit_billing.api.routes import health
from habit_billing.api.routes import webhooks_stripe
from habit_billing.config.settings import get_settings

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting habit billing API")
    settings = get_settings()

    app.state.webhook_configured = bool(settings.stripe_webhook_secret)
    if not app.state.webhook_configured:
        logger.warning(
            "STRIPE_WEBHOOK_SECRET is not set. Stripe webhooks will return 503."
        )

    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        logger.error("DATABASE_URL is not set. Stripe webhooks will return 503.")
        app.state.database_configured = False
    else:
        # Mask credentials for safe logging
        masked = database_url.split("@")[-1] if "@" in database_url else database_url.split("://")[0]
        logger.info("DATABASE_URL configured", extra={"host_db": masked})
        app.state.database_configured = True

    if not settings.price_tiers:
        logger.warning("No STRIPE_PRICE_* configured; tiers resolve from metadata only")

    yield

    # Shutdown
    logger.info("Shutting down habit billing API")


# Create FastAPI app
app = FastAPI(
    title="Habit Billing API",
    description="Subscription lifecycle and entitlement engine",
    version=__version__,
    lifespan=lifespan
)

# Include health route (bypasses authentication)
app.include_router(health.router)

# Include Stripe webhook routes (uses signature verification, not JWT)
app.include_router(webhooks_stripe.router)
