"""
Exception hierarchy for the billing engine.

Route handlers map these to HTTP responses; everything below the route
layer raises plain exceptions.
"""

from typing import Optional


class BillingEngineError(Exception):
    """Base exception for billing engine errors."""
    pass


class WebhookSignatureError(BillingEngineError):
    """Raised when an inbound event fails authentication."""

    def __init__(self, reason: str, message: Optional[str] = None):
        self.reason = reason
        super().__init__(message or f"Webhook signature rejected: {reason}")


class EventParseError(BillingEngineError):
    """Raised when an event envelope is malformed."""
    pass


class DuplicateAdmissionError(BillingEngineError):
    """Raised when an abandoned admission is committed."""
    pass


class WebhookConfigurationError(BillingEngineError):
    """Raised when the webhook signing secret is not configured."""
    pass
