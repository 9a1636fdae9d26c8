"""
Stripe Billing API client for checkout and customer portal flows.

Uses the Stripe REST API (form-encoded requests, JSON responses). This
client never changes subscription state locally; state only moves when the
resulting webhooks are processed.

Documentation: https://docs.stripe.com/api
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

STRIPE_API_BASE = "https://api.stripe.com/v1"


@dataclass
class CheckoutSession:
    """A created Stripe Checkout session."""
    id: str
    url: str
    customer_id: Optional[str] = None


@dataclass
class PortalSession:
    """A created Stripe customer portal session."""
    id: str
    url: str


class StripeBillingError(Exception):
    """Base exception for Stripe Billing API errors."""
    pass


class StripeAPIError(StripeBillingError):
    """Error communicating with the Stripe API."""
    def __init__(self, message: str, status_code: Optional[int] = None, response: Optional[dict] = None):
        super().__init__(message)
        self.status_code = status_code
        self.response = response


class StripeBillingClient:
    """
    Client for Stripe Billing API operations.

    Handles:
    - Creating customers
    - Creating subscription checkout sessions
    - Creating customer portal sessions

    SECURITY: The secret key must never be logged.
    """

    def __init__(
        self,
        secret_key: str,
        base_url: str = STRIPE_API_BASE,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize billing client.

        Args:
            secret_key: Stripe secret API key (sk_...)
            base_url: API base URL, overridable for tests
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        if not secret_key:
            raise ValueError("secret_key is required")

        self.base_url = base_url.rstrip("/")

        # HTTP client with appropriate timeouts
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(30.0, connect=10.0),
            headers={"Authorization": f"Bearer {secret_key}"},
            transport=transport,
        )

    async def close(self):
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def _post(self, path: str, data: Dict[str, Any]) -> dict:
        """
        POST a form-encoded request to the Stripe API.

        Args:
            path: API path (e.g. '/customers')
            data: Form fields; None values are dropped

        Returns:
            Decoded JSON response

        Raises:
            StripeAPIError: If the API call fails
        """
        form = {k: str(v) for k, v in data.items() if v is not None}

        try:
            response = await self._client.post(f"{self.base_url}{path}", data=form)
        except httpx.TimeoutException:
            logger.error("Stripe API timeout", extra={"path": path})
            raise StripeAPIError("Request timed out")
        except httpx.RequestError as e:
            logger.error("Stripe API request error", extra={"path": path, "error": str(e)})
            raise StripeAPIError(f"Request failed: {e}")

        if response.status_code == 401:
            logger.error("Stripe API authentication failed", extra={
                "path": path,
                "status_code": response.status_code
            })
            raise StripeAPIError(
                "Authentication failed - secret key may be invalid",
                status_code=401
            )

        if response.status_code == 429:
            logger.warning("Stripe API rate limited", extra={"path": path})
            raise StripeAPIError(
                "Rate limited - please retry after a delay",
                status_code=429
            )

        if response.status_code >= 400:
            body = None
            try:
                body = response.json()
            except ValueError:
                body = None
            message = ((body or {}).get("error") or {}).get("message")
            logger.error("Stripe API error", extra={
                "path": path,
                "status_code": response.status_code,
                "response_text": response.text[:500]
            })
            raise StripeAPIError(
                f"Stripe API error: {response.status_code}" + (f" - {message}" if message else ""),
                status_code=response.status_code,
                response=body
            )

        try:
            return response.json()
        except ValueError:
            raise StripeAPIError(
                "Stripe API returned invalid JSON",
                status_code=response.status_code
            )

    async def create_customer(
        self,
        email: Optional[str],
        name: Optional[str],
        user_id: str,
    ) -> str:
        """
        Create a Stripe customer for a user.

        Args:
            email: User email
            name: Display name
            user_id: Local user ID, stored in customer metadata

        Returns:
            Customer ID (cus_...)

        Raises:
            StripeAPIError: If the API call fails or returns no ID
        """
        result = await self._post("/customers", {
            "email": email,
            "name": name,
            "metadata[user_id]": user_id,
        })
        customer_id = result.get("id")
        if not customer_id:
            raise StripeAPIError("No customer ID from Stripe", response=result)

        logger.info("Stripe customer created", extra={
            "user_id": user_id,
            "customer_id": customer_id,
        })
        return customer_id

    async def create_checkout_session(
        self,
        customer_id: str,
        price_id: str,
        user_id: str,
        tier: str,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutSession:
        """
        Create a subscription-mode Checkout session.

        The user ID and tier are attached to both the session and the
        resulting subscription so later webhooks can be attributed.

        Returns:
            CheckoutSession with the hosted checkout URL

        Raises:
            StripeAPIError: If the API call fails or returns no URL
        """
        result = await self._post("/checkout/sessions", {
            "customer": customer_id,
            "mode": "subscription",
            "line_items[0][price]": price_id,
            "line_items[0][quantity]": 1,
            "client_reference_id": user_id,
            "metadata[user_id]": user_id,
            "metadata[tier]": tier,
            "subscription_data[metadata][user_id]": user_id,
            "subscription_data[metadata][tier]": tier,
            "success_url": success_url,
            "cancel_url": cancel_url,
        })
        url = result.get("url")
        if not url:
            raise StripeAPIError("No checkout URL from Stripe", response=result)

        logger.info("Checkout session created", extra={
            "user_id": user_id,
            "tier": tier,
            "session_id": result.get("id"),
        })
        return CheckoutSession(id=result.get("id", ""), url=url, customer_id=customer_id)

    async def create_portal_session(self, customer_id: str, return_url: str) -> PortalSession:
        """
        Create a billing portal session for self-service management.

        Raises:
            StripeAPIError: If the API call fails or returns no URL
        """
        result = await self._post("/billing_portal/sessions", {
            "customer": customer_id,
            "return_url": return_url,
        })
        url = result.get("url")
        if not url:
            raise StripeAPIError("No portal URL from Stripe", response=result)
        return PortalSession(id=result.get("id", ""), url=url)
