"""
Stripe event envelope parsing.

Validates the webhook JSON envelope {id, type, created, data: {object}} and
exposes the fields the state machine reads from subscription, invoice and
checkout session objects.

Documentation: https://docs.stripe.com/api/events/object
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from habit_billing.errors import EventParseError

logger = logging.getLogger(__name__)

# Event types we handle
EVENT_CHECKOUT_COMPLETED = "checkout.session.completed"
EVENT_SUBSCRIPTION_CREATED = "customer.subscription.created"
EVENT_SUBSCRIPTION_UPDATED = "customer.subscription.updated"
EVENT_SUBSCRIPTION_DELETED = "customer.subscription.deleted"
EVENT_INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
EVENT_INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
EVENT_INVOICE_PAID = "invoice.paid"

SUBSCRIPTION_EVENTS = (
    EVENT_SUBSCRIPTION_CREATED,
    EVENT_SUBSCRIPTION_UPDATED,
    EVENT_SUBSCRIPTION_DELETED,
)
INVOICE_EVENTS = (
    EVENT_INVOICE_PAYMENT_FAILED,
    EVENT_INVOICE_PAYMENT_SUCCEEDED,
    EVENT_INVOICE_PAID,
)


class StripeEventData(BaseModel):
    """The data member of a Stripe event."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    obj: Dict[str, Any] = Field(alias="object")


class StripeEventEnvelope(BaseModel):
    """Minimal validated Stripe event envelope."""
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    type: str = Field(min_length=1)
    created: int
    data: StripeEventData
    livemode: bool = False


def _ref(value: Any) -> Optional[str]:
    """Stripe fields may be an ID string or an expanded object."""
    if isinstance(value, str) and value:
        return value
    if isinstance(value, dict):
        ref = value.get("id")
        if isinstance(ref, str) and ref:
            return ref
    return None


def _mapping(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


@dataclass(frozen=True)
class ProviderEvent:
    """A parsed provider event."""

    id: str
    type: str
    created: datetime
    obj: Dict[str, Any]
    livemode: bool = False

    @property
    def is_subscription_event(self) -> bool:
        return self.type in SUBSCRIPTION_EVENTS

    @property
    def is_invoice_event(self) -> bool:
        return self.type in INVOICE_EVENTS

    @property
    def customer_ref(self) -> Optional[str]:
        return _ref(self.obj.get("customer"))

    @property
    def subscription_ref(self) -> Optional[str]:
        """
        Provider subscription ID the event refers to.

        Subscription events carry it as the object id; invoices and checkout
        sessions carry it in 'subscription' (or, on newer API versions,
        parent.subscription_details.subscription).
        """
        if self.is_subscription_event:
            return _ref(self.obj.get("id"))
        ref = _ref(self.obj.get("subscription"))
        if ref:
            return ref
        details = _mapping(_mapping(self.obj.get("parent")).get("subscription_details"))
        return _ref(details.get("subscription"))

    @property
    def metadata(self) -> Dict[str, Any]:
        metadata = dict(_mapping(self.obj.get("metadata")))
        if self.is_invoice_event:
            details = _mapping(_mapping(self.obj.get("parent")).get("subscription_details"))
            for key, value in _mapping(details.get("metadata")).items():
                metadata.setdefault(key, value)
            legacy = _mapping(_mapping(self.obj.get("subscription_details")).get("metadata"))
            for key, value in legacy.items():
                metadata.setdefault(key, value)
        return metadata

    @property
    def user_id(self) -> Optional[str]:
        """Local user ID from client_reference_id or metadata.user_id."""
        ref = self.obj.get("client_reference_id")
        if isinstance(ref, str) and ref:
            return ref
        user_id = self.metadata.get("user_id")
        if isinstance(user_id, str) and user_id:
            return user_id
        return None

    @property
    def status(self) -> Optional[str]:
        return self.obj.get("status")

    @property
    def mode(self) -> Optional[str]:
        return self.obj.get("mode")

    @property
    def price_id(self) -> Optional[str]:
        """Price of the first subscription item, if present."""
        return _ref(self._first_item().get("price"))

    @property
    def period_start(self) -> Optional[datetime]:
        return _timestamp(self._period_field("current_period_start"))

    @property
    def period_end(self) -> Optional[datetime]:
        return _timestamp(self._period_field("current_period_end"))

    @property
    def cancel_at_period_end(self) -> bool:
        return bool(self.obj.get("cancel_at_period_end", False))

    def _period_field(self, name: str) -> Any:
        # Newer API versions moved billing periods onto subscription items
        if name in self.obj:
            return self.obj.get(name)
        return self._first_item().get(name)

    def _first_item(self) -> Dict[str, Any]:
        items = _mapping(self.obj.get("items")).get("data")
        if isinstance(items, list) and items:
            return _mapping(items[0])
        return {}


def parse_event(payload: Union[bytes, str, Dict[str, Any]]) -> ProviderEvent:
    """
    Parse and validate a webhook body into a ProviderEvent.

    Args:
        payload: Raw body bytes/str or an already decoded dict

    Returns:
        ProviderEvent

    Raises:
        EventParseError: If the body is not JSON or misses required fields
    """
    if isinstance(payload, (bytes, str)):
        try:
            payload = json.loads(payload)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise EventParseError(f"Invalid JSON body: {e}") from e

    if not isinstance(payload, dict):
        raise EventParseError("Event body must be a JSON object")

    try:
        envelope = StripeEventEnvelope.model_validate(payload)
    except ValidationError as e:
        raise EventParseError(f"Invalid event envelope: {e.error_count()} error(s)") from e

    created = _timestamp(envelope.created)
    if created is None:
        raise EventParseError("Invalid event created timestamp")

    return ProviderEvent(
        id=envelope.id,
        type=envelope.type,
        created=created,
        obj=envelope.data.obj,
        livemode=envelope.livemode,
    )
