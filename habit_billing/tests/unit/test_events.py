"""
Unit tests for Stripe event envelope parsing.
"""

import pytest

from habit_billing.errors import EventParseError
from habit_billing.integrations.stripe.events import (
    EVENT_INVOICE_PAYMENT_FAILED,
    EVENT_SUBSCRIPTION_UPDATED,
    parse_event,
)
from habit_billing.tests.helpers import (
    checkout_object,
    encode,
    event_payload,
    invoice_object,
    make_event,
    subscription_object,
)

CREATED = 1_772_366_400


class TestParseEvent:
    """Tests for parse_event."""

    def test_parses_bytes(self):
        event = parse_event(encode(event_payload("invoice.paid", invoice_object(), CREATED, "evt_1")))

        assert event.id == "evt_1"
        assert event.type == "invoice.paid"
        assert int(event.created.timestamp()) == CREATED
        assert event.created.tzinfo is not None

    @pytest.mark.parametrize("body", [b"not json", b"[]", b'"text"'])
    def test_non_object_body_raises(self, body):
        with pytest.raises(EventParseError):
            parse_event(body)

    @pytest.mark.parametrize("missing", ["id", "type", "created", "data"])
    def test_missing_required_field_raises(self, missing):
        payload = event_payload("invoice.paid", invoice_object(), CREATED)
        del payload[missing]

        with pytest.raises(EventParseError):
            parse_event(payload)

    def test_non_integer_created_raises(self):
        payload = event_payload("invoice.paid", invoice_object(), CREATED)
        payload["created"] = "yesterday"

        with pytest.raises(EventParseError):
            parse_event(payload)


class TestEventFields:
    """Tests for the fields read by the state machine."""

    def test_subscription_event_refs(self):
        event = make_event(
            EVENT_SUBSCRIPTION_UPDATED,
            subscription_object(tier="pro", user_id="user-1", price_id="price_pro_monthly"),
            CREATED,
        )

        assert event.subscription_ref == "sub_123"
        assert event.customer_ref == "cus_123"
        assert event.metadata["tier"] == "pro"
        assert event.user_id == "user-1"
        assert event.price_id == "price_pro_monthly"
        assert event.status == "active"

    def test_expanded_customer_object(self):
        obj = subscription_object()
        obj["customer"] = {"id": "cus_999", "object": "customer"}

        assert make_event(EVENT_SUBSCRIPTION_UPDATED, obj, CREATED).customer_ref == "cus_999"

    def test_period_falls_back_to_first_item(self):
        obj = subscription_object(price_id="price_plus_monthly")
        obj["items"]["data"][0]["current_period_end"] = CREATED + 86400

        event = make_event(EVENT_SUBSCRIPTION_UPDATED, obj, CREATED)

        assert int(event.period_end.timestamp()) == CREATED + 86400

    def test_invoice_subscription_from_parent_details(self):
        obj = invoice_object(subscription_ref=None)
        obj["parent"] = {
            "type": "subscription_details",
            "subscription_details": {
                "subscription": "sub_parent",
                "metadata": {"user_id": "user-7"},
            },
        }

        event = make_event(EVENT_INVOICE_PAYMENT_FAILED, obj, CREATED)

        assert event.subscription_ref == "sub_parent"
        assert event.user_id == "user-7"
        assert event.is_invoice_event is True

    def test_checkout_user_prefers_client_reference(self):
        obj = checkout_object("user-1")
        obj["metadata"]["user_id"] = "user-other"

        event = make_event("checkout.session.completed", obj, CREATED)

        assert event.user_id == "user-1"
        assert event.mode == "subscription"

    @pytest.mark.parametrize("items", [[], {"data": []}, {"data": ["si_1"]}, "items", {"data": [{"price": None}]}])
    def test_malformed_items_read_as_missing(self, items):
        obj = subscription_object()
        obj["items"] = items

        event = make_event(EVENT_SUBSCRIPTION_UPDATED, obj, CREATED)

        assert event.price_id is None
        assert event.period_end is None

    @pytest.mark.parametrize("parent", ["sub_parent", [], {"subscription_details": "sub_parent"}])
    def test_malformed_invoice_parent_reads_as_missing(self, parent):
        obj = invoice_object(subscription_ref=None)
        obj["parent"] = parent
        obj["metadata"] = "user-1"

        event = make_event(EVENT_INVOICE_PAYMENT_FAILED, obj, CREATED)

        assert event.subscription_ref is None
        assert event.metadata == {}
        assert event.user_id is None
