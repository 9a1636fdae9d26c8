"""
Builders for Stripe event payloads and billing test data.
"""

import json
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from habit_billing.integrations.stripe.events import ProviderEvent, parse_event
from habit_billing.models import Habit, HabitCompletion, Subscription

# Earlier than the test clock so event watermarks compare predictably
ROW_TIME = datetime(2026, 2, 1, tzinfo=timezone.utc)


def unix(dt: datetime) -> int:
    return int(dt.timestamp())


def event_payload(
    event_type: str,
    obj: Dict[str, Any],
    created: int,
    event_id: Optional[str] = None,
) -> Dict[str, Any]:
    """A Stripe event envelope."""
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "created": created,
        "livemode": False,
        "data": {"object": obj},
    }


def make_event(
    event_type: str,
    obj: Dict[str, Any],
    created: int,
    event_id: Optional[str] = None,
) -> ProviderEvent:
    return parse_event(event_payload(event_type, obj, created, event_id))


def encode(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload).encode("utf-8")


def subscription_object(
    subscription_ref: str = "sub_123",
    customer_ref: str = "cus_123",
    status: str = "active",
    tier: Optional[str] = None,
    user_id: Optional[str] = None,
    price_id: Optional[str] = None,
    period_start: Optional[int] = None,
    period_end: Optional[int] = None,
    cancel_at_period_end: bool = False,
) -> Dict[str, Any]:
    metadata = {}
    if tier is not None:
        metadata["tier"] = tier
    if user_id is not None:
        metadata["user_id"] = user_id
    obj = {
        "id": subscription_ref,
        "object": "subscription",
        "customer": customer_ref,
        "status": status,
        "metadata": metadata,
        "cancel_at_period_end": cancel_at_period_end,
        "items": {"object": "list", "data": []},
    }
    if price_id is not None:
        obj["items"]["data"].append({"id": "si_1", "price": {"id": price_id}})
    if period_start is not None:
        obj["current_period_start"] = period_start
    if period_end is not None:
        obj["current_period_end"] = period_end
    return obj


def invoice_object(
    subscription_ref: Optional[str] = "sub_123",
    customer_ref: str = "cus_123",
    invoice_id: str = "in_123",
) -> Dict[str, Any]:
    return {
        "id": invoice_id,
        "object": "invoice",
        "customer": customer_ref,
        "subscription": subscription_ref,
    }


def checkout_object(
    user_id: Optional[str],
    tier: Optional[str] = "plus",
    customer_ref: str = "cus_123",
    subscription_ref: Optional[str] = "sub_123",
    mode: str = "subscription",
    use_client_reference: bool = True,
) -> Dict[str, Any]:
    metadata = {}
    if tier is not None:
        metadata["tier"] = tier
    if user_id is not None and not use_client_reference:
        metadata["user_id"] = user_id
    return {
        "id": "cs_test_123",
        "object": "checkout.session",
        "mode": mode,
        "customer": customer_ref,
        "subscription": subscription_ref,
        "client_reference_id": user_id if use_client_reference else None,
        "metadata": metadata,
    }


def add_subscription(
    db,
    user_id: str,
    tier: str = "plus",
    status: str = "active",
    updated_at: Optional[datetime] = None,
    created_at: Optional[datetime] = None,
    subscription_ref: Optional[str] = "sub_123",
    customer_ref: Optional[str] = "cus_123",
    grace_deadline: Optional[datetime] = None,
) -> Subscription:
    """Insert and commit a subscription row."""
    subscription = Subscription(
        user_id=user_id,
        tier=tier,
        status=status,
        external_subscription_ref=subscription_ref,
        external_customer_ref=customer_ref,
        grace_deadline=grace_deadline,
        cancel_at_period_end=False,
    )
    subscription.updated_at = updated_at or ROW_TIME
    subscription.created_at = created_at or ROW_TIME
    db.add(subscription)
    db.commit()
    return subscription


def add_habits(db, user_id: str, count: int, start: Optional[datetime] = None) -> List[Habit]:
    """Insert and commit habits with increasing sort_order, each with one completion."""
    habits = []
    for i in range(count):
        habit = Habit(user_id=user_id, name=f"Habit {i + 1}", sort_order=i)
        if start is not None:
            habit.created_at = start + timedelta(minutes=i)
            habit.updated_at = habit.created_at
        db.add(habit)
        habits.append(habit)
    db.flush()
    for habit in habits:
        db.add(HabitCompletion(
            habit_id=habit.id,
            user_id=user_id,
            completed_on=date(2026, 2, 1),
        ))
    db.commit()
    return habits


def habit_states(db, user_id: str) -> List[bool]:
    """is_archived flags in sort order, excluding soft-deleted habits."""
    db.expire_all()
    habits = db.query(Habit).filter(
        Habit.user_id == user_id,
        Habit.deleted_at.is_(None),
    ).order_by(Habit.sort_order).all()
    return [habit.is_archived for habit in habits]


def reload_subscription(db, subscription_id: str) -> Subscription:
    db.expire_all()
    return db.query(Subscription).filter(Subscription.id == subscription_id).one()
