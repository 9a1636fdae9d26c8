"""
Subscription model for tracking each user's billing relationship.

CRITICAL: At most one live (active, trialing, past_due) row per user.
Rows are never hard-deleted; a canceled row is kept for audit and superseded
by a fresh row when the user subscribes again.
"""

from enum import Enum

from sqlalchemy import (
    Boolean, CheckConstraint, Column, Enum as SAEnum, Index, String, text,
)

from habit_billing.models.base import Base, UTCDateTime, generate_uuid, utcnow


class SubscriptionTier(str, Enum):
    """Service levels, ordered from least to most capable."""
    FREE = "free"
    PLUS = "plus"
    PRO = "pro"


class SubscriptionStatus(str, Enum):
    """Subscription status values."""
    ACTIVE = "active"            # Paid and in good standing
    TRIALING = "trialing"        # Trial period, full tier access
    PAST_DUE = "past_due"        # Payment failed, inside grace period
    CANCELED = "canceled"        # Downgraded, row retained for audit
    INACTIVE = "inactive"        # Never activated / unknown terminal state


LIVE_STATUSES = (
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.TRIALING.value,
    SubscriptionStatus.PAST_DUE.value,
)

TIER_ENUM = SAEnum("free", "plus", "pro", name="subscription_tier")

_LIVE_PREDICATE = text("status IN ('active', 'trialing', 'past_due')")


class Subscription(Base):
    """
    Tracks the current-or-most-recent subscription for a user.

    CRITICAL DESIGN:
    - updated_at is the ordering watermark: the creation time of the newest
      provider event applied to this row. It is written explicitly by the
      engine and has no ORM onupdate hook.
    - grace_deadline is set if and only if status is past_due.
    """

    __tablename__ = "subscriptions"

    id = Column(
        String(36),
        primary_key=True,
        default=generate_uuid
    )

    user_id = Column(
        String(36),
        nullable=False,
        index=True,
        comment="Owning user identity"
    )

    tier = Column(
        TIER_ENUM,
        nullable=False,
        default=SubscriptionTier.FREE.value,
        comment="Stored tier; effective tier also depends on status"
    )

    status = Column(
        SAEnum(
            "active", "trialing", "past_due", "canceled", "inactive",
            name="subscription_status"
        ),
        nullable=False,
        default=SubscriptionStatus.ACTIVE.value,
        index=True,
        comment="Current subscription status"
    )

    # Provider references
    external_customer_ref = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Provider customer ID (cus_...)"
    )
    external_subscription_ref = Column(
        String(255),
        nullable=True,
        index=True,
        comment="Provider subscription ID (sub_...)"
    )

    # Billing period
    period_start = Column(UTCDateTime(), nullable=True)
    period_end = Column(UTCDateTime(), nullable=True)
    cancel_at_period_end = Column(
        Boolean,
        nullable=False,
        default=False
    )

    # Grace period for failed payments
    grace_deadline = Column(
        UTCDateTime(),
        nullable=True,
        comment="End of grace period; set only while past_due"
    )

    canceled_at = Column(
        UTCDateTime(),
        nullable=True,
        comment="When the row was moved to canceled"
    )

    last_payment_event_at = Column(
        UTCDateTime(),
        nullable=True,
        comment="Creation time of the newest invoice event applied"
    )

    created_at = Column(
        UTCDateTime(),
        nullable=False,
        default=utcnow
    )
    updated_at = Column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
        comment="Ordering watermark, see class docstring"
    )

    __table_args__ = (
        Index(
            "uq_subscriptions_user_live",
            "user_id",
            unique=True,
            postgresql_where=_LIVE_PREDICATE,
            sqlite_where=_LIVE_PREDICATE,
        ),
        Index("ix_subscriptions_grace_deadline", "status", "grace_deadline"),
        CheckConstraint(
            "(status = 'past_due' AND grace_deadline IS NOT NULL) "
            "OR (status != 'past_due' AND grace_deadline IS NULL)",
            name="chk_grace_deadline_past_due",
        ),
        CheckConstraint(
            "tier != 'free' OR grace_deadline IS NULL",
            name="chk_free_tier_no_grace",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, "
            f"tier={self.tier}, status={self.status})>"
        )

    @property
    def is_live(self) -> bool:
        """Live rows grant their stored tier."""
        return self.status in LIVE_STATUSES

    @property
    def effective_tier(self) -> str:
        """Tier used for entitlements: stored tier while live, free otherwise."""
        if self.is_live:
            return self.tier
        return SubscriptionTier.FREE.value
