"""
ProcessedEvent model for tracking provider webhooks already admitted.

Used for idempotency - a row means "do not process this event again".
The row is inserted before processing and removed if processing fails, so a
redelivery of the same event is accepted.
"""

from sqlalchemy import Column, String, Index

from habit_billing.models.base import Base, UTCDateTime, utcnow


class ProcessedEvent(Base):
    """
    Tracks provider event IDs for deduplication.

    Stripe delivers webhooks at least once. The primary key on event_id is
    the only gate: the insert either succeeds (first seen) or conflicts
    (duplicate).
    """

    __tablename__ = "processed_events"

    event_id = Column(
        String(255),
        primary_key=True,
        comment="Provider event ID (evt_...)"
    )

    event_type = Column(
        String(255),
        nullable=False,
        comment="Event type (e.g., invoice.payment_failed)"
    )

    received_at = Column(
        UTCDateTime(),
        nullable=False,
        default=utcnow,
        comment="When the event was admitted"
    )

    __table_args__ = (
        Index("ix_processed_events_received_at", "received_at"),
    )

    def __repr__(self) -> str:
        return f"<ProcessedEvent(event_id={self.event_id}, type={self.event_type})>"
