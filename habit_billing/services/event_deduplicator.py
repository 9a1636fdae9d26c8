"""
Event deduplication for provider webhooks.

Provides:
- EventDeduplicator.admit(): atomic INSERT ... ON CONFLICT DO NOTHING on
  processed_events; the row count is the first-seen decision
- EventAdmission: two-phase guard; leaving it without commit() deletes the
  record so the provider's redelivery is accepted
- purge_processed_events(): retention cleanup

CRITICAL: There is no read-then-write. Two concurrent deliveries of the same
event race on the primary key and exactly one of them wins.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from habit_billing.errors import DuplicateAdmissionError
from habit_billing.models.processed_event import ProcessedEvent

logger = logging.getLogger(__name__)

_PENDING = "pending"
_COMMITTED = "committed"
_ABANDONED = "abandoned"


class EventAdmission:
    """
    Guard for one admitted (or rejected) event.

    Usage:
        with deduplicator.admit(event.id, event.type) as admission:
            if admission.duplicate:
                return
            process(event)
            admission.commit()

    Exiting the block without commit() - normally or by exception - abandons
    the admission.
    """

    def __init__(
        self,
        deduplicator: "EventDeduplicator",
        event_id: str,
        event_type: str,
        first_seen: bool,
    ):
        self.event_id = event_id
        self.event_type = event_type
        self.first_seen = first_seen
        self._deduplicator = deduplicator
        self._state = _PENDING

    @property
    def duplicate(self) -> bool:
        return not self.first_seen

    @property
    def committed(self) -> bool:
        return self._state == _COMMITTED

    @property
    def abandoned(self) -> bool:
        return self._state == _ABANDONED

    def commit(self) -> None:
        """
        Confirm processing succeeded; the record becomes permanent.

        Raises:
            DuplicateAdmissionError: If the admission was already abandoned
        """
        if self._state == _ABANDONED:
            raise DuplicateAdmissionError(
                f"Admission for event {self.event_id} was already abandoned"
            )
        self._state = _COMMITTED

    def abandon(self) -> None:
        """
        Delete the record so a redelivery is processed. Idempotent.

        Duplicates never delete: the record belongs to the first delivery.
        """
        if self._state != _PENDING:
            return
        self._state = _ABANDONED
        if self.first_seen:
            self._deduplicator.release(self.event_id)

    def __enter__(self) -> "EventAdmission":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        if self._state != _PENDING:
            return False
        if exc_type is None:
            self.abandon()
            return False
        try:
            self.abandon()
        except SQLAlchemyError:
            # The original processing error is the one the caller must see
            logger.error(
                "Failed to release dedup record after processing error",
                extra={"event_id": self.event_id},
                exc_info=True,
            )
        return False

    def __repr__(self) -> str:
        return (
            f"<EventAdmission(event_id={self.event_id}, "
            f"first_seen={self.first_seen}, state={self._state})>"
        )


class EventDeduplicator:
    """
    Records provider event IDs exactly once.

    Uses its own short-lived sessions so the dedup record is committed
    independently of the processing transaction.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _insert_statement(self, dialect_name: str, values: dict):
        if dialect_name == "postgresql":
            return pg_insert(ProcessedEvent).values(**values).on_conflict_do_nothing(
                index_elements=["event_id"]
            )
        if dialect_name == "sqlite":
            return sqlite_insert(ProcessedEvent).values(**values).on_conflict_do_nothing(
                index_elements=["event_id"]
            )
        return None

    def _record(self, event_id: str, event_type: str) -> bool:
        values = {
            "event_id": event_id,
            "event_type": event_type,
            "received_at": self._clock(),
        }
        db = self._session_factory()
        try:
            stmt = self._insert_statement(db.get_bind().dialect.name, values)
            if stmt is not None:
                inserted = db.execute(stmt).rowcount == 1
                db.commit()
                return inserted

            db.add(ProcessedEvent(**values))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
            return True
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

    def admit(self, event_id: str, event_type: str) -> EventAdmission:
        """
        Record an event ID and report whether it is first-seen.

        Args:
            event_id: Provider event ID (evt_...)
            event_type: Event type, stored for audit

        Returns:
            EventAdmission guard

        Raises:
            SQLAlchemyError: If the store is unavailable
        """
        first_seen = self._record(event_id, event_type)
        if first_seen:
            logger.debug("Event admitted", extra={"event_id": event_id, "event_type": event_type})
        else:
            logger.info(
                "Duplicate event rejected",
                extra={"event_id": event_id, "event_type": event_type},
            )
        return EventAdmission(self, event_id, event_type, first_seen)

    def release(self, event_id: str) -> bool:
        """
        Delete a dedup record and commit the deletion.

        Returns:
            True if a record was deleted
        """
        db = self._session_factory()
        try:
            deleted = db.query(ProcessedEvent).filter(
                ProcessedEvent.event_id == event_id
            ).delete(synchronize_session=False)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info("Dedup record released", extra={"event_id": event_id, "deleted": deleted})
        return deleted > 0

    def is_processed(self, event_id: str) -> bool:
        db = self._session_factory()
        try:
            return db.query(ProcessedEvent.event_id).filter(
                ProcessedEvent.event_id == event_id
            ).first() is not None
        finally:
            db.close()

    def purge_processed_events(
        self,
        older_than: timedelta,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Delete dedup records received before now - older_than.

        Args:
            older_than: Retention window
            now: Reference time (defaults to the deduplicator clock)

        Returns:
            Number of records deleted
        """
        cutoff = (now or self._clock()) - older_than
        db = self._session_factory()
        try:
            deleted = db.query(ProcessedEvent).filter(
                ProcessedEvent.received_at < cutoff
            ).delete(synchronize_session=False)
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            raise
        finally:
            db.close()

        if deleted:
            logger.info(
                "Purged processed events",
                extra={"deleted": deleted, "cutoff": cutoff.isoformat()},
            )
        return deleted
