"""
Unit tests for EventDeduplicator and EventAdmission.

Tests cover:
- Atomic first-seen decision
- Two-phase admission (commit, abandon, context manager release)
- Retention purge
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from habit_billing.errors import DuplicateAdmissionError
from habit_billing.models import ProcessedEvent
from habit_billing.services.event_deduplicator import EventAdmission, EventDeduplicator


@pytest.fixture
def deduplicator(session_factory, clock):
    return EventDeduplicator(session_factory, clock=clock)


class TestAdmit:
    """Tests for the first-seen decision."""

    def test_first_delivery_is_first_seen(self, deduplicator):
        admission = deduplicator.admit("evt_1", "invoice.paid")

        assert admission.first_seen is True
        assert admission.duplicate is False
        assert deduplicator.is_processed("evt_1") is True

    def test_second_delivery_is_duplicate(self, deduplicator):
        deduplicator.admit("evt_1", "invoice.paid").commit()

        admission = deduplicator.admit("evt_1", "invoice.paid")

        assert admission.duplicate is True

    def test_record_is_visible_to_other_sessions_immediately(self, deduplicator, db_session):
        deduplicator.admit("evt_1", "invoice.paid")

        row = db_session.query(ProcessedEvent).filter_by(event_id="evt_1").one()
        assert row.event_type == "invoice.paid"

    def test_received_at_uses_clock(self, deduplicator, db_session, clock):
        deduplicator.admit("evt_1", "invoice.paid")

        row = db_session.query(ProcessedEvent).filter_by(event_id="evt_1").one()
        assert row.received_at == clock.now


class TestEventAdmission:
    """Tests for the two-phase guard."""

    def test_abandon_releases_record(self, deduplicator):
        admission = deduplicator.admit("evt_1", "invoice.paid")

        admission.abandon()

        assert deduplicator.is_processed("evt_1") is False
        assert deduplicator.admit("evt_1", "invoice.paid").first_seen is True

    def test_abandon_is_idempotent(self, deduplicator):
        admission = deduplicator.admit("evt_1", "invoice.paid")

        admission.abandon()
        admission.abandon()

        assert admission.abandoned is True

    def test_commit_after_abandon_raises(self, deduplicator):
        admission = deduplicator.admit("evt_1", "invoice.paid")
        admission.abandon()

        with pytest.raises(DuplicateAdmissionError):
            admission.commit()

    def test_abandon_after_commit_keeps_record(self, deduplicator):
        admission = deduplicator.admit("evt_1", "invoice.paid")
        admission.commit()

        admission.abandon()

        assert deduplicator.is_processed("evt_1") is True

    def test_duplicate_abandon_never_deletes_first_record(self, deduplicator):
        deduplicator.admit("evt_1", "invoice.paid").commit()
        duplicate = deduplicator.admit("evt_1", "invoice.paid")

        duplicate.abandon()

        assert deduplicator.is_processed("evt_1") is True

    def test_context_exit_without_commit_releases(self, deduplicator):
        with deduplicator.admit("evt_1", "invoice.paid") as admission:
            assert admission.first_seen is True

        assert deduplicator.is_processed("evt_1") is False

    def test_context_exit_on_exception_releases_and_propagates(self, deduplicator):
        with pytest.raises(RuntimeError):
            with deduplicator.admit("evt_1", "invoice.paid"):
                raise RuntimeError("processing failed")

        assert deduplicator.is_processed("evt_1") is False

    def test_context_exit_after_commit_keeps_record(self, deduplicator):
        with deduplicator.admit("evt_1", "invoice.paid") as admission:
            admission.commit()

        assert deduplicator.is_processed("evt_1") is True

    def test_release_failure_does_not_mask_processing_error(self):
        from sqlalchemy.exc import OperationalError

        dedup = MagicMock()
        dedup.release.side_effect = OperationalError("DELETE", {}, Exception("db down"))
        admission = EventAdmission(dedup, "evt_1", "invoice.paid", first_seen=True)

        with pytest.raises(ValueError):
            with admission:
                raise ValueError("original")

        dedup.release.assert_called_once_with("evt_1")


class TestPurge:
    """Tests for processed-event retention."""

    def test_purges_only_old_records(self, deduplicator, clock):
        deduplicator.admit("evt_old", "invoice.paid").commit()
        clock.advance(days=31)
        deduplicator.admit("evt_new", "invoice.paid").commit()

        deleted = deduplicator.purge_processed_events(timedelta(days=30))

        assert deleted == 1
        assert deduplicator.is_processed("evt_old") is False
        assert deduplicator.is_processed("evt_new") is True

    def test_purge_with_nothing_to_delete(self, deduplicator):
        assert deduplicator.purge_processed_events(timedelta(days=30)) == 0
