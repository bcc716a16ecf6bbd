"""
Attendance aggregator: one record per (session, student), folded from chain
hand-offs, chain closures and rotating-token scans.

Marks are conditional UPDATEs, so an entry status is written at most once and
a concurrent writer can never overwrite it.
"""
import logging
from collections import Counter

from baton.database import db
from baton.models import (
    ABSENT, EARLY_LEAVE, LATE, LATE_ENTRY, LEFT_EARLY, PRESENT, AttendanceRecord,
)

logger = logging.getLogger(__name__)


def compute_final_status(entry_status, exit_verified, early_leave_at):
    """Final verdict for one student. Pure; earlier rules win."""
    if early_leave_at is not None:
        return EARLY_LEAVE
    if not entry_status:
        return ABSENT
    if exit_verified:
        return LATE if entry_status == LATE_ENTRY else PRESENT
    return LEFT_EARLY


class AttendanceAggregator:

    def __init__(self, clock):
        self.clock = clock

    def get(self, session_id, student_id):
        return AttendanceRecord.query.filter_by(
            session_id=session_id, student_id=student_id
        ).first()

    def ensure(self, session_id, student_id):
        """Fetch the record, creating it (uncommitted) on first appearance."""
        record = self.get(session_id, student_id)
        if record is None:
            record = AttendanceRecord(session_id=session_id, student_id=student_id,
                                      exit_verified=False)
            db.session.add(record)
            db.session.flush()
        return record

    def records_for(self, session_id):
        return (AttendanceRecord.query
                .filter_by(session_id=session_id)
                .order_by(AttendanceRecord.student_id)
                .all())

    def mark_entry(self, session_id, student_id, status, method, now):
        """Set the entry status unless one is already recorded."""
        record = self.ensure(session_id, student_id)
        updated = AttendanceRecord.query.filter_by(
            id=record.id, entry_status=None
        ).update({'entry_status': status, 'entry_method': method, 'entry_at': now})
        return record, updated == 1

    def mark_exit(self, session_id, student_id, now):
        record = self.ensure(session_id, student_id)
        updated = AttendanceRecord.query.filter_by(
            id=record.id, exit_verified=False
        ).update({'exit_verified': True, 'exit_verified_at': now})
        return record, updated == 1

    def mark_early_leave(self, session_id, student_id, now):
        """Record an early leave for a student who entered and has not left."""
        record = self.ensure(session_id, student_id)
        updated = (AttendanceRecord.query
                   .filter(AttendanceRecord.id == record.id,
                           AttendanceRecord.entry_status.isnot(None),
                           AttendanceRecord.early_leave_at.is_(None))
                   .update({'early_leave_at': now}, synchronize_session='fetch'))
        return record, updated == 1

    def finalize(self, session_id):
        """
        Write ``final_status`` on every record of the session. Safe to run
        again: the result depends only on the record fields.
        """
        records = self.records_for(session_id)
        for record in records:
            record.final_status = compute_final_status(
                record.entry_status, record.exit_verified, record.early_leave_at
            )
        logger.info("[SESSION] Finalized %d records for %s", len(records), session_id)
        return records

    @staticmethod
    def summarize(records):
        counts = Counter(record.final_status for record in records if record.final_status)
        return {status: counts.get(status, 0)
                for status in (PRESENT, LATE, LEFT_EARLY, EARLY_LEAVE, ABSENT)}
