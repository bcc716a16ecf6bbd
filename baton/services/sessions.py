"""
Session and phase manager: session lifecycle, roster, and the rotating
late-entry / early-leave windows.

Late entry opens on its own at ``start_at + late_cutoff_minutes``; early leave
is toggled by the teacher. While a window is open its token is re-minted every
ROTATION_INTERVAL_SECONDS by a per-session job, and every job a session owns
is cancelled when it ends.
"""
import logging
from datetime import timedelta

from baton.database import db
from baton.errors import Forbidden, InvalidRequest, InvalidState, NotFound
from baton.models import (
    ACTIVE, EARLY_LEAVE, ENDED, LATE_ENTRY, AttendanceRecord, ClassSession, RotatingToken,
)
from baton.services.common import commit, db_errors, guard_active, load_session
from baton.utils.clock import as_utc, isoformat, parse_datetime
from baton.utils.security import generate_id

logger = logging.getLogger(__name__)

ROTATING_KINDS = (LATE_ENTRY, EARLY_LEAVE)


def rotation_job_id(session_id, kind):
    return f"rotate:{kind}:{session_id}"


def _int_field(data, name, default, minimum=0):
    value = data.get(name, default)
    try:
        value = int(value)
    except (TypeError, ValueError):
        raise InvalidRequest(f'{name} must be an integer')
    if value < minimum:
        raise InvalidRequest(f'{name} must be at least {minimum}')
    return value


def _parse_constraints(raw):
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise InvalidRequest('constraints must be an object')

    constraints = {}
    geofence = raw.get('geofence')
    if geofence:
        try:
            constraints['geofence'] = {
                'latitude': float(geofence['latitude']),
                'longitude': float(geofence['longitude']),
                'radiusMeters': float(geofence['radiusMeters']),
            }
        except (KeyError, TypeError, ValueError):
            raise InvalidRequest('geofence needs numeric latitude, longitude and radiusMeters')
    allowlist = raw.get('wifiAllowlist')
    if allowlist:
        if not isinstance(allowlist, list):
            raise InvalidRequest('wifiAllowlist must be a list')
        constraints['wifiAllowlist'] = [str(item) for item in allowlist if str(item).strip()]
    return constraints or None


class SessionManager:

    def __init__(self, clock, issuer, attendance, publisher, scheduler=None,
                 rotation_interval=55, late_cutoff_minutes=15, exit_window_minutes=10):
        self.clock = clock
        self.issuer = issuer
        self.attendance = attendance
        self.publisher = publisher
        self.scheduler = scheduler
        self.rotation_interval = rotation_interval
        self.late_cutoff_minutes = late_cutoff_minutes
        self.exit_window_minutes = exit_window_minutes

    # ─── Lifecycle ──────────────────────────────────────────

    def create(self, teacher_id, data):
        """
        Create a session owned by ``teacher_id``.

        Expects:
        {
            "classId": "CS101",
            "startAt": "2026-03-02T09:00:00Z",      (optional, defaults to now)
            "endAt": "2026-03-02T10:00:00Z",        (optional)
            "lateCutoffMinutes": 15,
            "exitWindowMinutes": 10,
            "constraints": {"geofence": {...}, "wifiAllowlist": [...]},
            "enforceLocation": false
        }
        """
        class_id = str(data.get('classId') or '').strip()
        if not class_id:
            raise InvalidRequest('classId is required')

        now = self.clock.now()
        try:
            start_at = parse_datetime(data.get('startAt')) or now
            end_at = parse_datetime(data.get('endAt'))
        except (TypeError, ValueError):
            raise InvalidRequest('startAt and endAt must be ISO-8601 timestamps')
        if end_at is not None and end_at <= start_at:
            raise InvalidRequest('endAt must be after startAt')

        session = ClassSession(
            session_id=generate_id('sess'),
            class_id=class_id,
            teacher_id=teacher_id,
            start_at=start_at,
            end_at=end_at,
            late_cutoff_minutes=_int_field(data, 'lateCutoffMinutes', self.late_cutoff_minutes),
            exit_window_minutes=_int_field(data, 'exitWindowMinutes', self.exit_window_minutes),
            status=ACTIVE,
            early_leave_active=False,
            constraints=_parse_constraints(data.get('constraints')),
            enforce_location=bool(data.get('enforceLocation', False)),
            created_at=now,
        )
        db.session.add(session)
        commit()

        self._schedule_rotation(session, LATE_ENTRY, start_at=max(session.late_cutoff_at, now))
        logger.info("[SESSION] Created %s for %s by %s", session.session_id, class_id, teacher_id)
        return session

    def get(self, session_id):
        return load_session(session_id)

    def owned(self, session_id, teacher_id):
        session = load_session(session_id)
        if session.teacher_id != teacher_id:
            raise Forbidden('Only the session owner can do this')
        return session

    def join(self, session_id, student_id):
        """Enroll a student. Returns ``(record, created)``."""
        session = load_session(session_id, require_active=True)
        record = self.attendance.get(session.session_id, student_id)
        if record is not None:
            if record.joined_at is None:
                record.joined_at = self.clock.now()
                commit()
            return record, False

        with db_errors():
            guard_active(session.session_id)
            record = self.attendance.ensure(session.session_id, student_id)
            record.joined_at = self.clock.now()
            db.session.commit()
        logger.info("[SESSION] %s joined %s", student_id, session_id)
        return record, True

    def for_teacher(self, teacher_id):
        """Every session owned by ``teacher_id``, most recent start first."""
        return (ClassSession.query
                .filter_by(teacher_id=teacher_id)
                .order_by(ClassSession.start_at.desc(), ClassSession.created_at.desc())
                .all())

    def update(self, session_id, teacher_id, data):
        """
        Change the timing, location constraints or class of an ACTIVE session.

        Accepts any subset of the fields ``create`` takes. Moving the start or
        the late cutoff re-arms the late-entry rotation job.
        """
        session = self.owned(session_id, teacher_id)
        if session.status != ACTIVE:
            raise InvalidState('Session is not active')
        if not data:
            raise InvalidRequest('No update fields provided')

        try:
            start_at = parse_datetime(data['startAt']) if 'startAt' in data else session.start_at
            end_at = parse_datetime(data['endAt']) if 'endAt' in data else session.end_at
        except (TypeError, ValueError):
            raise InvalidRequest('startAt and endAt must be ISO-8601 timestamps')
        if start_at is None:
            raise InvalidRequest('startAt cannot be cleared')
        if end_at is not None and end_at <= start_at:
            raise InvalidRequest('endAt must be after startAt')

        changes = {'start_at': start_at, 'end_at': end_at}
        if 'classId' in data:
            class_id = str(data.get('classId') or '').strip()
            if not class_id:
                raise InvalidRequest('classId cannot be empty')
            changes['class_id'] = class_id
        if 'lateCutoffMinutes' in data:
            changes['late_cutoff_minutes'] = _int_field(data, 'lateCutoffMinutes', None)
        if 'exitWindowMinutes' in data:
            changes['exit_window_minutes'] = _int_field(data, 'exitWindowMinutes', None)
        if 'constraints' in data:
            changes['constraints'] = _parse_constraints(data['constraints'])
        if 'enforceLocation' in data:
            changes['enforce_location'] = bool(data['enforceLocation'])

        cutoff_before = session.late_cutoff_at
        with db_errors():
            guard_active(session_id)
            for name, value in changes.items():
                setattr(session, name, value)
            db.session.commit()

        if session.late_cutoff_at != cutoff_before:
            now = self.clock.now()
            self._schedule_rotation(session, LATE_ENTRY, start_at=max(session.late_cutoff_at, now))
        logger.info("[SESSION] Updated %s (%s)", session_id, ', '.join(sorted(changes)))
        return session

    def mark_exit(self, session_id, teacher_id, student_id):
        """Teacher override: record a verified exit for one enrolled student."""
        self.owned(session_id, teacher_id)
        now = self.clock.now()
        with db_errors():
            guard_active(session_id)
            if self.attendance.get(session_id, student_id) is None:
                db.session.rollback()
                raise NotFound(f'{student_id} is not enrolled in this session')
            record, marked = self.attendance.mark_exit(session_id, student_id, now)
            db.session.commit()

        if marked:
            logger.info("[SESSION] Exit of %s in %s marked by teacher", student_id, session_id)
            self.publisher.attendance_update(session_id, record.to_dict())
        return {
            'success': True,
            'studentId': student_id,
            'exitVerified': True,
            'exitVerifiedAt': isoformat(record.exit_verified_at),
        }

    def end(self, session_id, teacher_id):
        """
        End the session exactly once and compute every student's final
        status. A second call fails with INVALID_STATE.
        """
        self.owned(session_id, teacher_id)
        now = self.clock.now()
        with db_errors():
            ended = ClassSession.query.filter_by(session_id=session_id, status=ACTIVE).update({
                'status': ENDED,
                'ended_at': now,
                'early_leave_active': False,
            })
            if ended != 1:
                db.session.rollback()
                raise InvalidState('Session has already ended')
            records = self.attendance.finalize(session_id)
            db.session.commit()

        self._cancel_jobs(session_id)
        attendance = [record.to_dict() for record in records]
        summary = {
            'sessionId': session_id,
            'status': ENDED,
            'endedAt': isoformat(now),
            'attendance': attendance,
            'summary': self.attendance.summarize(records),
        }
        self.publisher.session_ended(session_id, summary)
        logger.info("[SESSION] Ended %s (%d students)", session_id, len(attendance))
        return summary

    def attendance_for(self, session_id):
        return [record.to_dict() for record in self.attendance.records_for(session_id)]

    # ─── Rotating windows ───────────────────────────────────

    def start_early_leave(self, session_id, teacher_id):
        session = self.owned(session_id, teacher_id)
        if session.status != ACTIVE:
            raise InvalidState('Session is not active')
        if not session.early_leave_active:
            session.early_leave_active = True
            self.issuer.issue_rotating_token(session, EARLY_LEAVE)
            commit()
            self._schedule_rotation(session, EARLY_LEAVE)
            logger.info("[SESSION] Early leave opened for %s", session_id)
        return self.current_rotating(session_id, EARLY_LEAVE)

    def stop_early_leave(self, session_id, teacher_id):
        session = self.owned(session_id, teacher_id)
        if session.early_leave_active:
            session.early_leave_active = False
            commit()
            logger.info("[SESSION] Early leave closed for %s", session_id)
        self._cancel_job(rotation_job_id(session_id, EARLY_LEAVE))
        return {'sessionId': session_id, 'active': False}

    def window_active(self, session, kind):
        if kind == LATE_ENTRY:
            return session.late_entry_active(self.clock.now())
        return session.status == ACTIVE and session.early_leave_active

    def current_rotating(self, session_id, kind):
        """
        The rotating token of ``kind`` as ``{token, active, expiresAt}``.
        A missing or aging token is re-minted on the spot while the window
        is open, so a display never waits on the next job run.
        """
        session = load_session(session_id)
        active = self.window_active(session, kind)
        token = None
        if active:
            token = self.refresh(session, kind)
        return {
            'active': active,
            'token': token.to_payload() if token is not None else None,
            'expiresAt': isoformat(token.expires_at) if token is not None else None,
        }

    def refresh(self, session, kind):
        """Return the current token of ``kind``, minting one if due."""
        now = self.clock.now()
        token_id = (session.current_late_token_id if kind == LATE_ENTRY
                    else session.current_early_token_id)
        token = db.session.get(RotatingToken, token_id) if token_id else None
        if token is None or now - token.issued_at >= timedelta(seconds=self.rotation_interval):
            token = self.issuer.issue_rotating_token(session, kind)
            commit()
        return token

    def rotate(self, session_id, kind):
        """Rotation job body."""
        session = db.session.get(ClassSession, session_id)
        if session is None or session.status != ACTIVE:
            self._cancel_job(rotation_job_id(session_id, kind))
            return None
        if not self.window_active(session, kind):
            if kind == EARLY_LEAVE:
                self._cancel_job(rotation_job_id(session_id, kind))
            return None
        token = self.issuer.issue_rotating_token(session, kind)
        commit()
        return token

    # ─── Jobs ───────────────────────────────────────────────

    def resume_jobs(self):
        """Re-arm rotation jobs for sessions that were ACTIVE at startup."""
        now = self.clock.now()
        sessions = ClassSession.query.filter_by(status=ACTIVE).all()
        for session in sessions:
            self._schedule_rotation(session, LATE_ENTRY, start_at=max(session.late_cutoff_at, now))
            if session.early_leave_active:
                self._schedule_rotation(session, EARLY_LEAVE)
        return len(sessions)

    def _schedule_rotation(self, session, kind, start_at=None):
        if self.scheduler is None:
            return None
        return self.scheduler.add_interval(
            rotation_job_id(session.session_id, kind),
            self.rotate,
            self.rotation_interval,
            args=(session.session_id, kind),
            start_date=as_utc(start_at) if start_at is not None else None,
        )

    def _cancel_job(self, job_id):
        if self.scheduler is not None:
            self.scheduler.cancel(job_id)

    def _cancel_jobs(self, session_id):
        for kind in ROTATING_KINDS:
            self._cancel_job(rotation_job_id(session_id, kind))


def roster_size(session_id):
    return AttendanceRecord.query.filter_by(session_id=session_id).count()
