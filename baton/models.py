"""
SQLAlchemy models for the Baton attendance server.

Tables:
- ClassSession: one class meeting with its timing and location constraints
- Chain: an entry or exit custody chain inside a session
- ChainToken: single-use token held by the current holder of a chain
- RotatingToken: shared late-entry / early-leave token
- AttendanceRecord: one row per (session, student)
- ChainHandoff: ordered hand-off history of a chain
- ScanLog: audit trail of every scan attempt
"""
from datetime import timedelta

from baton.database import db
from baton.utils.clock import isoformat, to_epoch

# Session status
ACTIVE = 'ACTIVE'
ENDED = 'ENDED'

# Chain phases and states
ENTRY = 'ENTRY'
EXIT = 'EXIT'
STALLED = 'STALLED'
COMPLETED = 'COMPLETED'

# Chain token status
TOKEN_ACTIVE = 'ACTIVE'
TOKEN_USED = 'USED'
TOKEN_REVOKED = 'REVOKED'

# Rotating token kinds
LATE_ENTRY = 'LATE_ENTRY'
EARLY_LEAVE = 'EARLY_LEAVE'

# Entry status / method
PRESENT_ENTRY = 'PRESENT_ENTRY'
METHOD_CHAIN = 'CHAIN'
METHOD_LATE_QR = 'LATE_QR'
METHOD_CLOSE = 'CLOSE'

# Final status
PRESENT = 'PRESENT'
LATE = 'LATE'
LEFT_EARLY = 'LEFT_EARLY'
ABSENT = 'ABSENT'

QR_TYPES = {ENTRY: 'CHAIN', EXIT: 'EXIT_CHAIN'}


class ClassSession(db.Model):
    """A single class meeting."""
    __tablename__ = 'sessions'

    session_id = db.Column(db.String(40), primary_key=True)
    class_id = db.Column(db.String(100), nullable=False)
    teacher_id = db.Column(db.String(100), nullable=False)
    start_at = db.Column(db.DateTime, nullable=False)
    end_at = db.Column(db.DateTime, nullable=True)
    late_cutoff_minutes = db.Column(db.Integer, nullable=False, default=15)
    exit_window_minutes = db.Column(db.Integer, nullable=False, default=10)
    status = db.Column(db.String(10), nullable=False, default=ACTIVE)
    early_leave_active = db.Column(db.Boolean, nullable=False, default=False)
    current_late_token_id = db.Column(db.String(64), nullable=True)
    current_early_token_id = db.Column(db.String(64), nullable=True)
    constraints = db.Column(db.JSON, nullable=True)
    enforce_location = db.Column(db.Boolean, nullable=False, default=False)
    created_at = db.Column(db.DateTime, nullable=False)
    ended_at = db.Column(db.DateTime, nullable=True)

    @property
    def late_cutoff_at(self):
        return self.start_at + timedelta(minutes=self.late_cutoff_minutes)

    def late_entry_active(self, now):
        return self.status == ACTIVE and now >= self.late_cutoff_at

    def to_dict(self, now=None):
        data = {
            'sessionId': self.session_id,
            'classId': self.class_id,
            'teacherId': self.teacher_id,
            'startAt': isoformat(self.start_at),
            'endAt': isoformat(self.end_at),
            'lateCutoffMinutes': self.late_cutoff_minutes,
            'exitWindowMinutes': self.exit_window_minutes,
            'status': self.status,
            'earlyLeaveActive': self.early_leave_active,
            'constraints': self.constraints or {},
            'enforceLocation': self.enforce_location,
            'createdAt': isoformat(self.created_at),
            'endedAt': isoformat(self.ended_at),
        }
        if now is not None:
            data['lateEntryActive'] = self.late_entry_active(now)
        return data


class Chain(db.Model):
    """An entry or exit custody chain."""
    __tablename__ = 'chains'
    __table_args__ = (
        # one open chain per holder and phase
        db.Index(
            'uq_chains_open_holder', 'session_id', 'phase', 'last_holder',
            unique=True,
            sqlite_where=db.text("state != 'COMPLETED'"),
            postgresql_where=db.text("state != 'COMPLETED'"),
        ),
    )

    chain_id = db.Column(db.String(40), primary_key=True)
    session_id = db.Column(db.String(40), db.ForeignKey('sessions.session_id'), nullable=False, index=True)
    phase = db.Column(db.String(10), nullable=False)
    index = db.Column('chain_index', db.Integer, nullable=False)
    state = db.Column(db.String(10), nullable=False, default=ACTIVE)
    last_holder = db.Column(db.String(100), nullable=True)
    last_seq = db.Column(db.Integer, nullable=False, default=0)
    last_at = db.Column(db.DateTime, nullable=False)
    current_token_id = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False)
    completed_at = db.Column(db.DateTime, nullable=True)

    def to_dict(self):
        return {
            'chainId': self.chain_id,
            'sessionId': self.session_id,
            'phase': self.phase,
            'index': self.index,
            'state': self.state,
            'lastHolder': self.last_holder,
            'lastSeq': self.last_seq,
            'lastAt': isoformat(self.last_at),
            'currentTokenId': self.current_token_id,
            'createdAt': isoformat(self.created_at),
            'completedAt': isoformat(self.completed_at),
        }


class ChainToken(db.Model):
    __tablename__ = 'chain_tokens'

    token_id = db.Column(db.String(64), primary_key=True)
    session_id = db.Column(db.String(40), nullable=False, index=True)
    chain_id = db.Column(db.String(40), db.ForeignKey('chains.chain_id'), nullable=False, index=True)
    holder_id = db.Column(db.String(100), nullable=False)
    seq = db.Column(db.Integer, nullable=False)
    etag = db.Column(db.String(32), nullable=False)
    status = db.Column(db.String(10), nullable=False, default=TOKEN_ACTIVE)
    issued_at = db.Column(db.DateTime, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    used_at = db.Column(db.DateTime, nullable=True)
    used_by = db.Column(db.String(100), nullable=True)

    def to_payload(self, phase):
        """Body of the QR code shown on the holder's phone."""
        return {
            'type': QR_TYPES[phase],
            'sessionId': self.session_id,
            'tokenId': self.token_id,
            'etag': self.etag,
            'holderId': self.holder_id,
            'exp': to_epoch(self.expires_at),
        }


class RotatingToken(db.Model):
    __tablename__ = 'rotating_tokens'

    token_id = db.Column(db.String(64), primary_key=True)
    session_id = db.Column(db.String(40), db.ForeignKey('sessions.session_id'), nullable=False, index=True)
    kind = db.Column(db.String(20), nullable=False)
    etag = db.Column(db.String(32), nullable=False)
    issued_at = db.Column(db.DateTime, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)

    def to_payload(self):
        return {
            'type': self.kind,
            'sessionId': self.session_id,
            'tokenId': self.token_id,
            'etag': self.etag,
            'exp': to_epoch(self.expires_at),
        }


class AttendanceRecord(db.Model):
    """Per-student attendance inside one session."""
    __tablename__ = 'attendance'
    __table_args__ = (
        db.UniqueConstraint('session_id', 'student_id', name='uq_attendance_student'),
    )

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.String(40), db.ForeignKey('sessions.session_id'), nullable=False, index=True)
    student_id = db.Column(db.String(100), nullable=False)
    joined_at = db.Column(db.DateTime, nullable=True)
    entry_status = db.Column(db.String(20), nullable=True)
    entry_method = db.Column(db.String(10), nullable=True)
    entry_at = db.Column(db.DateTime, nullable=True)
    exit_verified = db.Column(db.Boolean, nullable=False, default=False)
    exit_verified_at = db.Column(db.DateTime, nullable=True)
    early_leave_at = db.Column(db.DateTime, nullable=True)
    final_status = db.Column(db.String(20), nullable=True)

    def to_dict(self):
        return {
            'sessionId': self.session_id,
            'studentId': self.student_id,
            'joinedAt': isoformat(self.joined_at),
            'entryStatus': self.entry_status,
            'entryMethod': self.entry_method,
            'entryAt': isoformat(self.entry_at),
            'exitVerified': bool(self.exit_verified),
            'exitVerifiedAt': isoformat(self.exit_verified_at),
            'earlyLeaveAt': isoformat(self.early_leave_at),
            'finalStatus': self.final_status,
        }


class ChainHandoff(db.Model):
    __tablename__ = 'chain_history'
    __table_args__ = (
        db.UniqueConstraint('chain_id', 'sequence', name='uq_chain_history_sequence'),
    )

    id = db.Column(db.Integer, primary_key=True)
    chain_id = db.Column(db.String(40), db.ForeignKey('chains.chain_id'), nullable=False, index=True)
    session_id = db.Column(db.String(40), nullable=False)
    sequence = db.Column(db.Integer, nullable=False)
    from_holder = db.Column(db.String(100), nullable=True)
    to_holder = db.Column(db.String(100), nullable=False)
    scanned_at = db.Column(db.DateTime, nullable=False)

    def to_dict(self):
        return {
            'sequence': self.sequence,
            'fromHolder': self.from_holder,
            'toHolder': self.to_holder,
            'scannedAt': isoformat(self.scanned_at),
        }


class ScanLog(db.Model):
    """Audit row for one scan attempt, successful or not."""
    __tablename__ = 'scan_logs'

    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.String(40), nullable=True, index=True)
    flow = db.Column(db.String(20), nullable=False)
    token_id = db.Column(db.String(64), nullable=True)
    holder_id = db.Column(db.String(100), nullable=True)
    scanner_id = db.Column(db.String(100), nullable=False)
    device_fingerprint = db.Column(db.String(200), nullable=True)
    ip = db.Column(db.String(64), nullable=True)
    bssid = db.Column(db.String(64), nullable=True)
    gps = db.Column(db.JSON, nullable=True)
    user_agent = db.Column(db.String(300), nullable=True)
    result = db.Column(db.String(40), nullable=False)
    error = db.Column(db.String(300), nullable=True)
    scanned_at = db.Column(db.DateTime, nullable=False)

    def to_dict(self):
        return {
            'id': self.id,
            'sessionId': self.session_id,
            'flow': self.flow,
            'tokenId': self.token_id,
            'holderId': self.holder_id,
            'scannerId': self.scanner_id,
            'deviceFingerprint': self.device_fingerprint,
            'ip': self.ip,
            'bssid': self.bssid,
            'gps': self.gps,
            'userAgent': self.user_agent,
            'result': self.result,
            'error': self.error,
            'scannedAt': isoformat(self.scanned_at),
        }
