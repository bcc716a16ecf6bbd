"""
Scan processor: validates and applies one scan.

Chain scans hand custody from the holder to the scanner. For one token at most
one scan ever succeeds:
- the chain's in-process lock orders concurrent scans of the same chain
- the token is consumed with a conditional UPDATE on (token_id, etag, ACTIVE)
- the chain advances with a conditional UPDATE on last_seq

Rotating scans (late entry, early leave) mark the scanner only and leave the
token usable by the rest of the class.
"""
import logging

from baton.database import db
from baton.errors import (
    AttendanceError, GeofenceViolation, IneligibleStudent, InvalidRequest, InvalidState,
    TokenAlreadyUsed, WifiViolation,
)
from baton.models import (
    ACTIVE, EARLY_LEAVE, ENTRY, EXIT, LATE_ENTRY, METHOD_CHAIN, METHOD_LATE_QR,
    PRESENT_ENTRY, Chain, ChainHandoff, ChainToken, RotatingToken, ScanLog,
)
from baton.services.common import commit, db_errors, guard_active, load_session
from baton.utils.clock import isoformat
from baton.utils.location import GEOFENCE, check_location

logger = logging.getLogger(__name__)

FLOWS = {
    ENTRY: 'ENTRY_CHAIN',
    EXIT: 'EXIT_CHAIN',
    LATE_ENTRY: LATE_ENTRY,
    EARLY_LEAVE: EARLY_LEAVE,
}


class ScanProcessor:

    def __init__(self, clock, issuer, attendance, chains, locks, publisher,
                 soft_location_on_exit=True, wifi_allowlist=None):
        self.clock = clock
        self.issuer = issuer
        self.attendance = attendance
        self.chains = chains
        self.locks = locks
        self.publisher = publisher
        self.soft_location_on_exit = soft_location_on_exit
        self.wifi_allowlist = wifi_allowlist or []

    # ─── Chain hand-off ─────────────────────────────────────

    def scan_chain(self, phase, token_id, etag, student_id, metadata=None, client=None):
        """
        Hand custody of the chain behind ``token_id`` to ``student_id``.

        Returns ``{success, holderMarked, newHolder, newToken, newTokenEtag,
        locationWarning?}``. Never retried here: a repeated request is
        indistinguishable from a double scan and must fail.
        """
        entry = self._log_entry(FLOWS[phase], token_id, student_id, metadata, client)
        try:
            _require_token(token_id, etag)
            row = (db.session.query(ChainToken.chain_id, ChainToken.session_id)
                   .filter(ChainToken.token_id == token_id)
                   .first())
            if row is None:
                raise InvalidState('Unknown token')
            chain_id, entry['session_id'] = row

            with self.locks.hold(chain_id):
                result, session_id, record, chain = self._apply_chain_scan(
                    phase, token_id, etag, student_id, metadata, entry)
                # still under the chain lock: events leave in hand-off order
                if record is not None:
                    self.publisher.attendance_update(session_id, record)
                self.publisher.chain_update(session_id, chain)
        except AttendanceError as exc:
            db.session.rollback()
            self._write_log(entry, exc)
            raise

        self._write_log(entry)
        return result

    def _apply_chain_scan(self, phase, token_id, etag, student_id, metadata, entry):
        now = self.clock.now()
        token = db.session.get(ChainToken, token_id)
        chain = db.session.get(Chain, token.chain_id)
        if chain.phase != phase:
            raise InvalidState(f'Token belongs to an {chain.phase} chain')

        self.issuer.validate_chain_token(token, etag, now)

        session = load_session(chain.session_id)
        if session.status != ACTIVE:
            raise InvalidState('Session is not active')
        if chain.state != ACTIVE:
            raise InvalidState(f'Chain is {chain.state}')

        previous = chain.last_holder
        entry['holder_id'] = previous
        self._check_chain_eligibility(session.session_id, chain, student_id)
        warning = self._check_location(session, metadata, hard_on_soft=(
            phase == EXIT and not self.soft_location_on_exit))

        expected_seq = chain.last_seq
        with db_errors(IneligibleStudent(f'{student_id} already holds a {phase} chain')):
            guard_active(session.session_id)
            self.issuer.consume(token, etag, student_id, now)
            advanced = Chain.query.filter_by(
                chain_id=chain.chain_id, last_seq=expected_seq, state=ACTIVE,
            ).update({'last_seq': expected_seq + 1, 'last_holder': student_id, 'last_at': now})
            if advanced != 1:
                raise TokenAlreadyUsed()

            record = None
            holder_marked = False
            if previous:
                if phase == ENTRY:
                    record, holder_marked = self.attendance.mark_entry(
                        session.session_id, previous, PRESENT_ENTRY, METHOD_CHAIN, now)
                else:
                    record, holder_marked = self.attendance.mark_exit(
                        session.session_id, previous, now)
            self.attendance.ensure(session.session_id, student_id)

            db.session.add(ChainHandoff(
                chain_id=chain.chain_id,
                session_id=session.session_id,
                sequence=expected_seq + 1,
                from_holder=previous,
                to_holder=student_id,
                scanned_at=now,
            ))
            new_token = self.issuer.issue_chain_token(chain, student_id)
            db.session.commit()

        logger.info("[SCAN] %s %s -> %s (seq %d)", chain.chain_id, previous, student_id,
                    expected_seq + 1)
        result = {
            'success': True,
            'holderMarked': previous if holder_marked else None,
            'newHolder': student_id,
            'newToken': new_token.token_id,
            'newTokenEtag': new_token.etag,
            'sequence': expected_seq + 1,
            'expiresAt': isoformat(new_token.expires_at),
        }
        if warning:
            result['locationWarning'] = warning
        return (result, session.session_id,
                record.to_dict() if record is not None else None, chain.to_dict())

    def _check_chain_eligibility(self, session_id, chain, student_id):
        if student_id == chain.last_holder:
            raise IneligibleStudent('You cannot scan your own code')
        record = self.attendance.get(session_id, student_id)
        busy = self.chains.holders(session_id, chain.phase)
        if chain.phase == ENTRY:
            if student_id in busy or (record is not None and record.entry_status):
                raise IneligibleStudent('Entry already recorded')
            return
        if record is None or not record.entry_status:
            raise IneligibleStudent('No entry recorded for this session')
        if record.early_leave_at is not None:
            raise IneligibleStudent('Early leave already recorded')
        if record.exit_verified or student_id in busy:
            raise IneligibleStudent('Exit already recorded')

    # ─── Rotating tokens ────────────────────────────────────

    def scan_rotating(self, kind, token_id, etag, student_id, metadata=None, client=None):
        """Apply a late-entry or early-leave scan for ``student_id``."""
        entry = self._log_entry(FLOWS[kind], token_id, student_id, metadata, client)
        try:
            _require_token(token_id, etag)
            result, session_id, record = self._apply_rotating_scan(
                kind, token_id, etag, student_id, metadata, entry)
        except AttendanceError as exc:
            db.session.rollback()
            self._write_log(entry, exc)
            raise

        self._write_log(entry)
        self.publisher.attendance_update(session_id, record)
        return result

    def _apply_rotating_scan(self, kind, token_id, etag, student_id, metadata, entry):
        now = self.clock.now()
        token = db.session.get(RotatingToken, token_id)
        if token is None or token.kind != kind:
            raise InvalidState('Unknown token')
        entry['session_id'] = token.session_id

        self.issuer.validate_rotating_token(token, etag, now)

        session = load_session(token.session_id)
        if kind == LATE_ENTRY and not session.late_entry_active(now):
            raise InvalidState('Late entry is not open')
        if kind == EARLY_LEAVE and (session.status != ACTIVE or not session.early_leave_active):
            raise InvalidState('Early leave is not open')

        warning = self._check_location(session, metadata)

        with self.locks.hold(f"student:{session.session_id}:{student_id}"), db_errors():
            guard_active(session.session_id)
            if kind == LATE_ENTRY:
                record, marked = self.attendance.mark_entry(
                    session.session_id, student_id, LATE_ENTRY, METHOD_LATE_QR, now)
                reason = 'Entry already recorded'
            else:
                record, marked = self.attendance.mark_early_leave(session.session_id, student_id, now)
                reason = 'No entry recorded, or early leave already recorded'
            if not marked:
                raise IneligibleStudent(reason)
            db.session.commit()

        logger.info("[SCAN] %s recorded for %s in %s", kind, student_id, session.session_id)
        result = {'success': True, 'studentId': student_id, 'flow': kind}
        if warning:
            result['locationWarning'] = warning
        return result, session.session_id, record.to_dict()

    # ─── Shared ─────────────────────────────────────────────

    def _check_location(self, session, metadata, hard_on_soft=False):
        """Raise on a hard violation; return a warning string on a soft one."""
        violations = check_location(session.constraints, metadata, self.wifi_allowlist)
        if not violations:
            return None
        if session.enforce_location or hard_on_soft:
            code, message = violations[0]
            if code == GEOFENCE:
                raise GeofenceViolation(message)
            raise WifiViolation(message)
        return '; '.join(message for _, message in violations)

    def _log_entry(self, flow, token_id, student_id, metadata, client):
        metadata = metadata or {}
        client = client or {}
        return {
            'session_id': None,
            'flow': flow,
            'token_id': _text(token_id, 64),
            'holder_id': None,
            'scanner_id': student_id,
            'device_fingerprint': _text(metadata.get('deviceFingerprint'), 200),
            'bssid': _text(metadata.get('bssid'), 64),
            'gps': metadata.get('gps'),
            'ip': client.get('ip'),
            'user_agent': (client.get('userAgent') or '')[:300] or None,
        }

    def _write_log(self, entry, error=None):
        db.session.add(ScanLog(
            result=error.code if error else 'SUCCESS',
            error=error.message[:300] if error else None,
            scanned_at=self.clock.now(),
            **entry
        ))
        try:
            commit()
        except AttendanceError:
            logger.error("[SCAN] Could not write scan log for %s", entry['scanner_id'])


def _text(value, limit):
    return str(value)[:limit] if value is not None else None


def _require_token(token_id, etag):
    if not token_id or not etag:
        raise InvalidRequest('tokenId and etag are required')
    if not isinstance(token_id, str) or not isinstance(etag, str):
        raise InvalidRequest('tokenId and etag must be strings')
