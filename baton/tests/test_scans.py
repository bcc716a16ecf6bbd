import threading

import pytest

from baton.database import db
from baton.errors import (
    AttendanceError, ExpiredToken, GeofenceViolation, IneligibleStudent, InvalidRequest,
    InvalidState, TokenAlreadyUsed, WifiViolation,
)
from baton.models import (
    ENTRY, EXIT, PRESENT_ENTRY, TOKEN_USED, Chain, ChainHandoff, ChainToken, ScanLog,
)

STUDENTS = ['s1', 's2', 's3', 's4', 's5', 's6']

CLASSROOM = {'latitude': 6.5244, 'longitude': 3.3792, 'radiusMeters': 50}
INSIDE = {'gps': {'latitude': 6.5244, 'longitude': 3.3792}}
OUTSIDE = {'gps': {'latitude': 6.5300, 'longitude': 3.3792}}


def seed_chain(baton, session_id, phase=ENTRY):
    return baton.chains.seed(session_id, phase, 1)['chains'][0]


def others(*taken):
    return [s for s in STUDENTS if s not in taken]


def test_handoff_scenario_and_replay(baton, make_session, live_token, published):
    session_id = make_session(STUDENTS)
    chain = seed_chain(baton, session_id)
    s1 = chain['lastHolder']
    s2 = others(s1)[0]
    token = live_token(chain['chainId'])
    token_id, etag = token.token_id, token.etag

    result = baton.scans.scan_chain(ENTRY, token_id, etag, s2, {})

    assert result['success'] is True
    assert result['holderMarked'] == s1
    assert result['newHolder'] == s2
    assert result['sequence'] == 1
    db.session.expire_all()
    advanced = db.session.get(Chain, chain['chainId'])
    assert advanced.last_seq == 1
    assert advanced.last_holder == s2
    assert advanced.current_token_id == result['newToken']
    assert baton.attendance.get(session_id, s1).entry_status == PRESENT_ENTRY
    assert db.session.get(ChainToken, token_id).status == TOKEN_USED

    with pytest.raises(TokenAlreadyUsed):
        baton.scans.scan_chain(ENTRY, token_id, etag, s2, {})

    event_names = [event for _, event, _ in published]
    assert event_names[-2:] == ['attendanceUpdate', 'chainUpdate']


def test_sequence_advances_by_one_per_hop(baton, make_session, live_token):
    session_id = make_session(STUDENTS)
    chain = seed_chain(baton, session_id)
    holder = chain['lastHolder']

    for expected, scanner in enumerate(others(holder)[:4], start=1):
        token = live_token(chain['chainId'])
        result = baton.scans.scan_chain(ENTRY, token.token_id, token.etag, scanner, {})
        assert result['sequence'] == expected
        holder = scanner

    history = baton.chains.history(session_id, chain['chainId'])
    assert [h['sequence'] for h in history['history']] == [1, 2, 3, 4]
    assert history['totalScans'] == 4
    assert history['currentHolder'] == holder
    for before, after in zip(history['history'], history['history'][1:]):
        assert before['toHolder'] == after['fromHolder']


def test_holder_cannot_scan_own_token(baton, make_session, live_token):
    session_id = make_session(STUDENTS)
    chain = seed_chain(baton, session_id)
    token = live_token(chain['chainId'])

    with pytest.raises(IneligibleStudent):
        baton.scans.scan_chain(ENTRY, token.token_id, token.etag, chain['lastHolder'], {})


def test_holder_of_another_chain_is_ineligible(baton, make_session, live_token):
    session_id = make_session(STUDENTS)
    first, second = baton.chains.seed(session_id, ENTRY, 2)['chains']
    token = live_token(first['chainId'])

    with pytest.raises(IneligibleStudent):
        baton.scans.scan_chain(ENTRY, token.token_id, token.etag, second['lastHolder'], {})


def test_student_with_entry_cannot_rescan(baton, make_session, live_token):
    session_id = make_session(STUDENTS)
    chain = seed_chain(baton, session_id)
    scanner = others(chain['lastHolder'])[0]
    baton.attendance.mark_entry(session_id, scanner, PRESENT_ENTRY, 'CHAIN', baton.clock.now())
    db.session.commit()
    token = live_token(chain['chainId'])

    with pytest.raises(IneligibleStudent):
        baton.scans.scan_chain(ENTRY, token.token_id, token.etag, scanner, {})


def test_expired_token(baton, make_session, live_token, clock):
    session_id = make_session(STUDENTS)
    chain = seed_chain(baton, session_id)
    token = live_token(chain['chainId'])
    clock.advance(seconds=21)

    with pytest.raises(ExpiredToken):
        baton.scans.scan_chain(ENTRY, token.token_id, token.etag, others(chain['lastHolder'])[0], {})


def test_unknown_token_and_wrong_endpoint(baton, make_session, live_token):
    session_id = make_session(STUDENTS)
    chain = seed_chain(baton, session_id)
    token = live_token(chain['chainId'])
    scanner = others(chain['lastHolder'])[0]

    with pytest.raises(InvalidState):
        baton.scans.scan_chain(ENTRY, 'no-such-token', 'x', scanner, {})
    with pytest.raises(InvalidState):
        baton.scans.scan_chain(EXIT, token.token_id, token.etag, scanner, {})
    with pytest.raises(InvalidRequest):
        baton.scans.scan_chain(ENTRY, token.token_id, None, scanner, {})


def test_stalled_chain_rejects_scans(baton, make_session, live_token, clock):
    session_id = make_session(STUDENTS)
    baton.chains.recovery_ttl = 600
    chain = seed_chain(baton, session_id)
    scanner = others(chain['lastHolder'])[0]
    baton.chains.set_holder(session_id, chain['chainId'], chain['lastHolder'])
    clock.advance(seconds=61)
    baton.stalls.tick()
    token = live_token(chain['chainId'])

    with pytest.raises(InvalidState):
        baton.scans.scan_chain(ENTRY, token.token_id, token.etag, scanner, {})


def test_scan_after_session_end_is_invalid(baton, make_session, live_token):
    session_id = make_session(STUDENTS)
    chain = seed_chain(baton, session_id)
    token = live_token(chain['chainId'])
    baton.sessions.end(session_id, 't-ada')

    with pytest.raises(InvalidState):
        baton.scans.scan_chain(ENTRY, token.token_id, token.etag, others(chain['lastHolder'])[0], {})


def test_session_ended_mid_scan_blocks_the_write(baton, make_session, live_token, monkeypatch):
    session_id = make_session(STUDENTS)
    chain = seed_chain(baton, session_id)
    holder = chain['lastHolder']
    scanner = others(holder)[0]
    token = live_token(chain['chainId'])
    token_id, etag = token.token_id, token.etag

    # the teacher ends the session after validation, before the hand-off is written
    def end_then_pass(session, metadata, hard_on_soft=False):
        baton.sessions.end(session_id, 't-ada')
        return None

    monkeypatch.setattr(baton.scans, '_check_location', end_then_pass)

    with pytest.raises(InvalidState):
        baton.scans.scan_chain(ENTRY, token_id, etag, scanner, {})

    db.session.expire_all()
    for student_id in (holder, scanner):
        record = baton.attendance.get(session_id, student_id)
        assert record.entry_status is None
        assert record.final_status == 'ABSENT'
    assert db.session.get(Chain, chain['chainId']).last_seq == 0
    assert db.session.get(ChainToken, token_id).status == 'ACTIVE'
    assert ChainHandoff.query.filter_by(chain_id=chain['chainId']).count() == 0


def test_non_string_token_fields_are_rejected_and_logged(baton, make_session, live_token):
    session_id = make_session(STUDENTS)
    chain = seed_chain(baton, session_id)
    token = live_token(chain['chainId'])
    scanner = others(chain['lastHolder'])[0]

    with pytest.raises(InvalidRequest):
        baton.scans.scan_chain(ENTRY, [token.token_id], token.etag, scanner, {})
    with pytest.raises(InvalidRequest):
        baton.scans.scan_chain(ENTRY, token.token_id, {'etag': token.etag}, scanner, {})

    logs = ScanLog.query.filter_by(scanner_id=scanner).order_by(ScanLog.id).all()
    assert [log.result for log in logs] == ['INVALID_REQUEST', 'INVALID_REQUEST']
    assert logs[0].token_id == str([token.token_id])


def test_non_string_bssid_fails_the_allowlist(baton, make_session, live_token):
    session_id = make_session(
        STUDENTS, constraints={'wifiAllowlist': ['Room-204']}, enforceLocation=True)
    chain = seed_chain(baton, session_id)
    token = live_token(chain['chainId'])
    scanner = others(chain['lastHolder'])[0]

    with pytest.raises(WifiViolation):
        baton.scans.scan_chain(ENTRY, token.token_id, token.etag, scanner, {'bssid': 204})

    assert ScanLog.query.filter_by(scanner_id=scanner).one().bssid == '204'


def test_exit_scan_verifies_previous_holder(baton, make_session, live_token):
    session_id = make_session(STUDENTS)
    now = baton.clock.now()
    for student_id in ('s1', 's2'):
        baton.attendance.mark_entry(session_id, student_id, PRESENT_ENTRY, 'CHAIN', now)
    db.session.commit()
    chain = seed_chain(baton, session_id, EXIT)
    holder = chain['lastHolder']
    scanner = 's2' if holder == 's1' else 's1'
    token = live_token(chain['chainId'])

    result = baton.scans.scan_chain(EXIT, token.token_id, token.etag, scanner, {})

    assert result['holderMarked'] == holder
    assert baton.attendance.get(session_id, holder).exit_verified is True
    assert baton.attendance.get(session_id, scanner).exit_verified is False


def test_exit_scan_requires_entry(baton, make_session, live_token):
    session_id = make_session(STUDENTS)
    baton.attendance.mark_entry(session_id, 's1', PRESENT_ENTRY, 'CHAIN', baton.clock.now())
    db.session.commit()
    chain = seed_chain(baton, session_id, EXIT)
    token = live_token(chain['chainId'])

    with pytest.raises(IneligibleStudent):
        baton.scans.scan_chain(EXIT, token.token_id, token.etag, 's4', {})


def test_soft_location_failure_returns_warning(baton, make_session, live_token):
    session_id = make_session(STUDENTS, constraints={'geofence': CLASSROOM})
    chain = seed_chain(baton, session_id)
    token = live_token(chain['chainId'])

    result = baton.scans.scan_chain(
        ENTRY, token.token_id, token.etag, others(chain['lastHolder'])[0], OUTSIDE)

    assert result['success'] is True
    assert 'from classroom (limit: 50m)' in result['locationWarning']


def test_inside_geofence_has_no_warning(baton, make_session, live_token):
    session_id = make_session(STUDENTS, constraints={'geofence': CLASSROOM}, enforceLocation=True)
    chain = seed_chain(baton, session_id)
    token = live_token(chain['chainId'])

    result = baton.scans.scan_chain(
        ENTRY, token.token_id, token.etag, others(chain['lastHolder'])[0], INSIDE)

    assert 'locationWarning' not in result


def test_enforced_location_blocks_scan(baton, make_session, live_token):
    session_id = make_session(STUDENTS, constraints={'geofence': CLASSROOM}, enforceLocation=True)
    chain = seed_chain(baton, session_id)
    token = live_token(chain['chainId'])
    scanner = others(chain['lastHolder'])[0]

    with pytest.raises(GeofenceViolation):
        baton.scans.scan_chain(ENTRY, token.token_id, token.etag, scanner, OUTSIDE)

    db.session.expire_all()
    assert db.session.get(ChainToken, token.token_id).status == 'ACTIVE'
    assert db.session.get(Chain, chain['chainId']).last_seq == 0


def test_wifi_allowlist_is_enforced(baton, make_session, live_token):
    session_id = make_session(
        STUDENTS, constraints={'wifiAllowlist': ['Room-204']}, enforceLocation=True)
    chain = seed_chain(baton, session_id)
    token = live_token(chain['chainId'])
    scanner = others(chain['lastHolder'])[0]

    with pytest.raises(WifiViolation):
        baton.scans.scan_chain(ENTRY, token.token_id, token.etag, scanner, {'bssid': 'cafe-guest'})

    result = baton.scans.scan_chain(
        ENTRY, token.token_id, token.etag, scanner, {'bssid': 'campus-room-204-5g'})
    assert result['success'] is True


def test_exit_location_can_be_made_strict(baton, make_session, live_token):
    baton.scans.soft_location_on_exit = False
    session_id = make_session(STUDENTS, constraints={'geofence': CLASSROOM})
    now = baton.clock.now()
    for student_id in ('s1', 's2'):
        baton.attendance.mark_entry(session_id, student_id, PRESENT_ENTRY, 'CHAIN', now)
    db.session.commit()
    chain = seed_chain(baton, session_id, EXIT)
    scanner = 's2' if chain['lastHolder'] == 's1' else 's1'
    token = live_token(chain['chainId'])

    with pytest.raises(GeofenceViolation):
        baton.scans.scan_chain(EXIT, token.token_id, token.etag, scanner, OUTSIDE)


def test_every_attempt_is_logged(baton, make_session, live_token):
    session_id = make_session(STUDENTS)
    chain = seed_chain(baton, session_id)
    token = live_token(chain['chainId'])
    scanner = others(chain['lastHolder'])[0]
    metadata = {'deviceFingerprint': 'fp-1', 'bssid': 'room-1'}

    baton.scans.scan_chain(ENTRY, token.token_id, token.etag, scanner, metadata,
                           {'ip': '10.0.0.7', 'userAgent': 'pytest'})
    with pytest.raises(TokenAlreadyUsed):
        baton.scans.scan_chain(ENTRY, token.token_id, token.etag, scanner, metadata)

    logs = ScanLog.query.filter_by(session_id=session_id).order_by(ScanLog.id).all()
    assert [log.result for log in logs] == ['SUCCESS', 'TOKEN_ALREADY_USED']
    assert logs[0].flow == 'ENTRY_CHAIN'
    assert logs[0].holder_id == chain['lastHolder']
    assert logs[0].device_fingerprint == 'fp-1'
    assert logs[0].ip == '10.0.0.7'


def test_concurrent_scans_of_one_token_have_one_winner(app, baton, make_session, live_token):
    session_id = make_session(STUDENTS)
    chain = seed_chain(baton, session_id)
    token = live_token(chain['chainId'])
    token_id, etag = token.token_id, token.etag
    scanners = others(chain['lastHolder'])[:4]

    barrier = threading.Barrier(len(scanners))
    outcomes = []
    guard = threading.Lock()

    def attempt(student_id):
        with app.app_context():
            barrier.wait()
            try:
                baton.scans.scan_chain(ENTRY, token_id, etag, student_id, {})
                outcome = 'SUCCESS'
            except AttendanceError as exc:
                outcome = exc.code
            with guard:
                outcomes.append(outcome)

    threads = [threading.Thread(target=attempt, args=(s,)) for s in scanners]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(outcomes) == ['SUCCESS'] + ['TOKEN_ALREADY_USED'] * 3
    db.session.expire_all()
    assert db.session.get(Chain, chain['chainId']).last_seq == 1
    assert ChainHandoff.query.filter_by(chain_id=chain['chainId']).count() == 1
