from baton.database import db
from baton.models import ACTIVE, ENTRY, STALLED, Chain

STUDENTS = ['s1', 's2', 's3', 's4']


def stall_alerts(published):
    return [payload for _, event, payload in published if event == 'stallAlert']


def test_chain_stalls_after_threshold(baton, make_session, clock, published):
    session_id = make_session(STUDENTS)
    chain = baton.chains.seed(session_id, ENTRY, 1)['chains'][0]

    clock.advance(seconds=60)
    assert baton.stalls.tick() == set()
    assert db.session.get(Chain, chain['chainId']).state == ACTIVE

    clock.advance(seconds=1)
    assert baton.stalls.tick() == {session_id}
    db.session.expire_all()
    assert db.session.get(Chain, chain['chainId']).state == STALLED
    assert stall_alerts(published)[-1]['chainIds'] == [chain['chainId']]


def test_alert_is_a_full_snapshot(baton, make_session, clock, published):
    session_id = make_session(STUDENTS)
    first = baton.chains.seed(session_id, ENTRY, 1)['chains'][0]
    clock.advance(seconds=61)
    baton.stalls.tick()

    second = baton.chains.seed(session_id, ENTRY, 1)['chains'][0]
    clock.advance(seconds=61)
    baton.stalls.tick()

    assert stall_alerts(published)[-1]['chainIds'] == [first['chainId'], second['chainId']]


def test_quiet_tick_publishes_nothing(baton, make_session, clock, published):
    session_id = make_session(STUDENTS)
    baton.chains.seed(session_id, ENTRY, 1)
    clock.advance(seconds=61)
    baton.stalls.tick()
    count = len(stall_alerts(published))

    clock.advance(seconds=5)
    assert baton.stalls.tick() == set()
    assert len(stall_alerts(published)) == count


def test_ended_sessions_are_ignored(baton, make_session, clock):
    session_id = make_session(STUDENTS)
    chain = baton.chains.seed(session_id, ENTRY, 1)['chains'][0]
    baton.sessions.end(session_id, 't-ada')

    clock.advance(seconds=120)
    assert baton.stalls.tick() == set()
    assert db.session.get(Chain, chain['chainId']).state == ACTIVE


def test_stall_then_reseed_keeps_sequence(baton, make_session, clock, live_token, published):
    session_id = make_session(STUDENTS)
    chain = baton.chains.seed(session_id, ENTRY, 1)['chains'][0]
    token = live_token(chain['chainId'])
    scanner = next(s for s in STUDENTS if s != chain['lastHolder'])
    baton.scans.scan_chain(ENTRY, token.token_id, token.etag, scanner, {})

    clock.advance(seconds=61)
    baton.stalls.tick()
    assert chain['chainId'] in baton.chains.stalled_ids(session_id)

    result = baton.chains.reseed(session_id, ENTRY, 1)

    assert result['chainsCreated'] == 1
    reseeded = result['chains'][0]
    assert reseeded['state'] == ACTIVE
    assert reseeded['lastSeq'] == 1
    assert reseeded['lastHolder'] != scanner
    assert baton.chains.stalled_ids(session_id) == []
    assert stall_alerts(published)[-1]['chainIds'] == []
