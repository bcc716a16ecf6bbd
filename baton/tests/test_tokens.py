from datetime import timedelta

import pytest

from baton.database import db
from baton.errors import ExpiredToken, InvalidState, TokenAlreadyUsed
from baton.models import (
    ENTRY, LATE_ENTRY, TOKEN_ACTIVE, TOKEN_REVOKED, TOKEN_USED, ChainToken,
)


def seed_one(baton, make_session):
    session_id = make_session(['s1', 's2', 's3'])
    result = baton.chains.seed(session_id, ENTRY, 1)
    return session_id, result['chains'][0]['chainId']


def test_chain_token_expires_after_ttl(baton, make_session, clock, live_token):
    _, chain_id = seed_one(baton, make_session)
    token = live_token(chain_id)

    assert token.status == TOKEN_ACTIVE
    assert token.seq == 0
    assert token.expires_at - token.issued_at == timedelta(seconds=20)


def test_reissue_revokes_previous_token(baton, make_session, live_token):
    _, chain_id = seed_one(baton, make_session)
    first = live_token(chain_id)
    first_id, first_etag = first.token_id, first.etag

    chain = baton.chains.get(first.session_id, chain_id)
    baton.issuer.issue_chain_token(chain, chain.last_holder)
    db.session.commit()

    old = db.session.get(ChainToken, first_id)
    assert old.status == TOKEN_REVOKED
    assert old.etag != first_etag
    active = ChainToken.query.filter_by(chain_id=chain_id, status=TOKEN_ACTIVE).all()
    assert len(active) == 1
    assert active[0].token_id == chain.current_token_id


def test_validate_rejects_wrong_etag_as_already_used(baton, make_session, clock, live_token):
    _, chain_id = seed_one(baton, make_session)
    token = live_token(chain_id)

    with pytest.raises(TokenAlreadyUsed):
        baton.issuer.validate_chain_token(token, 'not-the-etag', clock.now())


def test_validate_expiry_boundary(baton, make_session, clock, live_token):
    _, chain_id = seed_one(baton, make_session)
    token = live_token(chain_id)

    baton.issuer.validate_chain_token(token, token.etag, token.expires_at)
    with pytest.raises(ExpiredToken):
        baton.issuer.validate_chain_token(token, token.etag, token.expires_at + timedelta(seconds=1))


def test_consume_succeeds_once(baton, make_session, clock, live_token):
    _, chain_id = seed_one(baton, make_session)
    token = live_token(chain_id)
    etag = token.etag

    baton.issuer.consume(token, etag, 's9', clock.now())
    with pytest.raises(TokenAlreadyUsed):
        baton.issuer.consume(token, etag, 's8', clock.now())

    assert token.status == TOKEN_USED
    assert token.used_by == 's9'


def test_rotating_token_lives_sixty_seconds(baton, make_session, clock):
    session_id = make_session()
    session = baton.sessions.get(session_id)
    token = baton.issuer.issue_rotating_token(session, LATE_ENTRY)

    assert token.expires_at - token.issued_at == timedelta(seconds=60)
    assert session.current_late_token_id == token.token_id
    assert token.to_payload()['type'] == LATE_ENTRY


def test_rotating_token_etag_mismatch_is_invalid_state(baton, make_session, clock):
    session_id = make_session()
    token = baton.issuer.issue_rotating_token(baton.sessions.get(session_id), LATE_ENTRY)

    with pytest.raises(InvalidState):
        baton.issuer.validate_rotating_token(token, 'forged', clock.now())
    with pytest.raises(ExpiredToken):
        baton.issuer.validate_rotating_token(token, token.etag, clock.now() + timedelta(seconds=61))
