"""
Token issuer: mints, validates and consumes chain and rotating tokens.

Chain tokens are single use. Consumption is a compare-and-swap on
``(token_id, etag, status=ACTIVE)``; a second consumer finds no row to update.
Rotating tokens are shared by the whole class and only ever expire.
"""
import logging
from datetime import timedelta

from baton.database import db
from baton.errors import ExpiredToken, InvalidState, TokenAlreadyUsed
from baton.models import (
    LATE_ENTRY, TOKEN_ACTIVE, TOKEN_REVOKED, TOKEN_USED, ChainToken, RotatingToken,
)
from baton.utils.security import generate_etag, generate_token

logger = logging.getLogger(__name__)


class TokenIssuer:

    def __init__(self, clock, chain_ttl=20, rotating_ttl=60):
        self.clock = clock
        self.chain_ttl = chain_ttl
        self.rotating_ttl = rotating_ttl

    # ─── Chain tokens ───────────────────────────────────────

    def revoke_chain_tokens(self, chain_id):
        """Revoke every live token of a chain; the etag rotates with it."""
        revoked = 0
        for token in ChainToken.query.filter_by(chain_id=chain_id, status=TOKEN_ACTIVE).all():
            token.status = TOKEN_REVOKED
            token.etag = generate_etag()
            revoked += 1
        return revoked

    def issue_chain_token(self, chain, holder_id, ttl=None):
        """
        Mint the single live token of ``chain`` for ``holder_id`` and point the
        chain at it. Runs inside the caller's transaction; nothing commits here.
        """
        now = self.clock.now()
        self.revoke_chain_tokens(chain.chain_id)
        token = ChainToken(
            token_id=generate_token(),
            session_id=chain.session_id,
            chain_id=chain.chain_id,
            holder_id=holder_id,
            seq=chain.last_seq,
            etag=generate_etag(),
            status=TOKEN_ACTIVE,
            issued_at=now,
            expires_at=now + timedelta(seconds=ttl or self.chain_ttl),
        )
        db.session.add(token)
        chain.current_token_id = token.token_id
        return token

    def validate_chain_token(self, token, etag, now):
        if token.status != TOKEN_ACTIVE or token.etag != etag:
            raise TokenAlreadyUsed()
        if now > token.expires_at:
            raise ExpiredToken()

    def consume(self, token, etag, scanner_id, now):
        """Mark the token USED iff it is still ACTIVE with this etag."""
        updated = ChainToken.query.filter_by(
            token_id=token.token_id, etag=etag, status=TOKEN_ACTIVE,
        ).update({
            'status': TOKEN_USED,
            'etag': generate_etag(),
            'used_at': now,
            'used_by': scanner_id,
        })
        if updated != 1:
            raise TokenAlreadyUsed()

    # ─── Rotating tokens ────────────────────────────────────

    def issue_rotating_token(self, session, kind):
        now = self.clock.now()
        token = RotatingToken(
            token_id=generate_token(),
            session_id=session.session_id,
            kind=kind,
            etag=generate_etag(),
            issued_at=now,
            expires_at=now + timedelta(seconds=self.rotating_ttl),
        )
        db.session.add(token)
        if kind == LATE_ENTRY:
            session.current_late_token_id = token.token_id
        else:
            session.current_early_token_id = token.token_id
        logger.info("[ROTATE] %s token minted for %s", kind, session.session_id)
        return token

    def validate_rotating_token(self, token, etag, now):
        if token.etag != etag:
            raise InvalidState('Token signature does not match')
        if now > token.expires_at:
            raise ExpiredToken()
