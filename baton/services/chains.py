"""
Chain registry: seeding, reseeding, closing and manual recovery of custody
chains, plus the read side (history, current holder token).

Chain state machine:
    ACTIVE  --scan-->             ACTIVE
    ACTIVE  --inactivity-->       STALLED
    STALLED --reseed/set-holder--> ACTIVE
    ACTIVE|STALLED --close-->     COMPLETED (terminal)
"""
import logging
import secrets

from baton.database import db
from baton.errors import (
    Conflict, IneligibleStudent, InsufficientEligibleStudents, InvalidState, NotFound,
)
from baton.models import (
    ACTIVE, COMPLETED, ENTRY, LATE_ENTRY, METHOD_CLOSE, PRESENT_ENTRY, STALLED,
    Chain, ChainHandoff, ChainToken,
)
from baton.services.common import (
    commit, db_errors, guard_active, load_session, positive_count,
)
from baton.utils.clock import isoformat
from baton.utils.security import generate_id

logger = logging.getLogger(__name__)


def phase_lock_key(session_id, phase):
    return f"{session_id}:{phase}"


class ChainRegistry:

    def __init__(self, clock, issuer, attendance, locks, publisher, recovery_ttl=None):
        self.clock = clock
        self.issuer = issuer
        self.attendance = attendance
        self.locks = locks
        self.publisher = publisher
        self.recovery_ttl = recovery_ttl
        self._random = secrets.SystemRandom()

    # ─── Queries ────────────────────────────────────────────

    def get(self, session_id, chain_id):
        chain = db.session.get(Chain, chain_id)
        if chain is None or chain.session_id != session_id:
            raise NotFound(f'Chain {chain_id} not found')
        return chain

    def list_chains(self, session_id, phase=None):
        query = Chain.query.filter_by(session_id=session_id)
        if phase:
            query = query.filter_by(phase=phase)
        return query.order_by(Chain.phase, Chain.index).all()

    def stalled_ids(self, session_id):
        rows = (db.session.query(Chain.chain_id)
                .filter(Chain.session_id == session_id, Chain.state == STALLED)
                .order_by(Chain.index)
                .all())
        return [row.chain_id for row in rows]

    def holders(self, session_id, phase):
        """Students currently holding a non-completed chain of ``phase``."""
        rows = (db.session.query(Chain.last_holder)
                .filter(Chain.session_id == session_id,
                        Chain.phase == phase,
                        Chain.state != COMPLETED,
                        Chain.last_holder.isnot(None))
                .all())
        return {row.last_holder for row in rows}

    def is_eligible(self, record, phase, busy):
        """Can this student take custody of a ``phase`` chain right now?"""
        if record.student_id in busy:
            return False
        if phase == ENTRY:
            return not record.entry_status
        return (bool(record.entry_status)
                and record.early_leave_at is None
                and not record.exit_verified)

    def eligible_students(self, session_id, phase):
        busy = self.holders(session_id, phase)
        return [record.student_id
                for record in self.attendance.records_for(session_id)
                if self.is_eligible(record, phase, busy)]

    def history(self, session_id, chain_id):
        chain = self.get(session_id, chain_id)
        handoffs = (ChainHandoff.query
                    .filter_by(chain_id=chain_id)
                    .order_by(ChainHandoff.sequence)
                    .all())
        return {
            'chainId': chain.chain_id,
            'phase': chain.phase,
            'history': [handoff.to_dict() for handoff in handoffs],
            'totalScans': len(handoffs),
            'currentHolder': chain.last_holder,
        }

    def current_token(self, session_id, student_id):
        """The live token a holder shows on their own screen, if any."""
        now = self.clock.now()
        chains = (Chain.query
                  .filter_by(session_id=session_id, last_holder=student_id, state=ACTIVE)
                  .order_by(Chain.created_at.desc())
                  .all())
        for chain in chains:
            token = db.session.get(ChainToken, chain.current_token_id) if chain.current_token_id else None
            if token is not None and token.expires_at > now:
                return {
                    'isHolder': True,
                    'chainId': chain.chain_id,
                    'phase': chain.phase,
                    'seq': token.seq,
                    'token': token.to_payload(chain.phase),
                    'expiresAt': isoformat(token.expires_at),
                }
        return {'isHolder': False, 'token': None, 'chainId': None}

    # ─── Mutations ──────────────────────────────────────────

    def seed(self, session_id, phase, count):
        """
        Create ``count`` chains of ``phase``, each with a distinct random
        eligible holder. All or nothing.
        """
        count = positive_count(count)
        with self.locks.hold(phase_lock_key(session_id, phase)):
            load_session(session_id, require_active=True)
            eligible = self.eligible_students(session_id, phase)
            if len(eligible) < count:
                raise InsufficientEligibleStudents(
                    f'{count} chains requested but only {len(eligible)} eligible students',
                    details={'requested': count, 'eligible': len(eligible)},
                )

            holders = self._random.sample(eligible, count)
            now = self.clock.now()
            next_index = self._next_index(session_id, phase)
            chains = []
            with db_errors(Conflict('Chain holders changed concurrently, retry')):
                for offset, holder in enumerate(holders):
                    chain = Chain(
                        chain_id=generate_id('chain'),
                        session_id=session_id,
                        phase=phase,
                        index=next_index + offset,
                        state=ACTIVE,
                        last_holder=holder,
                        last_seq=0,
                        last_at=now,
                        created_at=now,
                    )
                    db.session.add(chain)
                    self.issuer.issue_chain_token(chain, holder)
                    chains.append(chain)
                db.session.commit()

        logger.info("[CHAIN] Seeded %d %s chain(s) for %s", count, phase, session_id)
        payload = [chain.to_dict() for chain in chains]
        for chain in payload:
            self.publisher.chain_update(session_id, chain)
        return {'chainsCreated': count, 'initialHolders': holders, 'chains': payload}

    def reseed(self, session_id, phase, count):
        """
        Give up to ``count`` STALLED chains of ``phase`` fresh holders and
        reactivate them. ``last_seq`` is kept; ACTIVE chains are never touched.
        """
        count = positive_count(count)
        with self.locks.hold(phase_lock_key(session_id, phase)):
            load_session(session_id, require_active=True)
            candidate_ids = [chain.chain_id for chain in (
                Chain.query.filter_by(session_id=session_id, phase=phase, state=STALLED)
                .order_by(Chain.index).limit(count).all()
            )]
            if not candidate_ids:
                return {'chainsCreated': 0, 'initialHolders': [], 'chains': []}

            with self.locks.hold_all(candidate_ids):
                stalled = (Chain.query
                           .filter(Chain.chain_id.in_(candidate_ids), Chain.state == STALLED)
                           .order_by(Chain.index)
                           .populate_existing()
                           .all())
                eligible = self.eligible_students(session_id, phase)
                if len(eligible) < len(stalled):
                    raise InsufficientEligibleStudents(
                        f'{len(stalled)} stalled chains but only {len(eligible)} eligible students',
                        details={'requested': len(stalled), 'eligible': len(eligible)},
                    )

                holders = self._random.sample(eligible, len(stalled))
                now = self.clock.now()
                with db_errors(Conflict('Chain holders changed concurrently, retry')):
                    for chain, holder in zip(stalled, holders):
                        chain.last_holder = holder
                        chain.state = ACTIVE
                        chain.last_at = now
                        self.issuer.issue_chain_token(chain, holder)
                    db.session.commit()
                snapshot = self.stalled_ids(session_id)

        logger.info("[CHAIN] Reseeded %d %s chain(s) for %s", len(stalled), phase, session_id)
        payload = [chain.to_dict() for chain in stalled]
        for chain in payload:
            self.publisher.chain_update(session_id, chain)
        self.publisher.stall_alert(session_id, snapshot)
        return {'chainsCreated': len(stalled), 'initialHolders': holders, 'chains': payload}

    def close(self, session_id, chain_id):
        """
        Complete a chain on its current holder, crediting that holder for the
        chain's phase. Used when nobody is left to scan the last student.
        """
        with self.locks.hold(chain_id):
            chain = self.get(session_id, chain_id)
            session = load_session(session_id, require_active=True)
            if chain.state == COMPLETED:
                raise InvalidState('Chain is already completed')
            if not chain.last_holder:
                raise InvalidState('Chain has no holder')

            now = self.clock.now()
            holder = chain.last_holder
            guard_active(session_id)
            was_stalled = chain.state == STALLED
            if chain.phase == ENTRY:
                status = LATE_ENTRY if now > session.late_cutoff_at else PRESENT_ENTRY
                record, _ = self.attendance.mark_entry(session_id, holder, status, METHOD_CLOSE, now)
            else:
                record, _ = self.attendance.mark_exit(session_id, holder, now)

            self.issuer.revoke_chain_tokens(chain_id)
            chain.current_token_id = None
            chain.state = COMPLETED
            chain.completed_at = now
            commit()

            self.publisher.attendance_update(session_id, record.to_dict())
            self.publisher.chain_update(session_id, chain.to_dict())
            if was_stalled:
                self.publisher.stall_alert(session_id, self.stalled_ids(session_id))

        logger.info("[CHAIN] Closed %s on %s", chain_id, holder)
        return {'success': True, 'chainId': chain_id, 'finalHolder': holder}

    def set_holder(self, session_id, chain_id, student_id):
        """
        Teacher override: hand the chain to ``student_id`` with a fresh token.
        The sequence is not advanced; no hand-off happened.
        """
        with self.locks.hold(chain_id):
            chain = self.get(session_id, chain_id)
            load_session(session_id, require_active=True)
            if chain.state == COMPLETED:
                raise InvalidState('Chain is already completed')
            if student_id != chain.last_holder and \
                    student_id not in self.eligible_students(session_id, chain.phase):
                raise IneligibleStudent(f'{student_id} cannot hold this chain')

            was_stalled = chain.state == STALLED
            with db_errors(IneligibleStudent(f'{student_id} already holds another chain')):
                guard_active(session_id)
                chain.last_holder = student_id
                chain.state = ACTIVE
                chain.last_at = self.clock.now()
                self.attendance.ensure(session_id, student_id)
                token = self.issuer.issue_chain_token(chain, student_id, ttl=self.recovery_ttl)
                db.session.commit()

            response = {
                'success': True,
                'chainId': chain.chain_id,
                'newHolder': student_id,
                'sequence': chain.last_seq,
                'token': token.to_payload(chain.phase),
                'expiresAt': isoformat(token.expires_at),
            }
            self.publisher.chain_update(session_id, chain.to_dict())
            if was_stalled:
                self.publisher.stall_alert(session_id, self.stalled_ids(session_id))

        logger.info("[CHAIN] %s handed to %s by teacher", chain_id, student_id)
        return response

    def _next_index(self, session_id, phase):
        current = (db.session.query(db.func.max(Chain.index))
                   .filter(Chain.session_id == session_id, Chain.phase == phase)
                   .scalar())
        return (current or 0) + 1
