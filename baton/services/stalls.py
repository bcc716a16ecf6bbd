"""
Stall detector: flags ACTIVE chains that have gone quiet for too long.
"""
import logging
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from baton.database import db
from baton.errors import AttendanceError
from baton.models import ACTIVE, STALLED, Chain, ClassSession

logger = logging.getLogger(__name__)


class StallDetector:

    def __init__(self, clock, chains, locks, publisher, threshold_seconds=60):
        self.clock = clock
        self.chains = chains
        self.locks = locks
        self.publisher = publisher
        self.threshold_seconds = threshold_seconds

    def tick(self):
        """
        One detection pass. Each chain is stalled under its own lock with a
        conditional UPDATE, so a hand-off that lands first keeps the chain
        ACTIVE. Per-chain failures are logged and picked up next tick.
        Returns the ids of the sessions whose stalled set changed.
        """
        now = self.clock.now()
        cutoff = now - timedelta(seconds=self.threshold_seconds)
        candidates = (db.session.query(Chain.chain_id, Chain.session_id)
                      .join(ClassSession, ClassSession.session_id == Chain.session_id)
                      .filter(ClassSession.status == ACTIVE,
                              Chain.state == ACTIVE,
                              Chain.last_at < cutoff)
                      .all())
        db.session.rollback()

        changed = set()
        for chain_id, session_id in candidates:
            try:
                with self.locks.hold(chain_id):
                    stalled = (Chain.query
                               .filter(Chain.chain_id == chain_id,
                                       Chain.state == ACTIVE,
                                       Chain.last_at < cutoff)
                               .update({'state': STALLED}, synchronize_session=False))
                    db.session.commit()
            except (AttendanceError, SQLAlchemyError) as exc:
                db.session.rollback()
                logger.error("[STALL] Could not flag %s: %s", chain_id, exc)
                continue
            if stalled:
                logger.warning("[STALL] Chain %s stalled (session %s)", chain_id, session_id)
                changed.add(session_id)

        for session_id in sorted(changed):
            self.publisher.stall_alert(session_id, self.chains.stalled_ids(session_id))
        return changed
