"""
Lookups and database error handling shared by the services.
"""
import logging
from contextlib import contextmanager

from sqlalchemy.exc import IntegrityError, OperationalError

from baton.database import db
from baton.errors import Conflict, InvalidRequest, InvalidState, NotFound, StorageUnavailable
from baton.models import ACTIVE, ClassSession

logger = logging.getLogger(__name__)


def load_session(session_id, require_active=False):
    session = db.session.get(ClassSession, session_id)
    if session is None:
        raise NotFound(f'Session {session_id} not found')
    if require_active and session.status != ACTIVE:
        raise InvalidState('Session is not active')
    return session


def guard_active(session_id):
    """
    Re-assert inside the current transaction that the session is ACTIVE.

    The conditional UPDATE takes the session row's write lock, so an ``end``
    racing with this transaction either commits first (and this raises) or
    waits until this transaction commits and then finalizes its writes.
    """
    touched = (ClassSession.query
               .filter_by(session_id=session_id, status=ACTIVE)
               .update({'status': ACTIVE}, synchronize_session=False))
    if touched != 1:
        db.session.rollback()
        raise InvalidState('Session is not active')


def positive_count(count):
    try:
        count = int(count)
    except (TypeError, ValueError):
        raise InvalidRequest('count must be an integer')
    if count < 1:
        raise InvalidRequest('count must be at least 1')
    return count


@contextmanager
def db_errors(on_conflict=None):
    """
    Roll back and translate database failures raised inside the block.
    Constraint violations raise ``on_conflict`` (default ``Conflict``); a
    locked or unreachable database raises the retryable ``StorageUnavailable``.
    """
    try:
        yield
    except IntegrityError as exc:
        db.session.rollback()
        logger.warning("[DB] Constraint violation: %s", exc.orig)
        raise (on_conflict or Conflict()) from exc
    except OperationalError as exc:
        db.session.rollback()
        logger.error("[DB] Storage unavailable: %s", exc.orig)
        raise StorageUnavailable() from exc


def commit(on_conflict=None):
    with db_errors(on_conflict):
        db.session.commit()
