"""
Event publisher: pushes state changes to everyone watching a session.

Subscribers join the Socket.IO room ``session_<sessionId>``. Events:
- attendanceUpdate: one student's attendance record changed
- chainUpdate:      a chain advanced, stalled, recovered or completed
- stallAlert:       full snapshot of the session's stalled chain ids
- sessionEnded:     the session closed, with final statuses
"""
import logging

from baton.utils.clock import isoformat

logger = logging.getLogger(__name__)

ATTENDANCE_UPDATE = 'attendanceUpdate'
CHAIN_UPDATE = 'chainUpdate'
STALL_ALERT = 'stallAlert'
SESSION_ENDED = 'sessionEnded'


def session_room(session_id):
    return f"session_{session_id}"


class EventPublisher:

    def __init__(self, socketio, clock, retries=3, backoff=0.05):
        self.socketio = socketio
        self.clock = clock
        self.retries = max(1, retries)
        self.backoff = backoff

    def publish(self, session_id, event, payload):
        """
        Emit ``event`` to the session room. Transport failures are retried
        with exponential backoff, then logged; the caller's state change has
        already committed and is never rolled back for a lost notification.
        """
        room = session_room(session_id)
        delay = self.backoff
        for attempt in range(1, self.retries + 1):
            try:
                self.socketio.emit(event, payload, room=room)
                return True
            except Exception as exc:  # transport errors vary by async mode
                if attempt == self.retries:
                    logger.error("[WS] Dropped %s for %s after %d attempts: %s",
                                 event, room, attempt, exc)
                    return False
                logger.warning("[WS] %s to %s failed (attempt %d): %s", event, room, attempt, exc)
                if delay:
                    self.socketio.sleep(delay)
                delay *= 2
        return False

    def attendance_update(self, session_id, record):
        return self.publish(session_id, ATTENDANCE_UPDATE, {
            'sessionId': session_id,
            'record': record,
            'timestamp': isoformat(self.clock.now()),
        })

    def chain_update(self, session_id, chain):
        return self.publish(session_id, CHAIN_UPDATE, {
            'sessionId': session_id,
            'chain': chain,
            'timestamp': isoformat(self.clock.now()),
        })

    def stall_alert(self, session_id, chain_ids):
        return self.publish(session_id, STALL_ALERT, {
            'sessionId': session_id,
            'chainIds': list(chain_ids),
            'timestamp': isoformat(self.clock.now()),
        })

    def session_ended(self, session_id, summary):
        return self.publish(session_id, SESSION_ENDED, dict(summary, sessionId=session_id))
