"""
WebSocket event handlers: clients subscribe to a session's room and receive
attendanceUpdate / chainUpdate / stallAlert / sessionEnded pushes.
"""
import logging

from flask import request
from flask_socketio import emit, join_room, leave_room

from baton.errors import AttendanceError
from baton.extensions import services
from baton.services.events import STALL_ALERT, session_room

logger = logging.getLogger(__name__)


def register_socket_events(socketio):
    """Register all WebSocket event handlers with the SocketIO instance."""

    @socketio.on('connect')
    def handle_connect():
        logger.info("[WS] Client connected: %s", request.sid)
        emit('connected', {'message': 'Connected to attendance server', 'sid': request.sid})

    @socketio.on('disconnect')
    def handle_disconnect(*args):
        logger.info("[WS] Client disconnected: %s", request.sid)

    @socketio.on('join_session')
    def handle_join_session(data):
        """
        Client joins a session room for real-time updates.
        Data: { "sessionId": "sess_..." }
        """
        session_id = (data or {}).get('sessionId', '')
        if not session_id:
            emit('error', {'code': 'INVALID_REQUEST', 'message': 'sessionId is required'})
            return

        baton = services()
        try:
            baton.sessions.get(session_id)
        except AttendanceError as exc:
            emit('error', exc.to_dict()['error'])
            return

        join_room(session_room(session_id))
        emit('joined_session', {'message': 'Joined session room', 'sessionId': session_id})
        # late subscribers start from the current stalled set
        emit(STALL_ALERT, {
            'sessionId': session_id,
            'chainIds': baton.chains.stalled_ids(session_id),
        })
        logger.info("[WS] Client %s joined %s", request.sid, session_room(session_id))

    @socketio.on('leave_session')
    def handle_leave_session(data):
        """Client leaves a session room."""
        session_id = (data or {}).get('sessionId', '')
        if session_id:
            leave_room(session_room(session_id))
            logger.info("[WS] Client %s left %s", request.sid, session_room(session_id))

    return socketio
