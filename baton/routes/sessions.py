"""
Session routes: lifecycle, roster, attendance, rotating QR windows.
"""
from flask import Blueprint, jsonify, request

from baton.errors import Forbidden, InvalidRequest
from baton.extensions import services
from baton.models import EARLY_LEAVE, LATE_ENTRY, ScanLog
from baton.services.sessions import roster_size
from baton.utils.qr import generate_qr_base64
from baton.utils.security import STUDENT, TEACHER, current_principal, require_role

sessions_bp = Blueprint('sessions', __name__)


def json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidRequest('JSON object expected')
    return data


def with_image(payload):
    """Attach a PNG data URI of the token when ``?image=1`` is passed."""
    if request.args.get('image') in ('1', 'true') and payload.get('token'):
        payload['qrImage'] = generate_qr_base64(payload['token'])
    return payload


@sessions_bp.route('/api/sessions', methods=['POST'])
@require_role(TEACHER)
def create_session():
    """
    Create a new attendance session owned by the calling teacher.

    Expects JSON:
    {
        "classId": "CS101",
        "startAt": "2026-03-02T09:00:00Z",
        "lateCutoffMinutes": 15,
        "constraints": {"geofence": {"latitude": 1.0, "longitude": 2.0, "radiusMeters": 50}}
    }
    """
    baton = services()
    session = baton.sessions.create(current_principal()['userId'], json_body())
    return jsonify({'session': session.to_dict(now=baton.clock.now())}), 201


@sessions_bp.route('/api/sessions/<session_id>', methods=['GET'])
def get_session(session_id):
    current_principal()
    baton = services()
    session = baton.sessions.get(session_id)
    return jsonify({
        'session': session.to_dict(now=baton.clock.now()),
        'chains': [chain.to_dict() for chain in baton.chains.list_chains(session_id)],
        'stalledChains': baton.chains.stalled_ids(session_id),
        'rosterSize': roster_size(session_id),
    }), 200


@sessions_bp.route('/api/sessions/<session_id>', methods=['PATCH'])
@require_role(TEACHER)
def update_session(session_id):
    """
    Change an active session. Any subset of the create fields:
    {
        "lateCutoffMinutes": 20,
        "constraints": {"wifiAllowlist": ["campus-wifi"]}
    }
    """
    baton = services()
    session = baton.sessions.update(session_id, current_principal()['userId'], json_body())
    return jsonify({'session': session.to_dict(now=baton.clock.now())}), 200


@sessions_bp.route('/api/sessions/teacher/<teacher_id>', methods=['GET'])
@require_role(TEACHER)
def list_teacher_sessions(teacher_id):
    """All sessions of the calling teacher, most recent first."""
    if current_principal()['userId'] != teacher_id:
        raise Forbidden('You can only list your own sessions')
    baton = services()
    now = baton.clock.now()
    sessions = baton.sessions.for_teacher(teacher_id)
    return jsonify({'sessions': [session.to_dict(now=now) for session in sessions]}), 200


@sessions_bp.route('/api/sessions/<session_id>/join', methods=['POST'])
@require_role(STUDENT)
def join_session(session_id):
    """Add the calling student to the session roster."""
    record, created = services().sessions.join(session_id, current_principal()['userId'])
    return jsonify({'success': True, 'record': record.to_dict()}), 201 if created else 200


@sessions_bp.route('/api/sessions/<session_id>/end', methods=['POST'])
@require_role(TEACHER)
def end_session(session_id):
    """End the session and return every student's final status."""
    summary = services().sessions.end(session_id, current_principal()['userId'])
    return jsonify(summary), 200


@sessions_bp.route('/api/sessions/<session_id>/mark-exit', methods=['POST'])
@require_role(TEACHER)
def mark_student_exit(session_id):
    """
    Record a verified exit for a student the exit chain could not reach.

    Expects JSON:
    {
        "studentId": "s-042"
    }
    """
    student_id = str(json_body().get('studentId') or '').strip()
    if not student_id:
        raise InvalidRequest('studentId is required')
    result = services().sessions.mark_exit(session_id, current_principal()['userId'], student_id)
    return jsonify(result), 200


@sessions_bp.route('/api/sessions/<session_id>/attendance', methods=['GET'])
@require_role(TEACHER)
def get_attendance(session_id):
    baton = services()
    session = baton.sessions.owned(session_id, current_principal()['userId'])
    return jsonify({
        'sessionId': session_id,
        'status': session.status,
        'attendance': baton.sessions.attendance_for(session_id),
    }), 200


@sessions_bp.route('/api/sessions/<session_id>/scan-logs', methods=['GET'])
@require_role(TEACHER)
def get_scan_logs(session_id):
    services().sessions.owned(session_id, current_principal()['userId'])
    limit = request.args.get('limit', 200, type=int)
    logs = (ScanLog.query
            .filter_by(session_id=session_id)
            .order_by(ScanLog.scanned_at.desc(), ScanLog.id.desc())
            .limit(max(1, min(limit, 1000)))
            .all())
    return jsonify({'sessionId': session_id, 'logs': [log.to_dict() for log in logs]}), 200


@sessions_bp.route('/api/sessions/<session_id>/tokens/<student_id>', methods=['GET'])
def get_student_token(session_id, student_id):
    """The holder's own chain token, for display on their phone."""
    principal = current_principal()
    if principal['userId'] != student_id and TEACHER not in principal['roles']:
        raise Forbidden('Students can only read their own token')
    baton = services()
    baton.sessions.get(session_id)
    return jsonify(with_image(baton.chains.current_token(session_id, student_id))), 200


# ─── Rotating QR windows ────────────────────────────────

@sessions_bp.route('/api/sessions/<session_id>/late-qr', methods=['GET'])
@require_role(TEACHER)
def get_late_qr(session_id):
    baton = services()
    baton.sessions.owned(session_id, current_principal()['userId'])
    return jsonify(with_image(baton.sessions.current_rotating(session_id, LATE_ENTRY))), 200


@sessions_bp.route('/api/sessions/<session_id>/early-qr', methods=['GET'])
@require_role(TEACHER)
def get_early_qr(session_id):
    baton = services()
    baton.sessions.owned(session_id, current_principal()['userId'])
    return jsonify(with_image(baton.sessions.current_rotating(session_id, EARLY_LEAVE))), 200


@sessions_bp.route('/api/sessions/<session_id>/start-early-leave', methods=['POST'])
@require_role(TEACHER)
def start_early_leave(session_id):
    result = services().sessions.start_early_leave(session_id, current_principal()['userId'])
    return jsonify(with_image(result)), 200


@sessions_bp.route('/api/sessions/<session_id>/stop-early-leave', methods=['POST'])
@require_role(TEACHER)
def stop_early_leave(session_id):
    result = services().sessions.stop_early_leave(session_id, current_principal()['userId'])
    return jsonify(result), 200
