"""
Chain routes: seeding, reseeding and teacher recovery of custody chains.
"""
from flask import Blueprint, jsonify, request

from baton.errors import InvalidRequest
from baton.extensions import services
from baton.models import ENTRY, EXIT
from baton.routes.sessions import json_body
from baton.utils.security import TEACHER, current_principal, require_role

chains_bp = Blueprint('chains', __name__)


def owned_session(session_id):
    return services().sessions.owned(session_id, current_principal()['userId'])


def requested_count():
    return request.args.get('count', 1)


@chains_bp.route('/api/sessions/<session_id>/chains', methods=['GET'])
@require_role(TEACHER)
def list_chains(session_id):
    owned_session(session_id)
    phase = request.args.get('phase')
    if phase and phase not in (ENTRY, EXIT):
        raise InvalidRequest('phase must be ENTRY or EXIT')
    chains = services().chains.list_chains(session_id, phase)
    return jsonify({'sessionId': session_id, 'chains': [chain.to_dict() for chain in chains]}), 200


@chains_bp.route('/api/sessions/<session_id>/seed-entry', methods=['POST'])
@require_role(TEACHER)
def seed_entry(session_id):
    """Start ``count`` entry chains on random students."""
    owned_session(session_id)
    return jsonify(services().chains.seed(session_id, ENTRY, requested_count())), 201


@chains_bp.route('/api/sessions/<session_id>/start-exit-chain', methods=['POST'])
@require_role(TEACHER)
def start_exit_chain(session_id):
    """Start ``count`` exit chains on random students who entered."""
    owned_session(session_id)
    return jsonify(services().chains.seed(session_id, EXIT, requested_count())), 201


@chains_bp.route('/api/sessions/<session_id>/reseed-entry', methods=['POST'])
@require_role(TEACHER)
def reseed_entry(session_id):
    owned_session(session_id)
    return jsonify(services().chains.reseed(session_id, ENTRY, requested_count())), 200


@chains_bp.route('/api/sessions/<session_id>/reseed-exit', methods=['POST'])
@require_role(TEACHER)
def reseed_exit(session_id):
    owned_session(session_id)
    return jsonify(services().chains.reseed(session_id, EXIT, requested_count())), 200


@chains_bp.route('/api/sessions/<session_id>/chains/<chain_id>/close', methods=['POST'])
@require_role(TEACHER)
def close_chain(session_id, chain_id):
    """Complete a chain on its last holder."""
    owned_session(session_id)
    return jsonify(services().chains.close(session_id, chain_id)), 200


@chains_bp.route('/api/sessions/<session_id>/chains/<chain_id>/set-holder', methods=['POST'])
@require_role(TEACHER)
def set_chain_holder(session_id, chain_id):
    """
    Hand a chain to a chosen student.

    Expects JSON:
    {
        "studentId": "s-042"
    }
    """
    owned_session(session_id)
    student_id = str(json_body().get('studentId') or '').strip()
    if not student_id:
        raise InvalidRequest('studentId is required')
    return jsonify(services().chains.set_holder(session_id, chain_id, student_id)), 200


@chains_bp.route('/api/sessions/<session_id>/chains/<chain_id>/history', methods=['GET'])
@require_role(TEACHER)
def chain_history(session_id, chain_id):
    owned_session(session_id)
    return jsonify(services().chains.history(session_id, chain_id)), 200
