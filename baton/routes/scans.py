"""
Scan routes: the four ways a student's phone reports a QR scan.

All of them expect JSON:
{
    "tokenId": "...",
    "etag": "...",
    "metadata": {
        "deviceFingerprint": "...",
        "gps": {"latitude": 6.52, "longitude": 3.37},
        "bssid": "campus-wifi-2f"
    }
}
"""
from flask import Blueprint, jsonify, request

from baton.errors import InvalidRequest
from baton.extensions import device_key, device_limit, ip_limit, limiter, services
from baton.models import EARLY_LEAVE, ENTRY, EXIT, LATE_ENTRY
from baton.routes.sessions import json_body
from baton.utils.security import STUDENT, current_principal, require_role

scans_bp = Blueprint('scans', __name__)


def scan_request():
    data = json_body()
    metadata = data.get('metadata') or {}
    if not isinstance(metadata, dict):
        raise InvalidRequest('metadata must be an object')
    client = {
        'ip': request.remote_addr,
        'userAgent': request.headers.get('User-Agent'),
    }
    return (data.get('tokenId'), data.get('etag'), current_principal()['userId'],
            metadata, client)


def _chain_scan(phase):
    token_id, etag, student_id, metadata, client = scan_request()
    result = services().scans.scan_chain(phase, token_id, etag, student_id, metadata, client)
    return jsonify(result), 200


def _rotating_scan(kind):
    token_id, etag, student_id, metadata, client = scan_request()
    result = services().scans.scan_rotating(kind, token_id, etag, student_id, metadata, client)
    return jsonify(result), 200


@scans_bp.route('/api/scan/chain', methods=['POST'])
@limiter.limit(ip_limit)
@limiter.limit(device_limit, key_func=device_key)
@require_role(STUDENT)
def scan_entry_chain():
    return _chain_scan(ENTRY)


@scans_bp.route('/api/scan/exit-chain', methods=['POST'])
@limiter.limit(ip_limit)
@limiter.limit(device_limit, key_func=device_key)
@require_role(STUDENT)
def scan_exit_chain():
    return _chain_scan(EXIT)


@scans_bp.route('/api/scan/late-entry', methods=['POST'])
@limiter.limit(ip_limit)
@limiter.limit(device_limit, key_func=device_key)
@require_role(STUDENT)
def scan_late_entry():
    return _rotating_scan(LATE_ENTRY)


@scans_bp.route('/api/scan/early-leave', methods=['POST'])
@limiter.limit(ip_limit)
@limiter.limit(device_limit, key_func=device_key)
@require_role(STUDENT)
def scan_early_leave():
    return _rotating_scan(EARLY_LEAVE)
