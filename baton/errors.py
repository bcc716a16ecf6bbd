"""
Error taxonomy and the JSON error envelope.

Every failure a client can see maps to one stable ``code``; the message is for
humans, the code is the contract.
"""
import logging
from datetime import datetime, timezone

from flask import jsonify
from sqlalchemy.exc import OperationalError
from werkzeug.exceptions import HTTPException

logger = logging.getLogger(__name__)


class AttendanceError(Exception):
    code = 'INTERNAL_ERROR'
    status = 500
    retryable = False
    default_message = 'Internal server error'

    def __init__(self, message=None, details=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.details = details

    def to_dict(self):
        body = {
            'code': self.code,
            'message': self.message,
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'retryable': self.retryable,
        }
        if self.details is not None:
            body['details'] = self.details
        return {'error': body}


class InvalidRequest(AttendanceError):
    code = 'INVALID_REQUEST'
    status = 400
    default_message = 'Invalid request'


class Unauthorized(AttendanceError):
    code = 'UNAUTHORIZED'
    status = 401
    default_message = 'Authentication required'


class Forbidden(AttendanceError):
    code = 'FORBIDDEN'
    status = 403
    default_message = 'Not allowed'


class NotFound(AttendanceError):
    code = 'NOT_FOUND'
    status = 404
    default_message = 'Not found'


class ExpiredToken(AttendanceError):
    code = 'EXPIRED_TOKEN'
    status = 400
    default_message = 'This QR code has expired. Please scan a new one.'


class TokenAlreadyUsed(AttendanceError):
    code = 'TOKEN_ALREADY_USED'
    status = 409
    default_message = 'This QR code has already been scanned.'


class InvalidState(AttendanceError):
    code = 'INVALID_STATE'
    status = 400
    default_message = 'Operation not allowed in the current state'


class IneligibleStudent(AttendanceError):
    code = 'INELIGIBLE_STUDENT'
    status = 400
    default_message = 'Student is not eligible for this scan'


class InsufficientEligibleStudents(AttendanceError):
    code = 'INSUFFICIENT_ELIGIBLE_STUDENTS'
    status = 400
    default_message = 'Not enough eligible students'


class Conflict(AttendanceError):
    code = 'CONFLICT'
    status = 409
    retryable = True
    default_message = 'Concurrent update, please retry'


class GeofenceViolation(AttendanceError):
    code = 'GEOFENCE_VIOLATION'
    status = 403
    default_message = 'You are outside the classroom area'


class WifiViolation(AttendanceError):
    code = 'WIFI_VIOLATION'
    status = 403
    default_message = 'You are not connected to the classroom network'


class RateLimited(AttendanceError):
    code = 'RATE_LIMITED'
    status = 429
    retryable = True
    default_message = 'Too many requests, slow down'


class StorageUnavailable(AttendanceError):
    code = 'STORAGE_UNAVAILABLE'
    status = 503
    retryable = True
    default_message = 'Storage is busy, please retry'


def error_response(error):
    return jsonify(error.to_dict()), error.status


def register_error_handlers(app):
    """Render every failure as ``{"error": {...}}``."""

    @app.errorhandler(AttendanceError)
    def handle_attendance_error(error):
        if error.status >= 500:
            logger.error("[API] %s: %s", error.code, error.message)
        else:
            logger.info("[API] %s: %s", error.code, error.message)
        return error_response(error)

    @app.errorhandler(429)
    def handle_rate_limited(error):
        return error_response(RateLimited(details={'limit': str(error.description)}))

    @app.errorhandler(OperationalError)
    def handle_storage_error(error):
        logger.error("[DB] Operational error: %s", error)
        return error_response(StorageUnavailable())

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        if error.code == 404:
            return error_response(NotFound())
        if error.code == 405:
            return error_response(InvalidRequest('Method not allowed'))
        return jsonify({'error': {
            'code': 'INVALID_REQUEST' if error.code < 500 else 'INTERNAL_ERROR',
            'message': error.description,
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'retryable': False,
        }}), error.code

    @app.errorhandler(Exception)
    def handle_unexpected(error):
        logger.exception("[API] Unhandled error")
        return error_response(AttendanceError())
