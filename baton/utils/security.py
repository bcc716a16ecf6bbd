"""
Security utilities: identifiers, etags and the caller principal.

Identity itself is provisioned upstream. The fronting proxy forwards the
signed-in user as ``X-Client-Principal``: base64 of
``{"userId": "...", "userRoles": ["teacher"]}``.
"""
import base64
import binascii
import json
import secrets
from functools import wraps

from flask import g, request

from baton.errors import Forbidden, Unauthorized

PRINCIPAL_HEADER = 'X-Client-Principal'

TEACHER = 'teacher'
STUDENT = 'student'


def generate_token(length=16):
    """Generate a URL-safe random token."""
    return secrets.token_urlsafe(length)


def generate_id(prefix):
    return f"{prefix}_{secrets.token_hex(8)}"


def generate_etag():
    return secrets.token_hex(8)


def encode_principal(user_id, roles):
    raw = json.dumps({'userId': user_id, 'userRoles': list(roles)})
    return base64.b64encode(raw.encode('utf-8')).decode('ascii')


def parse_principal(header_value):
    """Decode the principal header into ``{'userId', 'roles'}``."""
    if not header_value:
        raise Unauthorized('Missing client principal')
    try:
        data = json.loads(base64.b64decode(header_value, validate=True).decode('utf-8'))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        raise Unauthorized('Malformed client principal')

    if not isinstance(data, dict):
        raise Unauthorized('Malformed client principal')
    user_id = data.get('userId')
    roles = data.get('userRoles') or []
    if not user_id or not isinstance(roles, list):
        raise Unauthorized('Malformed client principal')
    return {'userId': str(user_id), 'roles': [str(role).lower() for role in roles]}


def current_principal():
    principal = g.get('principal')
    if principal is None:
        principal = g.principal = parse_principal(request.headers.get(PRINCIPAL_HEADER))
    return principal


def require_role(*roles):
    """Route decorator: caller must carry at least one of ``roles``."""
    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            principal = current_principal()
            if not set(roles) & set(principal['roles']):
                raise Forbidden(f"Requires role: {' or '.join(roles)}")
            return view(*args, **kwargs)
        return wrapper
    return decorator
