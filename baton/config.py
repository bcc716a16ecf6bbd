"""
Configuration for the Baton attendance server.

Every value can be overridden from the environment; timings are in seconds
unless the name says otherwise.
"""
import os

BASE_DIR = os.path.abspath(os.path.dirname(__file__))


def _parse_bool(value, default=False):
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _parse_csv(value):
    if not value:
        return []
    return [item.strip() for item in value.split(',') if item.strip()]


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value not in (None, '') else default


def _env_float(name, default):
    value = os.environ.get(name)
    return float(value) if value not in (None, '') else default


class Config:
    """Base configuration."""
    SECRET_KEY = os.environ.get('SECRET_KEY', 'baton-dev-key-change-in-production')
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        'DATABASE_URL', f"sqlite:///{os.path.join(BASE_DIR, 'baton.db')}"
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLITE_BUSY_TIMEOUT_SECONDS = _env_float('SQLITE_BUSY_TIMEOUT_SECONDS', 5)

    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # Socket.IO
    SOCKETIO_ASYNC_MODE = os.environ.get('SOCKETIO_ASYNC_MODE', 'eventlet')
    CORS_ORIGINS = _parse_csv(os.environ.get('CORS_ORIGINS')) or '*'

    # Chain custody tokens
    CHAIN_TOKEN_TTL_SECONDS = _env_int('CHAIN_TOKEN_TTL_SECONDS', 20)
    # None means "same as CHAIN_TOKEN_TTL_SECONDS"
    RECOVERY_TOKEN_TTL_SECONDS = (
        _env_int('RECOVERY_TOKEN_TTL_SECONDS', 0) or None
    )
    CHAIN_LOCK_TIMEOUT_SECONDS = _env_float('CHAIN_LOCK_TIMEOUT_SECONDS', 2)

    # Rotating late-entry / early-leave tokens
    ROTATING_TOKEN_TTL_SECONDS = _env_int('ROTATING_TOKEN_TTL_SECONDS', 60)
    ROTATION_INTERVAL_SECONDS = _env_int('ROTATION_INTERVAL_SECONDS', 55)

    # Stall detection
    STALL_CHECK_INTERVAL_SECONDS = _env_int('STALL_CHECK_INTERVAL_SECONDS', 5)
    STALL_TTL_MULTIPLIER = _env_int('STALL_TTL_MULTIPLIER', 3)

    # Session defaults
    DEFAULT_LATE_CUTOFF_MINUTES = _env_int('DEFAULT_LATE_CUTOFF_MINUTES', 15)
    DEFAULT_EXIT_WINDOW_MINUTES = _env_int('DEFAULT_EXIT_WINDOW_MINUTES', 10)

    # Location policy
    SOFT_LOCATION_ON_EXIT = _parse_bool(os.environ.get('SOFT_LOCATION_ON_EXIT'), True)
    WIFI_SSID_ALLOWLIST = _parse_csv(os.environ.get('WIFI_SSID_ALLOWLIST'))

    # Background jobs
    SCHEDULER_ENABLED = _parse_bool(os.environ.get('SCHEDULER_ENABLED'), True)

    # Event publishing
    PUBLISH_RETRIES = _env_int('PUBLISH_RETRIES', 3)
    PUBLISH_BACKOFF_SECONDS = _env_float('PUBLISH_BACKOFF_SECONDS', 0.05)

    # Rate limiting (Flask-Limiter)
    RATELIMIT_ENABLED = _parse_bool(os.environ.get('RATELIMIT_ENABLED'), True)
    RATELIMIT_STORAGE_URI = os.environ.get('RATELIMIT_STORAGE_URI', 'memory://')
    SCAN_RATE_LIMIT_DEVICE = os.environ.get('SCAN_RATE_LIMIT_DEVICE', '10 per minute')
    SCAN_RATE_LIMIT_IP = os.environ.get('SCAN_RATE_LIMIT_IP', '50 per minute')


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SOCKETIO_ASYNC_MODE = 'threading'
    SCHEDULER_ENABLED = False
    RATELIMIT_ENABLED = False
    PUBLISH_BACKOFF_SECONDS = 0
    LOG_LEVEL = 'WARNING'
