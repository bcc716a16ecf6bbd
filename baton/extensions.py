"""
Flask extensions and the per-app service container.
"""
import logging

from flask import current_app, request
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_socketio import SocketIO

from baton.services.attendance import AttendanceAggregator
from baton.services.chains import ChainRegistry
from baton.services.events import EventPublisher
from baton.services.scans import ScanProcessor
from baton.services.sessions import SessionManager
from baton.services.stalls import StallDetector
from baton.services.tokens import TokenIssuer
from baton.utils.clock import SystemClock
from baton.utils.locks import KeyedLocks
from baton.utils.scheduler import JobScheduler

logger = logging.getLogger(__name__)

STALL_JOB_ID = 'stall-detector'


def log_rate_limit_violation(limit):
    logger.warning("[LIMIT] %s exceeded %s on %s", get_remote_address(), limit.limit, request.path)


def device_key():
    """Rate-limit key: the scanning device, falling back to the client IP."""
    data = request.get_json(silent=True) or {}
    metadata = data.get('metadata') or {}
    fingerprint = metadata.get('deviceFingerprint') if isinstance(metadata, dict) else None
    return f"device:{fingerprint}" if fingerprint else f"ip:{get_remote_address()}"


def device_limit():
    return current_app.config['SCAN_RATE_LIMIT_DEVICE']


def ip_limit():
    return current_app.config['SCAN_RATE_LIMIT_IP']


socketio = SocketIO()
limiter = Limiter(
    key_func=get_remote_address,
    default_limits=[],
    on_breach=log_rate_limit_violation,
)


class Baton:
    """Wires the attendance services for one Flask app."""

    def __init__(self, app=None, clock=None):
        if app is not None:
            self.init_app(app, clock=clock)

    def init_app(self, app, clock=None):
        config = app.config
        self.app = app
        self.clock = clock or SystemClock()
        self.locks = KeyedLocks(config['CHAIN_LOCK_TIMEOUT_SECONDS'])
        self.scheduler = JobScheduler(app)
        self.publisher = EventPublisher(
            socketio, self.clock,
            retries=config['PUBLISH_RETRIES'],
            backoff=config['PUBLISH_BACKOFF_SECONDS'],
        )
        self.issuer = TokenIssuer(
            self.clock,
            chain_ttl=config['CHAIN_TOKEN_TTL_SECONDS'],
            rotating_ttl=config['ROTATING_TOKEN_TTL_SECONDS'],
        )
        self.attendance = AttendanceAggregator(self.clock)
        self.chains = ChainRegistry(
            self.clock, self.issuer, self.attendance, self.locks, self.publisher,
            recovery_ttl=config['RECOVERY_TOKEN_TTL_SECONDS'],
        )
        self.scans = ScanProcessor(
            self.clock, self.issuer, self.attendance, self.chains, self.locks, self.publisher,
            soft_location_on_exit=config['SOFT_LOCATION_ON_EXIT'],
            wifi_allowlist=config['WIFI_SSID_ALLOWLIST'],
        )
        self.stalls = StallDetector(
            self.clock, self.chains, self.locks, self.publisher,
            threshold_seconds=config['CHAIN_TOKEN_TTL_SECONDS'] * config['STALL_TTL_MULTIPLIER'],
        )
        self.sessions = SessionManager(
            self.clock, self.issuer, self.attendance, self.publisher,
            scheduler=self.scheduler,
            rotation_interval=config['ROTATION_INTERVAL_SECONDS'],
            late_cutoff_minutes=config['DEFAULT_LATE_CUTOFF_MINUTES'],
            exit_window_minutes=config['DEFAULT_EXIT_WINDOW_MINUTES'],
        )
        app.extensions['baton'] = self

    def start_background_jobs(self):
        self.scheduler.add_interval(
            STALL_JOB_ID, self.stalls.tick, self.app.config['STALL_CHECK_INTERVAL_SECONDS'],
        )
        with self.app.app_context():
            resumed = self.sessions.resume_jobs()
        self.scheduler.start()
        logger.info("[SCHED] Stall detector armed, %d active session(s) resumed", resumed)


def services():
    """The Baton container of the current app."""
    return current_app.extensions['baton']
