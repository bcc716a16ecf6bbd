from datetime import datetime, timedelta

import pytest

from baton.app import create_app
from baton.config import TestingConfig
from baton.database import db
from baton.models import Chain, ChainToken
from baton.utils.security import PRINCIPAL_HEADER, encode_principal

START = datetime(2026, 3, 2, 9, 0, 0)
TEACHER_ID = 't-ada'


class FrozenClock:
    def __init__(self, now):
        self.current = now

    def now(self):
        return self.current

    def advance(self, seconds=0, minutes=0):
        self.current += timedelta(seconds=seconds, minutes=minutes)

    def set(self, when):
        self.current = when


@pytest.fixture()
def clock():
    return FrozenClock(START)


@pytest.fixture()
def config_class(tmp_path):
    class _Config(TestingConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'baton_test.db'}"

    return _Config


@pytest.fixture()
def app(config_class, clock):
    app = create_app(config_class, clock=clock)
    yield app
    with app.app_context():
        db.session.remove()
        db.engine.dispose()


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def baton(app):
    """Service container with an app context held for the whole test."""
    with app.app_context():
        yield app.extensions['baton']


@pytest.fixture()
def published(baton, monkeypatch):
    """Capture every event the publisher would emit, as (session_id, event, payload)."""
    events = []

    def record(session_id, event, payload):
        events.append((session_id, event, payload))
        return True

    monkeypatch.setattr(baton.publisher, 'publish', record)
    return events


@pytest.fixture()
def headers():
    def _headers(user_id, *roles):
        return {PRINCIPAL_HEADER: encode_principal(user_id, roles or ('student',))}
    return _headers


@pytest.fixture()
def teacher_headers(headers):
    return headers(TEACHER_ID, 'teacher')


@pytest.fixture()
def make_session(baton):
    """Create a session owned by TEACHER_ID and enroll ``students``."""
    def _make(students=(), **fields):
        data = {'classId': 'CS101', 'startAt': '2026-03-02T09:00:00Z', 'lateCutoffMinutes': 15}
        data.update(fields)
        session = baton.sessions.create(TEACHER_ID, data)
        for student_id in students:
            baton.sessions.join(session.session_id, student_id)
        return session.session_id
    return _make


@pytest.fixture()
def live_token():
    """The ACTIVE token of a chain, read fresh from the database."""
    def _token(chain_id):
        db.session.expire_all()
        chain = db.session.get(Chain, chain_id)
        return db.session.get(ChainToken, chain.current_token_id)
    return _token
