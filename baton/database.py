"""
Database initialization and helpers.
"""
import logging

from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event

db = SQLAlchemy()

logger = logging.getLogger(__name__)


def init_db(app):
    """Initialize the database with the Flask app and create all tables."""
    db.init_app(app)
    with app.app_context():
        if db.engine.url.get_backend_name() == 'sqlite':
            busy_ms = int(app.config.get('SQLITE_BUSY_TIMEOUT_SECONDS', 5) * 1000)

            # WAL mode, bounded wait on a locked database
            @event.listens_for(db.engine, "connect")
            def set_sqlite_pragma(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=NORMAL")
                cursor.execute(f"PRAGMA busy_timeout={busy_ms}")
                cursor.close()

        # Import models so they're registered
        from baton import models  # noqa: F401
        db.create_all()
        logger.info("[DB] Database initialized (%s)", db.engine.url.get_backend_name())
