"""
Baton attendance server: Flask + Socket.IO application factory.

Run with: python -m baton.run
"""
import logging

from flask import Flask
from flask_cors import CORS

from baton.config import Config
from baton.database import init_db
from baton.errors import register_error_handlers
from baton.extensions import Baton, limiter, socketio


def configure_logging(app):
    logging.basicConfig(
        level=app.config.get('LOG_LEVEL', 'INFO'),
        format='%(asctime)s %(levelname)s %(name)s %(message)s',
    )


def create_app(config_object=None, clock=None):
    """Build the app. ``clock`` replaces the wall clock (tests)."""
    app = Flask(__name__, static_folder=None)
    app.config.from_object(config_object or Config)
    configure_logging(app)

    # Enable CORS for the dashboard and student clients
    CORS(app, resources={r"/api/*": {"origins": app.config['CORS_ORIGINS']}})

    socketio.init_app(
        app,
        cors_allowed_origins=app.config['CORS_ORIGINS'],
        async_mode=app.config['SOCKETIO_ASYNC_MODE'],
    )
    limiter.init_app(app)
    init_db(app)
    baton = Baton(app, clock=clock)
    register_error_handlers(app)

    # Register route blueprints
    from baton.routes.chains import chains_bp
    from baton.routes.scans import scans_bp
    from baton.routes.sessions import sessions_bp

    app.register_blueprint(sessions_bp)
    app.register_blueprint(chains_bp)
    app.register_blueprint(scans_bp)

    # Register WebSocket events
    from baton.sockets.events import register_socket_events
    register_socket_events(socketio)

    @app.route('/api/health', methods=['GET'])
    def health_check():
        """Health check endpoint."""
        return {'status': 'ok', 'service': 'baton-attendance-server'}, 200

    if app.config['SCHEDULER_ENABLED']:
        baton.start_background_jobs()

    return app
