import logging
import os

import redis
from flask import Flask, jsonify
from sqlalchemy.exc import SQLAlchemyError

from .access_guard import WorkspaceGuard
from .auth import login_manager
from .blob_store import create_blob_store
from .config import config
from .exceptions import MultiplayerError
from .models import db
from .session_orchestrator import SessionOrchestrator
from .session_storage import SessionStorage
from .task_provisioner import create_provisioner
from shared.pubsub import PubSubClient

logger = logging.getLogger(__name__)


def create_app(config_name: str = None) -> Flask:
    """Application factory for the multiplayer session host."""
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    app = Flask(__name__)
    app.config.from_object(config[config_name])

    # Initialize extensions
    db.init_app(app)
    login_manager.init_app(app)

    # Redis is optional: without it there are no events and no start lock
    app.redis = None
    pubsub = None
    if app.config.get('REDIS_URL'):
        app.redis = redis.from_url(
            app.config['REDIS_URL'],
            decode_responses=True,
            socket_connect_timeout=5,
            socket_timeout=5
        )
        pubsub = PubSubClient(redis_client=app.redis)

    # Initialize services
    app.guard = WorkspaceGuard(eligible_engines=app.config['MULTIPLAYER_ENGINE_TYPES'])
    app.orchestrator = SessionOrchestrator(
        provisioner=create_provisioner(app.config),
        guard=app.guard,
        settings=app.config,
        redis_client=app.redis,
        pubsub=pubsub,
    )
    app.session_storage = SessionStorage(
        blob_store=create_blob_store(app.config),
        base_path=app.config['MULTIPLAYER_STORAGE_PATH'],
        max_file_size=app.config['MULTIPLAYER_MAX_FILE_SIZE'],
        allowed_extensions=app.config['MULTIPLAYER_ALLOWED_EXTENSIONS'],
    )

    # Create tables
    with app.app_context():
        db.create_all()

    register_error_handlers(app)
    register_health_routes(app)

    from .routes import sessions
    app.register_blueprint(sessions.bp)

    return app


def register_error_handlers(app: Flask):

    @app.errorhandler(MultiplayerError)
    def handle_multiplayer_error(error: MultiplayerError):
        if error.status_code >= 500:
            logger.error(f"{type(error).__name__}: {error.message}")
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(413)
    def handle_too_large(error):
        return jsonify({
            'success': False,
            'message': 'Validation failed',
            'errors': {'file': ['The file is too large.']},
        }), 422


def register_health_routes(app: Flask):

    @app.route('/health')
    def health_check():
        """Health check endpoint."""
        redis_ok = None
        if app.redis is not None:
            try:
                app.redis.ping()
                redis_ok = True
            except redis.RedisError:
                redis_ok = False

        try:
            db.session.execute(db.text('SELECT 1'))
            db_ok = True
        except SQLAlchemyError:
            db_ok = False

        status = 'healthy' if (db_ok and redis_ok is not False) else 'unhealthy'
        code = 200 if status == 'healthy' else 503

        return jsonify({
            'status': status,
            'redis': 'disabled' if redis_ok is None else ('connected' if redis_ok else 'disconnected'),
            'database': 'connected' if db_ok else 'disconnected'
        }), code
