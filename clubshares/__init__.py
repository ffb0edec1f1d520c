import logging
import os

from flask import Flask, jsonify
from sqlalchemy.orm.exc import StaleDataError

from clubshares.errors import (
    AuthorizationError, ClubShareError, DependencyFailure, IntegrityError,
    NotFoundError, ValidationError
)
from clubshares.extensions import db, login_manager
from config import Config

logger = logging.getLogger(__name__)

_ERROR_STATUS = (
    (AuthorizationError, 403),
    (NotFoundError, 404),
    (ValidationError, 400),
    (DependencyFailure, 502),
    (IntegrityError, 409),
)


def _configure_logging(app):
    level = getattr(logging, str(app.config.get('LOG_LEVEL', 'INFO')).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    logging.getLogger('clubshares').setLevel(level)


def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)
    _configure_logging(app)

    os.makedirs(app.instance_path, exist_ok=True)

    # Initialize extensions
    db.init_app(app)
    login_manager.init_app(app)

    # User loader for Flask-Login
    from clubshares.models import User

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'error': 'Login required'}), 401

    # Register blueprints
    from clubshares.routes.auth import auth_bp
    from clubshares.routes.club_admin import club_admin_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(club_admin_bp)

    @app.errorhandler(ClubShareError)
    def handle_club_share_error(error):
        for error_class, status in _ERROR_STATUS:
            if isinstance(error, error_class):
                return jsonify({'error': str(error), 'kind': type(error).__name__}), status
        return jsonify({'error': str(error), 'kind': type(error).__name__}), 500

    @app.errorhandler(StaleDataError)
    def handle_stale_data(error):
        db.session.rollback()
        return jsonify({'error': 'Record was modified concurrently, reload and retry',
                        'kind': 'ConcurrentModification'}), 409

    from clubshares.services.notification_service import log_only_enabled

    if not app.config.get('NOTIFICATION_URL') and not log_only_enabled(app.config):
        logger.warning("NOTIFICATION_URL is not set: consent invitations and activation "
                       "emails will fail. Set NOTIFICATION_LOG_ONLY=true to only log them.")

    with app.app_context():
        db.create_all()
        logger.info("Database tables ready")

    return app
