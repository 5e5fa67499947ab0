import logging
import os
from logging.handlers import RotatingFileHandler

from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_login import LoginManager
from flask_bcrypt import Bcrypt
from asset_tracker.config import Config

db = SQLAlchemy()
bcrypt = Bcrypt()
login_manager = LoginManager()


def setup_logging(app):
    level = getattr(logging, str(app.config['LOG_LEVEL']).upper(), logging.INFO)
    logging.getLogger('asset_tracker').setLevel(level)
    app.logger.setLevel(level)

    log_dir = app.config.get('LOG_DIR')
    if not log_dir:
        return
    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, app.config['LOG_FILE'])
    handler = RotatingFileHandler(log_path, maxBytes=5_000_000, backupCount=5)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
    handler.setLevel(level)
    package_logger = logging.getLogger('asset_tracker')
    if not any(isinstance(h, RotatingFileHandler) for h in package_logger.handlers):
        package_logger.addHandler(handler)
        app.logger.addHandler(handler)


def create_app(config_class=Config, overrides=None):
    app = Flask(__name__)
    app.config.from_object(config_class)
    if overrides:
        app.config.update(overrides)

    setup_logging(app)

    db.init_app(app)
    bcrypt.init_app(app)
    login_manager.init_app(app)

    from asset_tracker.storage import LocalObjectStore
    app.extensions['object_store'] = LocalObjectStore(app.config['UPLOAD_FOLDER'])

    from asset_tracker.models import User

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({'error': 'Authentication required'}), 401

    from asset_tracker.errors import AssetTrackerError

    @app.errorhandler(AssetTrackerError)
    def handle_tracker_error(error):
        return jsonify(error.to_dict()), error.status_code

    @app.teardown_request
    def log_unhandled_exception(exc):
        if exc is not None:
            app.logger.exception("Unhandled exception", exc_info=exc)

    with app.app_context():
        @app.route('/')
        def index():
            return jsonify({'service': 'asset_tracker', 'status': 'ok'})

        # Import blueprints inside context
        from asset_tracker.routes import assets_bp, activity_bp
        from asset_tracker.routes.users import users_bp
        from asset_tracker.routes.dashboard import dashboard_bp

        # Register blueprints
        app.register_blueprint(assets_bp)
        app.register_blueprint(activity_bp)
        app.register_blueprint(users_bp)
        app.register_blueprint(dashboard_bp, url_prefix='/dashboard')

        # Create all database tables
        if app.config['SQLALCHEMY_DATABASE_URI'].startswith('sqlite:///'):
            db_path = app.config['SQLALCHEMY_DATABASE_URI'][len('sqlite:///'):]
            os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
        db.create_all()

    return app
