import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy


# Initialize extensions
db = SQLAlchemy()


def configure_logging(app):
    """Configure application logging"""

    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'backvault.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler])

    # Configure Flask app logger
    app.logger.setLevel(log_level)
    app.logger.addHandler(console_handler)
    app.logger.addHandler(file_handler)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(config_name=None, start_scheduler_process=None):
    """
    Flask application factory.

    Args:
        config_name: Key into backvault.config.config (default: FLASK_ENV or 'production')
        start_scheduler_process: Force scheduler startup on/off. When None, the
            SCHEDULER_WORKER / reloader rules decide.
    """
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from backvault.config import config
    app.config.from_object(config[config_name])

    # Configure logging
    configure_logging(app)

    # Ensure required directories exist
    os.makedirs(app.config['BACKUP_DIR'], exist_ok=True)
    os.makedirs(app.config['VERIFY_TEMP_DIR'], exist_ok=True)

    # Initialize extensions
    db.init_app(app)

    from backvault.routes import status_routes
    app.register_blueprint(status_routes.bp)
    app.register_blueprint(status_routes.health_bp)

    # Create the status table if needed
    from backvault import models
    with app.app_context():
        db.create_all()

    from backvault.scheduler import init_scheduler, start_scheduler, stop_scheduler
    import atexit

    if start_scheduler_process is None:
        # Development: only in the Flask reloader child process.
        # Production: only in the designated scheduler worker (SCHEDULER_WORKER=true).
        if app.config.get('DEBUG', False):
            start_scheduler_process = os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
        else:
            start_scheduler_process = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'

    if start_scheduler_process:
        app.logger.info("Initializing scheduler in this process...")
        init_scheduler(app)
        start_scheduler()
        atexit.register(stop_scheduler)
        app.logger.info("Scheduler initialized and started successfully")
    else:
        app.logger.info("Scheduler initialization skipped in this process (not designated scheduler worker)")

    return app
