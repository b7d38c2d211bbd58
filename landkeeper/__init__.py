import os
import logging
from datetime import date
from logging.handlers import RotatingFileHandler
from flask import Flask


__version__ = '2.3.0'

LOG_FORMAT = '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
CONSOLE_FORMAT = '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'


def configure_logging(app):
    """Configure application logging"""

    log_dir = app.config['BACKUP_LOGS_DIR']
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'landkeeper.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler])

    # Configure Flask app logger
    app.logger.setLevel(log_level)
    app.logger.addHandler(console_handler)
    app.logger.addHandler(file_handler)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def configure_run_logging(kind, logs_dir, debug=False):
    """
    Configure logging for a command-line run.

    Lines go to the console and are appended to one file per day:
    <logs_dir>/<kind>s/<kind>-YYYY-MM-DD.log

    Args:
        kind: 'backup' or 'restore'
        logs_dir: Base logs directory
        debug: Log at DEBUG level

    Returns:
        Path of the daily log file
    """
    log_dir = os.path.join(logs_dir, f"{kind}s")
    os.makedirs(log_dir, exist_ok=True)
    log_file = os.path.join(log_dir, f"{kind}-{date.today().isoformat()}.log")

    log_level = logging.DEBUG if debug else logging.INFO

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))

    file_handler = logging.FileHandler(log_file, mode='a', encoding='utf-8')
    file_handler.setLevel(log_level)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    # Replace handlers from an earlier run in the same process
    package_logger = logging.getLogger(__name__)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    package_logger.setLevel(log_level)
    package_logger.addHandler(console_handler)
    package_logger.addHandler(file_handler)

    return log_file


def create_app(config_name=None):
    """Flask application factory"""

    app = Flask(__name__)

    # Load configuration
    from landkeeper.config import get_config
    config_class = get_config(config_name)
    app.config.from_object(config_class)
    app.config['LANDKEEPER_CONFIG'] = config_class

    # Configure logging
    configure_logging(app)

    # Ensure required directories exist
    os.makedirs(app.config['BACKUP_STORAGE_PATH'], exist_ok=True)

    from landkeeper.routes import backup_routes
    app.register_blueprint(backup_routes.bp)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    if not config_class.SCHEDULER_ENABLED:
        app.logger.info("Scheduler disabled (SCHEDULER_ENABLED is not set)")
        return app

    # Initialize and start scheduler (only in designated worker or development child process)
    from landkeeper.scheduler import init_scheduler, start_scheduler, stop_scheduler
    import atexit

    is_reloader_child = os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
    is_development = app.config.get('DEBUG', False)
    is_scheduler_worker = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'

    # - Development mode: Only in Flask reloader child process (not parent)
    # - Production mode: Only in designated scheduler worker (SCHEDULER_WORKER=true)
    if is_development:
        should_init_scheduler = is_reloader_child
        app.logger.info(f"Development mode: is_reloader_child={is_reloader_child}")
    else:
        should_init_scheduler = is_scheduler_worker
        app.logger.info(f"Production mode: is_scheduler_worker={is_scheduler_worker}")

    if should_init_scheduler:
        app.logger.info("Initializing scheduler in this process...")
        init_scheduler(config_class)
        start_scheduler()

        atexit.register(stop_scheduler)
        app.logger.info("Scheduler initialized and started successfully")
    else:
        app.logger.info("Scheduler initialization skipped in this process (not designated scheduler worker)")

    return app
