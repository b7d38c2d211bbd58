import os


def _env_bool(name, default='false'):
    return os.environ.get(name, default).lower() in ('1', 'true', 'yes')


def _env_int(name, default=None):
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    return int(value)


class ConfigurationError(Exception):
    """Raised when a required setting is missing or invalid."""
    pass


class Config:
    """Base configuration"""

    ENVIRONMENT = os.environ.get('LANDKEEPER_ENV', 'production')
    DEBUG = False

    # MongoDB
    MONGODB_URI = os.environ.get('MONGODB_URI') or os.environ.get('MONGODB')
    MONGODB_NAME = os.environ.get('MONGODB_NAME')
    DEFAULT_DATABASE_NAME = 'landing-template'
    MONGO_SERVER_SELECTION_TIMEOUT_MS = _env_int('MONGO_SERVER_SELECTION_TIMEOUT_MS', 5000)

    # External tools
    MONGODUMP_BIN = os.environ.get('MONGODUMP_BIN') or 'mongodump'
    MONGORESTORE_BIN = os.environ.get('MONGORESTORE_BIN') or 'mongorestore'
    MONGO_TOOLS_TIMEOUT = _env_int('MONGO_TOOLS_TIMEOUT')
    MONGO_TOOLS_MAX_OUTPUT_BYTES = _env_int('MONGO_TOOLS_MAX_OUTPUT_BYTES', 50 * 1024 * 1024)

    # Local storage
    BACKUP_STORAGE_PATH = os.environ.get('BACKUP_STORAGE_PATH') or './backups'
    BACKUP_LOGS_DIR = os.environ.get('BACKUP_LOGS_DIR') or './logs'
    BACKUP_RETENTION_DAYS = _env_int('BACKUP_RETENTION_DAYS', 30)

    # Remote storage (S3)
    BACKUP_UPLOAD_ENABLED = _env_bool('BACKUP_UPLOAD_ENABLED')
    AWS_ACCESS_KEY_ID = os.environ.get('AWS_ACCESS_KEY_ID')
    AWS_SECRET_ACCESS_KEY = os.environ.get('AWS_SECRET_ACCESS_KEY')
    AWS_REGION = os.environ.get('AWS_REGION') or 'us-east-1'
    BACKUP_S3_BUCKET = os.environ.get('BACKUP_S3_BUCKET')
    BACKUP_S3_PREFIX = os.environ.get('BACKUP_S3_PREFIX') or 'backups'

    # Uploaded media inventory
    MEDIA_S3_BUCKET = os.environ.get('MEDIA_S3_BUCKET') or BACKUP_S3_BUCKET
    MEDIA_S3_PREFIX = os.environ.get('MEDIA_S3_PREFIX') or 'uploads'
    MEDIA_INVENTORY_LIMIT = _env_int('MEDIA_INVENTORY_LIMIT', 500)

    # Cache (reported only)
    REDIS_URL = os.environ.get('REDIS_URL')

    # Scheduler
    SCHEDULER_ENABLED = _env_bool('SCHEDULER_ENABLED')
    BACKUP_SCHEDULE_CRON = os.environ.get('BACKUP_SCHEDULE_CRON') or '0 3 * * *'
    SCHEDULER_TIMEZONE = os.environ.get('SCHEDULER_TIMEZONE') or 'UTC'

    # Health check thresholds
    HEALTH_MAX_AGE_HOURS = _env_int('HEALTH_MAX_AGE_HOURS', 48)
    HEALTH_MIN_SIZE_BYTES = _env_int('HEALTH_MIN_SIZE_BYTES', 1024)


class DevelopmentConfig(Config):
    """Development configuration"""
    ENVIRONMENT = 'development'
    DEBUG = True

    # Keep artifacts next to the checkout in development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    BACKUP_STORAGE_PATH = os.environ.get('BACKUP_STORAGE_PATH') or os.path.join(BASE_DIR, 'backups')
    BACKUP_LOGS_DIR = os.environ.get('BACKUP_LOGS_DIR') or os.path.join(BASE_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    ENVIRONMENT = 'production'
    DEBUG = False


class TestingConfig(Config):
    """Testing configuration"""
    ENVIRONMENT = 'test'
    TESTING = True
    MONGODB_URI = 'mongodb://localhost:27017/landing-template'
    MONGODB_NAME = None
    BACKUP_UPLOAD_ENABLED = False
    SCHEDULER_ENABLED = False


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'test': TestingConfig,
    'default': ProductionConfig
}


def get_config(config_name=None):
    """
    Resolve a configuration class by name.

    Args:
        config_name: 'development', 'production' or 'test' (default: LANDKEEPER_ENV)

    Returns:
        Configuration class
    """
    if config_name is None:
        config_name = os.environ.get('LANDKEEPER_ENV', 'production')
    return config.get(config_name, config['default'])
