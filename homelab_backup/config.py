import os


class Config:
    """Base configuration"""

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY')

    # Data directory (database, logs, scheduler job store)
    DATA_DIR = os.environ.get('DATA_DIR') or '/data'

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or f'sqlite:///{DATA_DIR}/homelab_backup.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Credential record (dotenv file with remote, key and retention settings)
    BACKUP_ENV_FILE = os.environ.get('BACKUP_ENV_FILE') or '/data/secrets/backup.env'

    # Temp
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/data/temp'

    # Scheduler
    SCHEDULER_ENABLED = os.environ.get('SCHEDULER_ENABLED', 'false').lower() == 'true'
    SCHEDULER_TIMEZONE = os.environ.get('SCHEDULER_TIMEZONE') or 'UTC'
    BACKUP_SCHEDULE_CRON = os.environ.get('BACKUP_SCHEDULE_CRON') or '0 2 * * *'

    # Status API (werkzeug password hash of the bearer token, optional)
    STATUS_API_TOKEN_HASH = os.environ.get('STATUS_API_TOKEN_HASH')


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = False

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "homelab_backup.db")}'
    BACKUP_ENV_FILE = os.environ.get('BACKUP_ENV_FILE') or os.path.join(BASE_DIR, 'secrets', 'backup.env')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(DevelopmentConfig):
    """Test configuration (in-memory database, no scheduler)"""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SCHEDULER_ENABLED = False
    STATUS_API_TOKEN_HASH = None


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
