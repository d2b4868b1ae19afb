import os
import socket
import binascii
import tempfile
from typing import Optional


ENCRYPTION_KEY_LENGTH = 32


class ConfigError(Exception):
    """Raised when a configuration value is malformed."""
    pass


def _env_int(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value == '':
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {value!r}")


def load_encryption_key(value: Optional[str]) -> Optional[bytes]:
    """
    Parse the archive encryption key from its configured form.

    The key is configured as 64 hex characters (32 raw bytes). An unset or
    empty value means archives are uploaded in plaintext.

    Args:
        value: Raw configuration value

    Returns:
        32-byte key, or None when encryption is disabled

    Raises:
        ConfigError: If the value is set but is not a valid 32-byte hex key
    """
    if value is None:
        return None

    value = value.strip()
    if not value:
        return None

    try:
        key = binascii.unhexlify(value)
    except (binascii.Error, ValueError):
        # Never echo the value itself
        raise ConfigError("BACKUP_ENCRYPTION_KEY is not valid hex")

    if len(key) != ENCRYPTION_KEY_LENGTH:
        raise ConfigError(
            f"BACKUP_ENCRYPTION_KEY must decode to {ENCRYPTION_KEY_LENGTH} bytes, got {len(key)}"
        )

    return key


class Config:
    """Base configuration"""

    # Node identity
    NODE_ID = os.environ.get('NODE_ID') or socket.gethostname()

    # Database (backup status table)
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/backvault.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Scratch directories, exclusive to their own job
    BACKUP_DIR = os.environ.get('BACKUP_DIR') or '/data/backups'
    VERIFY_TEMP_DIR = os.environ.get('VERIFY_TEMP_DIR') or '/data/verify'
    LOG_DIR = os.environ.get('LOG_DIR') or '/data/logs'

    # Archive encryption (hex-encoded 32-byte key, unset = plaintext uploads)
    BACKUP_ENCRYPTION_KEY = os.environ.get('BACKUP_ENCRYPTION_KEY')

    # Object store (S3-compatible). Without a bucket, a local directory store is used.
    SPACES_ENDPOINT = os.environ.get('SPACES_ENDPOINT')
    SPACES_REGION = os.environ.get('SPACES_REGION') or 'nyc3'
    SPACES_BUCKET = os.environ.get('SPACES_BUCKET')
    SPACES_ACCESS_KEY = os.environ.get('SPACES_ACCESS_KEY')
    SPACES_SECRET_KEY = os.environ.get('SPACES_SECRET_KEY')
    LOCAL_SPACES_DIR = os.environ.get('LOCAL_SPACES_DIR') or '/data/spaces'

    # Container export
    TENANT_PREFIX = os.environ.get('TENANT_PREFIX') or 'tenant_'

    # Retention
    RETENTION_DAILY_COUNT = _env_int('RETENTION_DAILY_COUNT', 7)
    RETENTION_WEEKLY_COUNT = _env_int('RETENTION_WEEKLY_COUNT', 4)

    # Verification
    VERIFY_SAMPLE_LIMIT = _env_int('VERIFY_SAMPLE_LIMIT', 5)

    # Scheduler
    SCHEDULER_TIMEZONE = 'UTC'
    NIGHTLY_BACKUP_CRON = os.environ.get('NIGHTLY_BACKUP_CRON') or '0 3 * * *'
    RETENTION_CRON = os.environ.get('RETENTION_CRON') or '0 5 * * *'
    VERIFY_CRON = os.environ.get('VERIFY_CRON') or '0 6 * * 0'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "backvault.db")}'
    BACKUP_DIR = os.path.join(DATA_DIR, 'backups')
    VERIFY_TEMP_DIR = os.path.join(DATA_DIR, 'verify')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    LOCAL_SPACES_DIR = os.path.join(DATA_DIR, 'spaces')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    NODE_ID = 'node-test'

    TEST_DIR = os.path.join(tempfile.gettempdir(), 'backvault-test')
    BACKUP_DIR = os.path.join(TEST_DIR, 'backups')
    VERIFY_TEMP_DIR = os.path.join(TEST_DIR, 'verify')
    LOG_DIR = os.path.join(TEST_DIR, 'logs')
    LOCAL_SPACES_DIR = os.path.join(TEST_DIR, 'spaces')
    BACKUP_ENCRYPTION_KEY = None
    SPACES_BUCKET = None


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}
