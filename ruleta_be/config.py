"""
Configuration module.

Class attributes hold environment-driven defaults. Production values are checked
by config_validator.validate_production_config(), which create_app() runs before
any extension is initialised (VALIDATE_ON_STARTUP).
"""
import os
from datetime import timedelta

def _env_flag(name, default):
    return os.getenv(name, default).lower() in ('true', '1', 't')

class Config:
    """Production-ready configuration, validated at app creation."""

    VALIDATE_ON_STARTUP = True

    # Database Configuration
    SQLALCHEMY_DATABASE_URI = os.getenv('DATABASE_URL', 'sqlite:///ruleta.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # JWT Configuration
    JWT_SECRET_KEY = os.getenv('JWT_SECRET_KEY')
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(seconds=int(os.getenv('JWT_ACCESS_TOKEN_EXPIRES', '3600')))

    # JWT Cookie Configuration for enhanced security
    JWT_TOKEN_LOCATION = ['cookies', 'headers']
    JWT_COOKIE_SECURE = _env_flag('JWT_COOKIE_SECURE', 'True')
    JWT_COOKIE_SAMESITE = 'Strict'
    JWT_COOKIE_CSRF_PROTECT = True
    JWT_ACCESS_COOKIE_NAME = 'access_token_cookie'
    JWT_ACCESS_CSRF_HEADER_NAME = 'X-CSRF-Token'

    # Session Configuration
    SESSION_COOKIE_SECURE = JWT_COOKIE_SECURE
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Strict'

    # Rate Limiter Storage URI
    RATELIMIT_STORAGE_URI = os.getenv('RATELIMIT_STORAGE_URI', 'memory://')

    DEBUG = _env_flag('FLASK_DEBUG', 'False')

    # Service API Token - authenticates the physical wheel result service
    SERVICE_API_TOKEN = os.getenv('SERVICE_API_TOKEN')

    # CORS Configuration
    CORS_ORIGINS_LIST = [o.strip() for o in os.getenv('CORS_ORIGINS', '').split(',') if o.strip()]

    # Roulette engine
    ROULETTE_MESA_TYPES = os.getenv('ROULETTE_MESA_TYPES') or None  # JSON list; None uses the built-in "150" and "300" tables
    ROULETTE_TICK_SECONDS = float(os.getenv('ROULETTE_TICK_SECONDS', '1.0'))
    COUNTDOWN_INTERVAL_SECONDS = int(os.getenv('COUNTDOWN_INTERVAL_SECONDS', '5'))
    EXTERNAL_RESULT_TIMEOUT_SECONDS = int(os.getenv('EXTERNAL_RESULT_TIMEOUT_SECONDS', '60'))
    CREDIT_RETRY_MAX_ATTEMPTS = int(os.getenv('CREDIT_RETRY_MAX_ATTEMPTS', '5'))
    CREDIT_RETRY_BASE_DELAY_SECONDS = float(os.getenv('CREDIT_RETRY_BASE_DELAY_SECONDS', '2.0'))
    SSE_HEARTBEAT_SECONDS = int(os.getenv('SSE_HEARTBEAT_SECONDS', '15'))
    SUBSCRIBER_QUEUE_SIZE = int(os.getenv('SUBSCRIBER_QUEUE_SIZE', '256'))
    HISTORY_ASYNC = _env_flag('HISTORY_ASYNC', 'True')
    ROULETTE_ENGINE_AUTOSTART = _env_flag('ROULETTE_ENGINE_AUTOSTART', 'True')


class TestingConfig(Config):
    TESTING = True
    VALIDATE_ON_STARTUP = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///./test_ruleta_be_isolated.db' # File-based for test isolation using SQLite
    # Define a key to store the database file path for easy cleanup
    DATABASE_FILE_PATH = SQLALCHEMY_DATABASE_URI.replace('sqlite:///', '')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    JWT_SECRET_KEY = 'test-jwt-secret-key-with-at-least-32-chars'
    JWT_TOKEN_LOCATION = ['headers', 'cookies']
    JWT_COOKIE_SECURE = False
    JWT_COOKIE_CSRF_PROTECT = False # Disable JWT CSRF for tests
    SERVICE_API_TOKEN = 'test-service-token'
    # Disable rate limiting for tests
    RATELIMIT_ENABLED = False
    RATELIMIT_DEFAULT_LIMITS_ENABLED = False
    # Engine runs without background threads; tests drive it directly
    ROULETTE_MESA_TYPES = None
    HISTORY_ASYNC = False
    ROULETTE_ENGINE_AUTOSTART = False
    SSE_HEARTBEAT_SECONDS = 1
    SQLALCHEMY_ENGINE_OPTIONS = {
        'connect_args': {'check_same_thread': False}
    }
