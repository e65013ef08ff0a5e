"""
Configuration validation and startup checks for production security.

This module implements fail-fast validation to ensure critical environment
variables are set before the application starts, preventing insecure defaults
from being used in production.
"""

import os
import sys
import warnings
import secrets
from typing import List, Tuple, Optional

from ruleta_be.utils.roulette_helper import load_mesa_types


class ConfigValidationError(Exception):
    """Raised when critical configuration is missing or invalid."""
    pass


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ('true', '1', 't')


class ConfigValidator:
    """Validates application configuration and enforces production security."""

    def __init__(self, is_production: bool = None):
        """
        Initialize the configuration validator.

        Args:
            is_production: If None, auto-detect based on FLASK_ENV and DEBUG settings
        """
        if is_production is None:
            flask_env = os.getenv('FLASK_ENV', '').lower()
            flask_debug = os.getenv('FLASK_DEBUG', 'False').lower()
            is_production = (
                flask_env == 'production' or
                (flask_env != 'development' and flask_debug not in ('true', '1', 't'))
            )

        self.is_production = is_production
        self.is_testing = _env_flag('TESTING', 'False')
        self.errors: List[str] = []
        self.warnings: List[str] = []

    def validate_required_env_var(self, var_name: str, description: str = None) -> Optional[str]:
        """
        Validate that a required environment variable is set.

        Returns:
            The environment variable value if set, None otherwise
        """
        value = os.getenv(var_name)
        if not value:
            desc = description or var_name
            if self.is_production:
                self.errors.append(f"CRITICAL: {desc} ({var_name}) must be set in production environment")
            else:
                self.warnings.append(f"WARNING: {desc} ({var_name}) not set - using development fallback")
        return value

    def validate_jwt_config(self) -> Tuple[str, int]:
        """Validate JWT configuration."""
        jwt_secret = self.validate_required_env_var('JWT_SECRET_KEY', 'JWT Secret Key')

        if not jwt_secret:
            if self.is_production:
                raise ConfigValidationError("JWT_SECRET_KEY is required in production")
            else:
                # Generate a secure random key for development
                jwt_secret = secrets.token_urlsafe(64)
                warnings.warn(
                    "JWT_SECRET_KEY not set. Generated secure random key for development. "
                    "Set JWT_SECRET_KEY environment variable for production!",
                    UserWarning
                )
        elif len(jwt_secret) < 32:
            error_msg = "JWT_SECRET_KEY must be at least 32 characters long"
            if self.is_production:
                self.errors.append(f"CRITICAL: {error_msg}")
            else:
                self.warnings.append(f"WARNING: {error_msg}")

        try:
            access_expires = int(os.getenv('JWT_ACCESS_TOKEN_EXPIRES', '3600'))
        except ValueError:
            raise ConfigValidationError("JWT token expiration values must be integers")

        return jwt_secret, access_expires

    def validate_database_config(self) -> str:
        """Validate database configuration."""
        database_url = os.getenv('DATABASE_URL')

        if database_url:
            if not database_url.startswith(('postgresql://', 'postgresql+psycopg2://', 'sqlite://')):
                self.errors.append("CRITICAL: DATABASE_URL must use a supported database driver")
            return database_url

        db_components = {
            'DB_HOST': os.getenv('DB_HOST'),
            'DB_PORT': os.getenv('DB_PORT'),
            'DB_NAME': os.getenv('DB_NAME'),
            'DB_USER': os.getenv('DB_USER'),
            'DB_PASSWORD': os.getenv('DB_PASSWORD')
        }

        missing_components = [k for k, v in db_components.items() if not v]

        if missing_components and self.is_production:
            self.errors.append(
                f"CRITICAL: Database configuration incomplete. Missing: {', '.join(missing_components)}. "
                "Set DATABASE_URL or all individual DB_* variables."
            )

        # Use fallbacks for development only
        if not self.is_production and not self.is_testing:
            db_host = db_components['DB_HOST'] or 'localhost'
            db_port = db_components['DB_PORT'] or '5432'
            db_name = db_components['DB_NAME'] or 'ruleta'
            db_user = db_components['DB_USER'] or 'ruleta_user'
            db_password = db_components['DB_PASSWORD'] or 'password123'

            if missing_components:
                self.warnings.append(f"Using development database defaults for: {', '.join(missing_components)}")

            return f'postgresql://{db_user}:{db_password}@{db_host}:{db_port}/{db_name}'

        if all(db_components.values()):
            return (
                f"postgresql://{db_components['DB_USER']}:{db_components['DB_PASSWORD']}"
                f"@{db_components['DB_HOST']}:{db_components['DB_PORT']}/{db_components['DB_NAME']}"
            )
        return database_url

    def validate_service_config(self) -> str:
        """Validate the service token that authenticates the physical wheel."""
        service_token = os.getenv('SERVICE_API_TOKEN')

        if not service_token:
            if self.is_production:
                self.errors.append(
                    "CRITICAL: SERVICE_API_TOKEN must be set in production for the wheel result service"
                )
                service_token = None
            else:
                service_token = 'default_service_token_please_change'
                self.warnings.append(
                    "SERVICE_API_TOKEN not set - using development default. "
                    "Set a strong, unique token for production!"
                )
        elif service_token == 'default_service_token_please_change':
            if self.is_production:
                self.errors.append(
                    "CRITICAL: Default SERVICE_API_TOKEN detected in production. "
                    "Set a strong, unique SERVICE_API_TOKEN environment variable."
                )
            else:
                self.warnings.append("Using default SERVICE_API_TOKEN in development")

        return service_token

    def validate_rate_limiting_config(self) -> str:
        """Validate rate limiting configuration."""
        rate_limit_uri = os.getenv('RATELIMIT_STORAGE_URI', 'memory://')

        if rate_limit_uri == 'memory://' and self.is_production:
            self.errors.append(
                "CRITICAL: Rate limiting uses memory:// storage in production. "
                "This is not suitable for multi-process deployments. "
                "Set RATELIMIT_STORAGE_URI to a Redis URL (e.g., redis://localhost:6379/0)"
            )
        elif rate_limit_uri == 'memory://' and not self.is_production:
            self.warnings.append(
                "Rate limiting uses memory:// storage in development. "
                "Consider using Redis for production."
            )

        return rate_limit_uri

    def validate_cors_config(self) -> List[str]:
        """Validate CORS configuration."""
        cors_origins = os.getenv('CORS_ORIGINS', '')

        if not cors_origins and self.is_production:
            self.errors.append(
                "CRITICAL: CORS_ORIGINS must be set in production to specify allowed frontend domains"
            )
            return []

        if cors_origins:
            origins = [origin.strip() for origin in cors_origins.split(',') if origin.strip()]
            for origin in origins:
                if not origin.startswith(('http://', 'https://')):
                    self.warnings.append(f"CORS origin '{origin}' should include protocol (http:// or https://)")
            return origins

        return []

    def validate_roulette_config(self) -> dict:
        """Validate the mesa type table and engine timings."""
        config = {}
        raw_types = os.getenv('ROULETTE_MESA_TYPES') or None
        try:
            load_mesa_types(raw_types)
        except ValueError as e:
            self.errors.append(f"CRITICAL: ROULETTE_MESA_TYPES is invalid: {e}")
        config['ROULETTE_MESA_TYPES'] = raw_types

        numeric_settings = {
            'ROULETTE_TICK_SECONDS': ('1.0', float),
            'COUNTDOWN_INTERVAL_SECONDS': ('5', int),
            'EXTERNAL_RESULT_TIMEOUT_SECONDS': ('60', int),
            'CREDIT_RETRY_MAX_ATTEMPTS': ('5', int),
            'CREDIT_RETRY_BASE_DELAY_SECONDS': ('2.0', float),
            'SSE_HEARTBEAT_SECONDS': ('15', int),
            'SUBSCRIBER_QUEUE_SIZE': ('256', int),
        }
        for name, (default, cast) in numeric_settings.items():
            try:
                value = cast(os.getenv(name, default))
            except ValueError:
                self.errors.append(f"CRITICAL: {name} must be a number")
                continue
            if value <= 0:
                self.errors.append(f"CRITICAL: {name} must be positive")
            config[name] = value

        config['HISTORY_ASYNC'] = _env_flag('HISTORY_ASYNC', 'True')
        config['ROULETTE_ENGINE_AUTOSTART'] = _env_flag('ROULETTE_ENGINE_AUTOSTART', 'True')
        return config

    def validate_all(self) -> dict:
        """
        Validate all configuration settings.

        Returns:
            Dictionary containing validated configuration values

        Raises:
            ConfigValidationError: If critical configuration is missing in production
        """
        config = {}

        try:
            config['JWT_SECRET_KEY'], config['JWT_ACCESS_TOKEN_EXPIRES'] = self.validate_jwt_config()
            config['SQLALCHEMY_DATABASE_URI'] = self.validate_database_config()
            config['SERVICE_API_TOKEN'] = self.validate_service_config()
            config['RATELIMIT_STORAGE_URI'] = self.validate_rate_limiting_config()
            config['CORS_ORIGINS_LIST'] = self.validate_cors_config()
            config.update(self.validate_roulette_config())

            config['DEBUG'] = _env_flag('FLASK_DEBUG', 'False')
            config['JWT_COOKIE_SECURE'] = _env_flag('JWT_COOKIE_SECURE', 'True')

            # Production-specific validations
            if self.is_production:
                if config['DEBUG']:
                    self.errors.append("CRITICAL: DEBUG mode must be disabled in production (set FLASK_DEBUG=False)")

                if not config['JWT_COOKIE_SECURE']:
                    self.errors.append("CRITICAL: JWT cookies must be secure in production (set JWT_COOKIE_SECURE=True)")

            if self.errors:
                error_msg = "Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in self.errors)
                if self.warnings:
                    error_msg += "\n\nWarnings:\n" + "\n".join(f"  - {warning}" for warning in self.warnings)
                raise ConfigValidationError(error_msg)

            if self.warnings:
                for warning in self.warnings:
                    warnings.warn(warning, UserWarning)

            return config

        except Exception as e:
            if isinstance(e, ConfigValidationError):
                raise
            else:
                raise ConfigValidationError(f"Configuration validation error: {str(e)}") from e


def validate_production_config() -> dict:
    """
    Validate production configuration with fail-fast behavior.

    Raises:
        SystemExit: If validation fails, to prevent an insecure startup
    """
    try:
        validator = ConfigValidator()
        return validator.validate_all()
    except ConfigValidationError as e:
        print("\nCONFIGURATION VALIDATION FAILED\n", file=sys.stderr)
        print(str(e), file=sys.stderr)
        print("\nHow to fix:", file=sys.stderr)
        print("1. Set required environment variables", file=sys.stderr)
        print("2. Check ROULETTE_MESA_TYPES is a JSON list of mesa types", file=sys.stderr)
        print("3. Review production deployment checklist", file=sys.stderr)
        print("\nApplication startup ABORTED\n", file=sys.stderr)

        sys.exit(1)
