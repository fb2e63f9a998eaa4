import logging
import warnings
from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


logger = logging.getLogger(__name__)


# Default insecure secret key - MUST be changed in production
_DEFAULT_INSECURE_SECRET_KEY = "your-secret-key-here-change-in-production"


class AppMode(str, Enum):
    DEV = "dev"
    PROD = "prod"


class Settings(BaseSettings):
    # Application mode - defaults to DEV for safety
    APP_MODE: AppMode = AppMode.DEV

    # Debug mode - MUST be False in production
    DEBUG: bool = False

    # Database (SQLite default for dev, use PostgreSQL in production)
    DATABASE_URL: str = "sqlite+aiosqlite:///./auth_sessions.db"

    # JWT Configuration
    # SECURITY: SECRET_KEY has no secure default - MUST be set via environment variable
    # Generate with: python -c "import secrets; print(secrets.token_urlsafe(64))"
    SECRET_KEY: str = _DEFAULT_INSECURE_SECRET_KEY
    ALGORITHM: str = "HS256"
    # PEM keys, only read for RS*/ES* algorithms
    JWT_PRIVATE_KEY: Optional[str] = None
    JWT_PUBLIC_KEY: Optional[str] = None
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 15  # 15 minutes for access tokens
    REFRESH_TOKEN_EXPIRE_DAYS: int = 7  # 7 days for refresh tokens
    REFRESH_TOKEN_BYTES: int = 64  # 512 bits of entropy
    JWT_ISSUER: str = "auth-sessions"
    JWT_AUDIENCE: str = "auth-sessions-users"

    # Upper bound for a single authentication flow, in seconds
    FLOW_TIMEOUT_SECONDS: float = 30.0

    # OAuth providers (a provider is disabled until both values are set)
    OAUTH_HTTP_TIMEOUT_SECONDS: float = 10.0
    OAUTH_GOOGLE_CLIENT_ID: str = ""
    OAUTH_GOOGLE_CLIENT_SECRET: str = ""
    OAUTH_GITHUB_CLIENT_ID: str = ""
    OAUTH_GITHUB_CLIENT_SECRET: str = ""
    OAUTH_MICROSOFT_CLIENT_ID: str = ""
    OAUTH_MICROSOFT_CLIENT_SECRET: str = ""

    # Maintenance sweep of expired refresh tokens
    TOKEN_CLEANUP_INTERVAL_SECONDS: int = 3600

    LOG_LEVEL: str = "INFO"

    @property
    def is_asymmetric_algorithm(self) -> bool:
        return self.ALGORITHM.upper().startswith(("RS", "ES", "PS"))

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env variables


def _validate_settings(settings: Settings) -> Settings:
    """
    Validate settings and warn/error on security issues.

    SECURITY: This function ensures critical security settings are properly
    configured in production environments.
    """
    if settings.APP_MODE == AppMode.PROD:
        # CRITICAL: Fail fast if using default secret key in production
        if (
            not settings.is_asymmetric_algorithm
            and settings.SECRET_KEY == _DEFAULT_INSECURE_SECRET_KEY
        ):
            error_msg = (
                "CRITICAL SECURITY ERROR: Default SECRET_KEY is being used in production! "
                "Set a strong, unique SECRET_KEY environment variable. "
                "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
            )
            logger.critical(error_msg)
            raise ValueError(error_msg)

        if settings.DEBUG:
            error_msg = (
                "CRITICAL SECURITY ERROR: DEBUG=True in production! "
                "Set DEBUG=False or remove the DEBUG environment variable."
            )
            logger.critical(error_msg)
            raise ValueError(error_msg)

        if not settings.is_asymmetric_algorithm and len(settings.SECRET_KEY) < 32:
            warnings.warn(
                "SECRET_KEY appears to be weak (less than 32 characters). "
                "Consider using a longer, more random key for production.",
                SecurityWarning,
                stacklevel=2,
            )

    if settings.is_asymmetric_algorithm and not (
        settings.JWT_PRIVATE_KEY and settings.JWT_PUBLIC_KEY
    ):
        error_msg = (
            f"ALGORITHM={settings.ALGORITHM} requires both JWT_PRIVATE_KEY "
            "and JWT_PUBLIC_KEY to be set."
        )
        logger.critical(error_msg)
        raise ValueError(error_msg)

    if settings.REFRESH_TOKEN_BYTES < 32:
        raise ValueError("REFRESH_TOKEN_BYTES must be at least 32 (256 bits)")

    return settings


class SecurityWarning(UserWarning):
    """Warning for security-related configuration issues."""
    pass


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Settings are validated on first access; critical misconfigurations in
    production raise immediately.
    """
    settings = Settings()
    return _validate_settings(settings)
