"""Application configuration.

Uses Pydantic BaseSettings for declarative environment variable binding.
A .env file is pre-loaded (without overriding real environment variables)
so every setting can also be provided from disk.
"""
import os
import logging
from typing import Any, Optional
from pathlib import Path
from dotenv import load_dotenv

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)

__all__ = ["settings", "Settings", "ENV_FILE_PATH", "ENV_FILE_LOADED"]

# Resolved .env path used at startup
ENV_FILE_PATH: Optional[Path] = None
ENV_FILE_LOADED: bool = False

DEFAULT_ADMIN_PASSWORD = "admin123"


def _find_env_file() -> Optional[Path]:
    """Find .env file from multiple possible locations."""
    global ENV_FILE_PATH, ENV_FILE_LOADED
    current_file = Path(__file__).resolve()
    possible_paths = [
        current_file.parent.parent.parent / '.env',
        current_file.parent.parent.parent.parent / '.env',
        Path.cwd() / '.env',
    ]

    for env_path in possible_paths:
        if env_path.exists():
            ENV_FILE_PATH = env_path
            ENV_FILE_LOADED = True
            logger.info(f"Found .env at: {env_path}")
            return env_path

    logger.debug("No .env file found - using environment variables and defaults")
    return None


_env_path = _find_env_file()
if _env_path:
    load_dotenv(dotenv_path=_env_path, override=False)


def _derive_async_database_url(url: str) -> str:
    """Derive async database URL from sync URL."""
    if "+aiosqlite" in url or "+asyncpg" in url:
        return url
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


def _parse_comma_list(value: str) -> list[str]:
    """Parse a comma-separated string into a list of stripped, non-empty strings."""
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Application settings ---
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    DATA_DIR: str = "/app/data" if os.path.exists("/app") else "data"

    # --- Storage ---
    STORE_BACKEND: str = "sql"  # sql | redis | memory
    DATABASE_URL: Optional[str] = None  # Computed in validator if not set
    REDIS_URL: str = ""
    REDIS_KEY_PREFIX: str = "relay:"

    # --- Caches ---
    CACHE_BACKEND: str = "memory"  # memory | redis
    CREDENTIAL_CACHE_TTL_SECONDS: int = 300
    SNAPSHOT_CACHE_TTL_SECONDS: int = 60
    CACHE_MAX_ENTRIES: int = 10000

    # --- Players and uploads ---
    PASSWORD_HASH_ROUNDS: int = 10
    PASSWORD_MIN_LENGTH: int = 6
    PASSWORD_MAX_LENGTH: int = 128
    MAX_BODY_SIZE: int = 10 * 1024 * 1024
    CLIENT_USER_AGENT_PREFIX: str = "Unciv"
    SAVE_MAX_RETRIES: int = 3

    # --- Admin ---
    ADMIN_USERNAME: str = "admin"
    ADMIN_PASSWORD: str = DEFAULT_ADMIN_PASSWORD
    ADMIN_MAX_ATTEMPTS: int = 5
    ADMIN_WINDOW_SECONDS: int = 300
    ADMIN_LOCKOUT_SECONDS: int = 300
    ADMIN_MAX_LOCKOUT_SECONDS: int = 3600

    # --- Retention ---
    RETENTION_STALE_DAYS: int = 90
    RETENTION_ABANDON_AFTER_HOURS: int = 24
    RETENTION_ACTIVITY_WINDOW_MINUTES: int = 10
    SWEEP_INTERVAL_SECONDS: int = 86400
    SWEEP_BATCH_SIZE: int = 500

    # --- HTTP ---
    # Forwarded headers are only honored from these peers (IPs or CIDRs)
    TRUSTED_PROXIES: Any = ""  # str from env, overwritten to list[str] by validator
    CORS_ORIGINS: Any = "*"  # str from env, overwritten to list[str] by validator

    # --- Computed fields (set by model_validator) ---
    DATABASE_URL_ASYNC: str = ""

    @model_validator(mode="after")
    def _resolve_computed_fields(self) -> "Settings":
        """Fill in derived values after field loading."""
        if not self.DATABASE_URL:
            self.DATABASE_URL = f"sqlite:///{self.DATA_DIR}/relay.db"
        self.DATABASE_URL_ASYNC = _derive_async_database_url(self.DATABASE_URL)

        if isinstance(self.TRUSTED_PROXIES, str):
            self.TRUSTED_PROXIES = _parse_comma_list(self.TRUSTED_PROXIES)
        if isinstance(self.CORS_ORIGINS, str):
            self.CORS_ORIGINS = _parse_comma_list(self.CORS_ORIGINS) or ["*"]

        self.STORE_BACKEND = self.STORE_BACKEND.lower().strip()
        self.CACHE_BACKEND = self.CACHE_BACKEND.lower().strip()
        return self

    def _validate_security_config(self) -> tuple[list[str], list[str]]:
        """Validate security-critical configuration at startup.

        Returns:
            Tuple of (warnings, errors) lists
        """
        warnings: list[str] = []
        errors: list[str] = []

        if not self.ADMIN_PASSWORD:
            warnings.append("ADMIN_PASSWORD is empty - admin API is disabled")
        elif self.ADMIN_PASSWORD == DEFAULT_ADMIN_PASSWORD:
            message = "ADMIN_PASSWORD is the default value. Set a strong password in .env"
            if self.DEBUG:
                warnings.append(message)
            else:
                errors.append(message)
        elif len(self.ADMIN_PASSWORD) < 8:
            warnings.append("ADMIN_PASSWORD is shorter than 8 characters")

        if self.CACHE_BACKEND == "redis" and not self.REDIS_URL:
            warnings.append("CACHE_BACKEND=redis but REDIS_URL not set, caches fall back to memory")

        if self.STORE_BACKEND == "memory" and not self.DEBUG:
            warnings.append("STORE_BACKEND=memory keeps saves in process memory only")

        return warnings, errors


settings = Settings()
