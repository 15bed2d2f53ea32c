"""
Configuration for vendorsync.

Uses Pydantic for validation and environment loading.
"""

import os
from functools import lru_cache

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RetryConfig(BaseModel):
    """Backoff for retryable fetch failures."""

    max_attempts: int = Field(default=3, description="Max fetch attempts per run")
    base_delay: float = Field(
        default=1.0, description="Base delay for exponential backoff (seconds)"
    )
    max_delay: float = Field(default=60.0, description="Backoff ceiling (seconds)")


class SyncConfig(BaseSettings):
    """Master configuration for vendorsync.

    Loads from environment variables with VENDORSYNC_ prefix.
    """

    model_config = SettingsConfigDict(
        env_prefix="VENDORSYNC_",
        env_file=".env",
        extra="ignore",
    )

    service_name: str = Field(default="vendorsync")
    log_level: str = Field(default="INFO")

    # Storage
    database_url: str = Field(
        default="", description="PostgreSQL URL; empty uses the in-memory store"
    )
    vendors_dir: str = Field(default="vendors", description="Vendor schema TOML dir")

    # Credential vault: comma-separated Fernet keys. First key encrypts,
    # all keys decrypt.
    encryption_keys: str = Field(default="")

    # Run control
    run_timeout_sec: float = Field(default=1800.0, description="Per-run timeout")
    max_run_duration_sec: float = Field(
        default=7200.0, description="In-progress runs older than this are stuck"
    )
    download_timeout_sec: float = Field(default=120.0)
    stuck_check_interval_sec: int = Field(default=900)

    retry: RetryConfig = Field(default_factory=RetryConfig)

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        return value.upper()

    @property
    def encryption_key_list(self) -> list[str]:
        return [k.strip() for k in self.encryption_keys.split(",") if k.strip()]

    @classmethod
    def from_env(cls) -> "SyncConfig":
        """Load configuration from environment variables."""
        return cls(
            service_name=os.getenv("VENDORSYNC_SERVICE_NAME", "vendorsync"),
            log_level=os.getenv("VENDORSYNC_LOG_LEVEL", "INFO"),
            database_url=os.getenv("VENDORSYNC_DATABASE_URL", "")
            or os.getenv("DATABASE_URL", ""),
            vendors_dir=os.getenv("VENDORSYNC_VENDORS_DIR", "vendors"),
            encryption_keys=os.getenv("VENDORSYNC_ENCRYPTION_KEYS", ""),
            run_timeout_sec=float(os.getenv("VENDORSYNC_RUN_TIMEOUT_SEC", "1800")),
            max_run_duration_sec=float(
                os.getenv("VENDORSYNC_MAX_RUN_DURATION_SEC", "7200")
            ),
            download_timeout_sec=float(
                os.getenv("VENDORSYNC_DOWNLOAD_TIMEOUT_SEC", "120")
            ),
            stuck_check_interval_sec=int(
                os.getenv("VENDORSYNC_STUCK_CHECK_INTERVAL_SEC", "900")
            ),
            retry=RetryConfig(
                max_attempts=int(os.getenv("VENDORSYNC_RETRY_MAX", "3")),
                base_delay=float(os.getenv("VENDORSYNC_RETRY_BASE_DELAY", "1.0")),
                max_delay=float(os.getenv("VENDORSYNC_RETRY_MAX_DELAY", "60.0")),
            ),
        )


@lru_cache(maxsize=1)
def get_config() -> SyncConfig:
    """Process-wide configuration, loaded once."""
    return SyncConfig.from_env()


def reset_config() -> None:
    """Drop the cached configuration (tests, reloads)."""
    get_config.cache_clear()
