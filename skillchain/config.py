"""Client Configuration: environment-driven settings via pydantic-settings.

Invariants:
    - No secrets in settings; the bearer token comes from the injected AuthSession
    - get_settings() is cached (lru_cache): single instance per process
    - Every network wait has an explicit upper bound

Design Decisions:
    - pydantic-settings over raw os.environ: validation, type coercion, .env file support
    - Defaults work against a local backend on port 5001
"""

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Client settings from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False)

    # Backend
    api_base_url: str = "http://localhost:5001/api"
    request_timeout_seconds: float = 10.0
    backend_max_retries: int = 2
    backend_base_delay_ms: int = 500
    backend_max_delay_ms: int = 5_000
    include_drafts: bool = False

    # Persisted cache
    cache_database_url: str = "sqlite+aiosqlite:///skillchain_cache.db"
    cache_namespace: str = "skillchain"

    @field_validator("cache_database_url", mode="before")
    @classmethod
    def convert_sqlite_url(cls, v: str) -> str:
        """Plain sqlite:// URLs need the aiosqlite driver for the async engine."""
        if isinstance(v, str) and v.startswith("sqlite://"):
            return v.replace("sqlite://", "sqlite+aiosqlite://", 1)
        return v

    # Payments
    payment_recipient: str = "0x742d35Cc6B8B97b3f4b2B8dE8cE00bF6A7E5A5c5"
    payment_timeout_seconds: float = 300.0
    receipt_poll_interval_ms: int = 1_500

    # Enrollment retry after a confirmed payment
    enrollment_retry_budget: int = 3
    enrollment_retry_base_delay_ms: int = 1_000
    enrollment_retry_max_delay_ms: int = 30_000

    # Sync
    sync_interval_seconds: float = 60.0

    # Observability
    log_level: str = "INFO"
    log_format: str = "json"


@lru_cache
def get_settings() -> Settings:
    return Settings()
