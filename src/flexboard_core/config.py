"""Application configuration."""

import os

from pydantic_settings import BaseSettings, SettingsConfigDict

_ENVIRONMENT = os.getenv("ENVIRONMENT", "local")


class Settings(BaseSettings):
    """Settings loaded from environment variables."""

    supabase_url: str
    supabase_key: str
    cache_ttl_seconds: int = 300
    remote_timeout_seconds: float = 10.0
    environment: str = _ENVIRONMENT

    model_config = SettingsConfigDict(
        env_file=(f".env.{_ENVIRONMENT}", ".env"),
        extra="ignore",
    )

    @property
    def strict_cache_invariants(self) -> bool:
        """Fail loudly on cache misuse everywhere except production."""
        return self.environment != "production"
