"""Application configuration management using Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be overridden via environment variables.
    Supabase credentials are only required when the Supabase store backend is used.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="classroom-chat", description="Application name")
    app_env: str = Field(default="development", description="Environment (development/staging/production)")
    debug: bool = Field(default=False, description="Enable debug mode")

    # Server
    host: str = Field(default="0.0.0.0", description="Server host")
    port: int = Field(default=8080, description="Server port")

    # CORS
    cors_origins: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        description="Comma-separated list of allowed CORS origins",
    )

    # Supabase
    supabase_url: str = Field(default="", description="Supabase project URL")
    supabase_secret_key: str = Field(default="", description="Supabase secret key for backend operations")
    supabase_signing_key_jwk: str = Field(
        default="", description="Supabase signing key JWK (JSON string) for JWT token verification"
    )

    # Record store
    store_backend: Literal["supabase", "memory"] = Field(
        default="supabase", description="Record store backend (supabase or in-process memory)"
    )
    messages_table: str = Field(default="messages", description="Table holding direct messages")
    users_table: str = Field(default="users", description="Table holding directory entries")
    messages_order_tiebreak: str = Field(
        default="id",
        description="Column ordering messages with equal created_at; prefer a serial or identity column",
    )

    # Chat
    chat_history_limit: int | None = Field(
        default=None, ge=1, description="Most recent messages returned by history (unbounded if unset)"
    )
    chat_message_max_length: int = Field(default=4000, description="Maximum message content length")

    # Realtime resubscription
    realtime_max_retries: int = Field(default=5, ge=1, description="Resubscribe attempts before giving up")
    realtime_backoff_base_seconds: float = Field(default=0.5, gt=0, description="Initial resubscribe delay")
    realtime_backoff_max_seconds: float = Field(default=30.0, gt=0, description="Resubscribe delay ceiling")

    @model_validator(mode="after")
    def require_supabase_credentials(self) -> "Settings":
        """Require Supabase credentials when the Supabase backend is selected.

        The memory backend runs fully in-process, so local development and
        tests can start without a Supabase project.
        """
        if self.store_backend == "supabase" and not (self.supabase_url and self.supabase_secret_key):
            raise ValueError("SUPABASE_URL and SUPABASE_SECRET_KEY are required when STORE_BACKEND=supabase")
        return self

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins string into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.app_env == "production"

    @property
    def uses_memory_store(self) -> bool:
        """Check if the in-process record store is configured."""
        return self.store_backend == "memory"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings: Application settings instance.

    Note:
        Settings are cached using lru_cache for performance.
        Call get_settings.cache_clear() to reload settings.
    """
    return Settings()
