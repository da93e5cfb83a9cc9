"""
Configuration Management for Expense Sync

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
This makes it easy to see what external dependencies exist and
ensures all required configuration is validated at startup.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StorageSettings(BaseSettings):
    """Record store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SYNC_STORAGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    backend: Literal["memory", "sql"] = Field(
        default="memory",
        description="Which record store implementation to use"
    )
    database_url: str = Field(
        default="sqlite:///./expense_sync.db",
        description="SQLAlchemy database URL (sql backend only)"
    )
    echo: bool = Field(
        default=False,
        description="Log every SQL statement"
    )


class SyncSettings(BaseSettings):
    """Sync engine behaviour."""

    model_config = SettingsConfigDict(
        env_prefix="SYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    max_batch_size: int = Field(
        default=500,
        ge=1,
        le=10000,
        description="Maximum number of changes accepted in one push"
    )
    device_cursor_policy: Literal["high_water_mark", "wall_clock"] = Field(
        default="high_water_mark",
        description="How a device's lastSyncAt advances after a push"
    )
    tombstone_retention_days: int = Field(
        default=30,
        ge=0,
        description="Minimum age of a tombstone before it may be purged"
    )
    live_updates_enabled: bool = Field(
        default=True,
        description="Broadcast sync-update events over WebSocket"
    )
    max_live_connections: int = Field(
        default=200,
        ge=1,
        description="Upper bound on simultaneous live sessions"
    )

    # Merge policy
    local_preferred_fields: str = Field(
        default="description,amount,category,notes,tags,name,color,icon,keywords",
        description="Comma-separated fields where the local side wins on merge"
    )
    union_fields: str = Field(
        default="tags,keywords",
        description="Comma-separated array fields merged as a set union"
    )

    @field_validator('local_preferred_fields', 'union_fields')
    @classmethod
    def validate_field_list(cls, v: str) -> str:
        """Reject lists that contain nothing but separators."""
        if v and not any(part.strip() for part in v.split(",")):
            raise ValueError("Field list must name at least one field")
        return v

    @property
    def local_preferred_list(self) -> list[str]:
        """Get local-preferred fields as a list."""
        return [f.strip() for f in self.local_preferred_fields.split(",") if f.strip()]

    @property
    def union_list(self) -> list[str]:
        """Get union fields as a list."""
        return [f.strip() for f in self.union_fields.split(",") if f.strip()]


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        description="Root log level"
    )

    # HTTP server
    host: str = Field(
        default="0.0.0.0",
        description="Interface the API binds to"
    )
    port: int = Field(
        default=8000,
        ge=1,
        le=65535,
        description="Port the API listens on"
    )
    cors_origins: str = Field(
        default="http://localhost:3000",
        description="Comma-separated list of allowed CORS origins"
    )

    @field_validator('log_level')
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"Unsupported log level: {v}. Allowed: {allowed}")
        return v.upper()

    @property
    def cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def storage(self) -> StorageSettings:
        return StorageSettings()

    @property
    def sync(self) -> SyncSettings:
        return SyncSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    for name in ("storage", "sync", "app"):
        try:
            _ = getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
