"""
Runtime configuration for the Topic Hub API.

Uses pydantic-settings: every field is read from the environment variable
of the same name (case-insensitive), or from a local .env file.
Defaults are tuned for local development.
"""
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # MongoDB (unset disables the Mongo backend)
    database_url: Optional[str] = None
    database_name: Optional[str] = None

    # "mongo" or "memory"; defaults to mongo when DATABASE_URL is set
    store_backend: str = Field(default="", validate_default=True)

    # Consistency coordinator
    coordinator_max_attempts: int = Field(default=3, ge=1, description="Attempts per step of a multi-record update")
    coordinator_backoff_seconds: float = Field(default=0.05, ge=0, description="Base retry delay, doubles each retry")

    log_level: str = "INFO"
    cors_origins: str = Field(default="*", description="Comma-separated allowed CORS origins")
    port: int = 8000

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    @field_validator("store_backend", mode="before")
    @classmethod
    def pick_backend(cls, v, info):
        if v:
            return str(v).lower()
        return "mongo" if info.data.get("database_url") else "memory"

    @field_validator("log_level", mode="before")
    @classmethod
    def upper_level(cls, v):
        return str(v).upper()

    @property
    def cors_origin_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()] or ["*"]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()
