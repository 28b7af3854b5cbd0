"""Application configuration for the signaling server and peers."""
from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    log_level: str = Field(default="INFO")
    cors_allow_origins: list[str] = Field(default_factory=lambda: ["*"])

    default_room: str = Field(default="demo")

    signaling_url: str = Field(default="ws://localhost:3000/api/rtc/signaling")
    health_url: str = Field(default="http://localhost:3000/api/health")
    ice_servers: list[str] = Field(default_factory=list)

    # Receivers pause briefly after the network returns before asking for a new offer.
    rejoin_delay: float = Field(default=0.8, ge=0)
    probe_interval: float = Field(default=2.0, gt=0)
    probe_timeout: float = Field(default=1.5, gt=0)

    @field_validator("cors_allow_origins", "ice_servers", mode="before")
    @classmethod
    def _split_csv(cls, value: object) -> object:
        """Allow comma-separated env values for list settings."""

        if isinstance(value, str):
            parts = [item.strip() for item in value.split(",") if item.strip()]
            return parts
        return value


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()
