"""Configuration management for the dispatch service."""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage Configuration
    storage_backend: Literal["redis", "memory"] = Field(
        default="redis", description="Backing store for documents and presence"
    )
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis URL")
    store_max_retries: int = Field(
        default=5, ge=1, description="Optimistic transaction retries before giving up"
    )

    # API Configuration
    api_port: int = Field(default=8000, description="API server port")
    api_host: str = Field(default="0.0.0.0", description="API server host")

    # Environment
    environment: Literal["development", "staging", "production"] = Field(
        default="development"
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: Literal["json", "text"] = Field(default="json", description="Log format")

    # Matching Settings
    request_max_age_seconds: int = Field(
        default=7200, description="Searching requests older than this are never offered"
    )
    request_prompt_timeout_seconds: float = Field(
        default=60.0, description="Local auto-decline window for an offered request"
    )

    # Location Settings
    location_min_interval_seconds: float = Field(
        default=5.0, description="Minimum seconds between published positions"
    )
    location_min_distance_meters: float = Field(
        default=10.0, description="Movement that forces a position publish"
    )
    presence_ttl_seconds: int = Field(
        default=30, description="Published positions expire after this without refresh"
    )

    # Lifecycle Settings
    max_pin_attempts: int | None = Field(
        default=None, ge=1, description="Collection PIN attempts per request, None for unlimited"
    )
    health_check_interval_seconds: float = Field(
        default=60.0, description="Interval of the driver reconciliation pass"
    )
    scheduled_activation_lead_minutes: int = Field(
        default=15, ge=0, description="Scheduled requests start searching this early"
    )

    # Pricing Settings
    default_minimum_charge: int = Field(
        default=300, ge=0, description="Minimum charge when a courier sets none"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level is valid."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v_upper


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
