"""Application settings for the workspace researcher."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Researcher settings, read from ``RESEARCHER_*`` environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="RESEARCHER_",
        env_file=None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Core application settings
    app_env: Literal["development", "test", "staging", "production"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Result cache
    redis_url: str | None = None
    cache_enabled: bool = True
    cache_ttl_seconds: int = 3600
    cache_key_prefix: str = "researcher:cache"

    # Research loop
    max_iterations: int = 5
    max_results_per_search: int = 5
    max_queries_per_step: int = 3
    recent_history_limit: int = 5
    snippet_length: int = 200
    semantic_distance_threshold: float = Field(default=0.65, ge=0.0, le=2.0)
    include_surrounding_context: bool = True

    # Model used for the decide / evaluate steps
    model_id: str = "gpt-4o-mini"
    model_temperature: float = Field(default=0.0, ge=0.0, le=2.0)
    model_timeout_seconds: float = 20.0

    # Embeddings
    openai_api_key: str | None = None
    embedding_model: str = "text-embedding-3-small"
    embedding_base_url: str = "https://api.openai.com/v1"
    embedding_timeout_seconds: float = 10.0

    # Store calls made during the loop
    search_timeout_seconds: float = 5.0

    # Outbound events
    events_stream: str = "researcher:events"

    @field_validator(
        "cache_ttl_seconds",
        "max_iterations",
        "max_results_per_search",
        "max_queries_per_step",
        "snippet_length",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Limits and timeouts must be positive."""
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("model_timeout_seconds", "embedding_timeout_seconds", "search_timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeout must be positive")
        return v

    @property
    def is_test(self) -> bool:
        """Check if running under the test suite."""
        return self.app_env == "test"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
