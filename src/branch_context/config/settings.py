"""Application settings management using Pydantic Settings."""

from pathlib import Path
from typing import Literal, Self

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _get_default_db_path() -> str:
    """Get default database path in the working directory."""
    return str(Path.cwd() / "data" / "branch_context.db")


class Settings(BaseSettings):
    """Application configuration settings.

    All settings can be configured via environment variables with the
    prefix `BRANCH_CONTEXT_`. For example, `BRANCH_CONTEXT_DATABASE_PATH`.
    """

    # Node store
    database_path: str = Field(
        default_factory=_get_default_db_path,
        description="SQLite node store file path",
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    # Build defaults
    default_max_tokens: int = Field(
        default=4000,
        ge=1,
        le=200_000,
        description="Token budget used when a request does not set one",
    )
    default_model: str = Field(
        default="gpt-4o", description="Model used for token counting by default"
    )

    # Token Counter settings
    token_counter: Literal["tiktoken", "estimate"] = Field(
        default="tiktoken",
        description="Token counter implementation",
    )
    token_buffer_ratio: float = Field(
        default=0.1,
        ge=0.0,
        le=0.3,
        description="Safety buffer ratio for token budget (0.1 = 10%)",
    )

    # Weighting
    recency_half_life_hours: float = Field(
        default=24.0,
        gt=0.0,
        description="Age at which the recency score halves",
    )
    reference_boost: float = Field(
        default=2.0,
        ge=1.0,
        le=10.0,
        description="Weight multiplier for referenced nodes (reference-heavy)",
    )
    secondary_weight: float = Field(
        default=0.1,
        ge=0.0,
        le=0.25,
        description="Blend coefficient of each non-primary score component",
    )

    # Allocation
    max_reallocation_rounds: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Maximum adaptive budget reallocation rounds",
    )
    parent_min_tokens: int = Field(
        default=32,
        ge=1,
        description="Token floor for the immediate parent when budget is exhausted",
    )
    fallback_max_tokens: int = Field(
        default=1000,
        ge=1,
        description="Token cap of the degraded ancestor-only context",
    )
    summary_line_tokens: int = Field(
        default=40,
        ge=5,
        le=500,
        description="Target size of a single node digest in the summary category",
    )

    # Context cache settings
    cache_enabled: bool = Field(
        default=True,
        description="Enable the assembled-context cache",
    )
    cache_backend: Literal["memory", "redis"] = Field(
        default="memory", description="Cache backend to use"
    )
    cache_max_size: int = Field(
        default=1000,
        ge=1,
        le=100_000,
        description="Maximum number of in-process cache entries",
    )
    cache_ttl_seconds: int = Field(
        default=900,
        ge=1,
        le=86400,
        description="Cache entry time-to-live in seconds",
    )
    cache_compression: bool = Field(
        default=True,
        description="Compress entries stored in the distributed cache",
    )
    redis_url: str | None = Field(default=None, description="Redis connection URL")
    redis_namespace: str = Field(
        default="branch-context", description="Key prefix for distributed cache entries"
    )

    # Concurrency
    batch_max_concurrency: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Maximum concurrent builds for batch and warm-up requests",
    )

    model_config = SettingsConfigDict(
        env_prefix="BRANCH_CONTEXT_", env_file=".env", env_file_encoding="utf-8"
    )

    @model_validator(mode="after")
    def validate_cache_config(self) -> Self:
        """Validate backend-specific configuration."""
        if self.cache_backend == "redis" and not self.redis_url:
            raise ValueError(
                "Redis URL is required when cache_backend='redis'. "
                "Set BRANCH_CONTEXT_REDIS_URL environment variable."
            )
        return self
