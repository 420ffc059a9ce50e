"""Application configuration settings."""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration loaded from environment variables."""

    catalog_path: Optional[str] = Field(
        default=None,
        alias="SLOTFILL_CATALOG_PATH",
        description="JSON document describing capabilities, providers and bindings.",
    )
    draft_backend: str = Field(
        default="memory",
        alias="SLOTFILL_DRAFT_BACKEND",
        description="Storage used for conversation drafts (memory or redis).",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        alias="SLOTFILL_REDIS_URL",
        description="Connection URL of the Redis draft store; rediss:// enables TLS.",
    )
    draft_ttl_seconds: int = Field(
        default=86400,
        alias="SLOTFILL_DRAFT_TTL_SECONDS",
        description="Expiry applied to drafts persisted in Redis.",
    )
    openai_api_key: Optional[str] = Field(
        default=None,
        alias="OPENAI_API_KEY",
        description="API key used by the default completion collaborator.",
    )
    openai_model: str = Field(
        default="gpt-4o-mini",
        alias="SLOTFILL_OPENAI_MODEL",
        description="Chat model used for slot extraction.",
    )
    extraction_max_input_chars: int = Field(
        default=2000,
        alias="SLOTFILL_EXTRACTION_MAX_INPUT_CHARS",
        description="Upper bound on user text forwarded to the completion call.",
    )
    provider_timeout_seconds: float = Field(
        default=10.0,
        alias="SLOTFILL_PROVIDER_TIMEOUT_SECONDS",
        description="Fallback timeout for provider and form submission calls.",
    )
    allow_origins: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["http://localhost:3000"],
        alias="SLOTFILL_ALLOW_ORIGINS",
        description="Comma separated list of origins authorised for CORS.",
    )
    rate_limit_default: str = Field(
        default="120/minute",
        alias="SLOTFILL_RATE_LIMIT",
        description="Default rate limit applied to incoming requests.",
    )
    rate_limit_enabled: bool = Field(
        default=True,
        alias="SLOTFILL_RATE_LIMIT_ENABLED",
        description="Toggle to disable throttling logic altogether.",
    )
    rate_limit_headers_enabled: bool = Field(
        default=True,
        alias="SLOTFILL_RATE_LIMIT_HEADERS_ENABLED",
        description="Expose rate limit headers on throttled responses.",
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: str | List[str]) -> List[str]:
        if isinstance(value, str):
            parts = [origin.strip() for origin in value.split(",")]
            origins = [origin for origin in parts if origin]
            return origins or ["http://localhost:3000"]
        return value

    @field_validator("draft_backend")
    @classmethod
    def _check_backend(cls, value: str) -> str:
        backend = value.strip().lower()
        if backend not in {"memory", "redis"}:
            raise ValueError("draft backend must be 'memory' or 'redis'")
        return backend


@lru_cache
def get_settings() -> Settings:
    """Return a cached instance of application settings."""

    return Settings()
