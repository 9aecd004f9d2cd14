import re
from typing import Annotated, Any

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def parse_api_keys(raw: Any) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        items = [str(v).strip() for v in raw]
        return [v for v in items if v]

    raw = str(raw).strip()
    if not raw:
        return []

    # Comma or whitespace separated; keep first occurrence order.
    seen: set[str] = set()
    keys: list[str] = []
    for part in re.split(r"[,\s]+", raw):
        if part and part not in seen:
            seen.add(part)
            keys.append(part)
    return keys


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # Caller registry database (SQLAlchemy async URL)
    database_url: str = "sqlite+aiosqlite:///./llmrelay.db"

    # Upstream (OpenAI-compatible) API
    # Use NoDecode so a plain "k1,k2" value is not parsed as JSON.
    upstream_api_keys: Annotated[list[str], NoDecode] = Field(
        default_factory=list, validation_alias="OPENROUTER_API_KEYS"
    )
    upstream_base_url: str = "https://openrouter.ai/api/v1"
    upstream_timeout: float = 60.0
    default_model: str = "qwen/qwen-3-4b:free"
    scoring_model: str = "qwen/qwen-3-4b:free"
    upstream_max_attempts: int = 3  # credentials tried per request

    @field_validator("upstream_api_keys", mode="before")
    @classmethod
    def decode_upstream_api_keys(cls, v: Any) -> list[str]:
        return parse_api_keys(v)

    # Credential rotation
    credential_cooldown_seconds: float = 60.0
    credential_success_floor: float = 0.5
    credential_idle_retry_seconds: float = 300.0

    # Rate limiting (sliding window)
    rate_limit_window_ms: int = 60000
    rate_limit_default: int = 100  # requests per window, standard tier
    rate_limit_premium: int = 1000
    rate_limit_unlimited: int = 100000
    standard_daily_limit: int = 100000
    premium_daily_limit: int = -1  # -1 = unlimited
    caller_profile_cache_seconds: float = 30.0
    rate_limit_cleanup_interval_seconds: float = 60.0  # idle local window purge

    # Response cache
    cache_enabled: bool = True
    cache_ttl_seconds: int = 3600
    cache_prefix: str = "cache:llm"
    cache_max_entries: int = 10000
    cache_max_payload_bytes: int = 256 * 1024
    cache_sweep_interval_seconds: float = 60.0

    # Context budgeting
    max_context_tokens: int = 30000
    max_context_messages: int = 50
    large_context_tokens: int = 120000  # models whose id contains "128k"
    max_document_chars: int = 200_000
    max_document_chunks: int = 25  # chunks scored per document request
    document_scoring_concurrency: int = 5

    # Redis settings (optional shared store)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"
    redis_retry_interval_seconds: float = 30.0

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    @field_validator(
        "rate_limit_default", "rate_limit_premium", "rate_limit_unlimited"
    )
    @classmethod
    def validate_rate_limit_positive(cls, v: int) -> int:
        """Validate rate limit values are positive."""
        if v < 1:
            raise ValueError("Rate limit values must be at least 1")
        return v

    @field_validator("rate_limit_window_ms")
    @classmethod
    def validate_window(cls, v: int) -> int:
        """Validate the rate limit window is at least one second."""
        if v < 1000:
            raise ValueError("rate_limit_window_ms must be at least 1000")
        return v

    @field_validator("credential_cooldown_seconds")
    @classmethod
    def validate_cooldown(cls, v: float) -> float:
        """A cooldown must end strictly in the future."""
        if v <= 0:
            raise ValueError("credential_cooldown_seconds must be positive")
        return v

    @field_validator("credential_success_floor")
    @classmethod
    def validate_success_floor(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("credential_success_floor must be between 0 and 1")
        return v

    @field_validator(
        "max_context_tokens",
        "max_context_messages",
        "large_context_tokens",
        "max_document_chars",
        "max_document_chunks",
        "document_scoring_concurrency",
        "cache_max_entries",
        "upstream_max_attempts",
    )
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("value must be at least 1")
        return v

    @field_validator("cache_ttl_seconds")
    @classmethod
    def validate_cache_ttl(cls, v: int) -> int:
        if v < 1:
            raise ValueError("cache_ttl_seconds must be at least 1")
        return v

    model_config = SettingsConfigDict(
        env_file=".env", extra="ignore", populate_by_name=True
    )


# Global settings instance
settings = Settings()
