"""
Application configuration via environment variables.

Uses Pydantic BaseSettings to load and validate all config from env vars
or a .env.local file. Every setting has a sensible default for local
development so the app can start with minimal configuration.
"""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Deployment environment selector."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class RateLimitBackend(str, Enum):
    """Where per-user call budgets are counted."""

    SUPABASE = "supabase"
    REDIS = "redis"


class Settings(BaseSettings):
    """
    Central configuration for the Voice Quote Service.

    Values are loaded from environment variables first, falling back
    to a `.env.local` file in the project root. Secrets should NEVER
    be committed; use `.env.example` as the template.
    """

    model_config = SettingsConfigDict(
        env_file=".env.local",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Environment ──────────────────────────────────────────────
    environment: Environment = Environment.DEVELOPMENT

    # ── Supabase ─────────────────────────────────────────────────
    supabase_url: str = Field(default="", description="Supabase project URL")
    supabase_service_key: str = Field(default="", description="Supabase service-role key")
    audio_bucket: str = Field(default="voice-intakes", description="Storage bucket holding intake audio")

    # ── AI Providers ─────────────────────────────────────────────
    openai_api_key: str = Field(default="", description="OpenAI API key for STT and extraction")
    openai_base_url: str = Field(default="https://api.openai.com/v1", description="OpenAI API base URL")
    transcription_model: str = Field(default="whisper-1", description="Speech-to-text model")
    extraction_model: str = Field(default="gpt-4o-mini", description="Text-generation model for extraction")
    extraction_max_tokens: int = Field(default=900, ge=100, le=8000)
    repair_max_tokens: int = Field(default=1500, ge=100, le=8000)
    stt_timeout_seconds: float = Field(default=60.0, gt=0, le=600, description="Speech-to-text call timeout")
    llm_timeout_seconds: float = Field(default=30.0, gt=0, le=300, description="Text-generation call timeout")

    # ── Redis ────────────────────────────────────────────────────
    redis_url: str = Field(default="redis://localhost:6379/0", description="Redis connection URL")

    # ── Rate Limits (calls per window, per user) ─────────────────
    rate_limit_backend: RateLimitBackend = RateLimitBackend.SUPABASE
    rate_limit_window_minutes: int = Field(default=60, ge=1, le=1440)
    rate_limit_transcribe: int = Field(default=20, ge=1)
    rate_limit_extract: int = Field(default=20, ge=1)
    rate_limit_create_draft: int = Field(default=10, ge=1)

    # ── Quality Gate ─────────────────────────────────────────────
    default_field_confidence: float = Field(default=0.85, ge=0.0, le=1.0)
    review_confidence_threshold: float = Field(default=0.70, ge=0.0, le=1.0)
    labour_confidence_floor: float = Field(default=0.60, ge=0.0, le=1.0)

    # ── Pricing ──────────────────────────────────────────────────
    default_region_code: str = Field(default="AU", description="Region used when the org has no country code")

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO", description="Root log level")

    # ── Derived helpers ──────────────────────────────────────────

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_development(self) -> bool:
        return self.environment == Environment.DEVELOPMENT


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Return cached Settings instance.

    Using lru_cache ensures we read env vars exactly once, and every
    module that calls ``get_settings()`` gets the same object.
    """
    return Settings()
