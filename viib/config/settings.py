"""
Pydantic Settings — single source of truth for all configuration.

Reads from environment variables (and .env file in dev).
Every worker imports `get_settings()` to resolve its config; per-job
overrides live in the `jobs.configuration` column and are merged by the
services themselves.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(RuntimeError):
    """A credential required by the current invocation is missing."""


class Settings(BaseSettings):
    """Application-wide settings loaded from env vars."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Database ──────────────────────────────────────
    database_url: str = Field(
        ...,
        description="Async Postgres DSN (postgresql+asyncpg://...)",
    )
    db_pool_size: int = 10
    db_max_overflow: int = 5

    # ── Catalog (TMDB) ────────────────────────────────
    tmdb_api_key: SecretStr = Field(
        default=SecretStr(""), description="TMDB v3 API key"
    )
    tmdb_base_url: str = "https://api.themoviedb.org/3"
    catalog_timeout_seconds: float = 15.0
    catalog_region: str = Field(
        default="US", description="Watch-provider region used for availability rows"
    )
    discover_max_pages: int = Field(
        default=5, description="Max discover pages fetched per language/combination"
    )
    default_min_rating: float = 6.0
    default_min_vote_count: int = 5

    # ── Video search (YouTube) ───────────────────────
    youtube_api_key: SecretStr = Field(
        default=SecretStr(""), description="YouTube Data API key (trailer fallback)"
    )
    youtube_search_url: str = "https://www.googleapis.com/youtube/v3/search"

    # ── Pacing ───────────────────────────────────────
    request_delay_seconds: float = 0.05  # after every sync combination
    dispatch_delay_seconds: float = 0.5  # between orchestrator dispatches
    dispatch_poll_every: int = 10  # job status re-read interval (dispatches/rows)
    retry_delay_seconds: float = 1.0
    progress_every: int = 50

    # ── Wall-clock budgets ───────────────────────────
    enrich_details_budget_seconds: float = 55.0
    enrich_trailers_budget_seconds: float = 90.0
    repair_budget_seconds: float = 55.0

    # ── Batch sizes ──────────────────────────────────
    enrich_details_batch_size: int = 50
    enrich_trailers_batch_size: int = 20
    repair_batch_size: int = 100
    retry_sweep_limit: int = 10

    # ── Delta sync ───────────────────────────────────
    delta_lookback_days: int = 7
    delta_next_run_hour: int = 2

    # ── Function invocation ──────────────────────────
    functions_base_url: str = Field(
        default="http://localhost:8080/functions",
        description="Base URL where the function endpoints of apps.api are served",
    )
    invoke_timeout_seconds: float = 300.0

    # ── Logging ──────────────────────────────────────
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "console"] = "json"

    # ── Deployment ───────────────────────────────────
    environment: str = "development"
    port: int = 8080

    # ── API auth ─────────────────────────────────────
    pipeline_api_key: SecretStr = Field(
        default=SecretStr(""),
        description="API key for the function endpoints (X-Api-Key header)",
    )

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def require_tmdb_key(self) -> str:
        """Return the TMDB key or fail the invocation."""
        key = self.tmdb_api_key.get_secret_value()
        if not key:
            raise ConfigurationError("TMDB_API_KEY is not configured")
        return key

    def require_youtube_key(self) -> str:
        key = self.youtube_api_key.get_secret_value()
        if not key:
            raise ConfigurationError("YOUTUBE_API_KEY is not configured")
        return key


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached singleton settings instance."""
    return Settings()  # type: ignore[call-arg, unused-ignore]
