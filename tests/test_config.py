"""
Tests for configuration and settings.

Covers:
- Default values
- Credential checks
- Environment variable loading
"""

from __future__ import annotations

import pytest

from viib.config.settings import ConfigurationError, Settings, get_settings


class TestDefaults:
    """Test settings defaults."""

    def test_default_budgets(self) -> None:
        s = Settings(database_url="postgresql+asyncpg://x")
        assert s.enrich_details_budget_seconds == 55
        assert s.enrich_trailers_budget_seconds == 90
        assert s.repair_budget_seconds == 55

    def test_default_pacing(self) -> None:
        s = Settings(database_url="postgresql+asyncpg://x")
        assert s.dispatch_delay_seconds == 0.5
        assert s.dispatch_poll_every == 10
        assert s.request_delay_seconds == 0.05

    def test_default_batches(self) -> None:
        s = Settings(database_url="postgresql+asyncpg://x")
        assert s.enrich_details_batch_size == 50
        assert s.enrich_trailers_batch_size == 20
        assert s.repair_batch_size == 100
        assert s.retry_sweep_limit == 10

    def test_single_database_dsn(self) -> None:
        assert [name for name in Settings.model_fields if name.startswith("database_url")] == [
            "database_url"
        ]

    def test_default_region(self) -> None:
        s = Settings(database_url="postgresql+asyncpg://x")
        assert s.catalog_region == "US"

    def test_is_production(self) -> None:
        s = Settings(database_url="postgresql+asyncpg://x", environment="production")
        assert s.is_production

    def test_not_production_by_default(self) -> None:
        s = Settings(database_url="postgresql+asyncpg://x")
        assert not s.is_production


class TestCredentials:
    def test_missing_tmdb_key_raises(self) -> None:
        s = Settings(database_url="postgresql+asyncpg://x", tmdb_api_key="")
        with pytest.raises(ConfigurationError, match="TMDB_API_KEY"):
            s.require_tmdb_key()

    def test_missing_youtube_key_raises(self) -> None:
        s = Settings(database_url="postgresql+asyncpg://x", youtube_api_key="")
        with pytest.raises(ConfigurationError, match="YOUTUBE_API_KEY"):
            s.require_youtube_key()

    def test_keys_returned_when_present(self) -> None:
        s = Settings(
            database_url="postgresql+asyncpg://x", tmdb_api_key="abc", youtube_api_key="def"
        )
        assert s.require_tmdb_key() == "abc"
        assert s.require_youtube_key() == "def"


class TestEnvironment:
    def test_reads_env(self, monkeypatch) -> None:
        monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://env/db")
        monkeypatch.setenv("DISPATCH_POLL_EVERY", "5")
        monkeypatch.setenv("CATALOG_REGION", "GB")
        get_settings.cache_clear()
        try:
            s = get_settings()
            assert s.database_url == "postgresql+asyncpg://env/db"
            assert s.dispatch_poll_every == 5
            assert s.catalog_region == "GB"
        finally:
            get_settings.cache_clear()
