"""Tests for environment configuration getters."""

from decimal import Decimal

import pytest

from bulkgen import config
from bulkgen.config import OrchestratorSettings
from bulkgen.exceptions import ConfigurationError


@pytest.fixture(autouse=True)
def clear_database_url_cache():
    config.get_database_url.cache_clear()
    yield
    config.get_database_url.cache_clear()


class TestDatabaseUrl:
    def test_postgresql_scheme_rewritten_to_asyncpg(self, monkeypatch):
        """[P0] Hosted postgres URLs get the asyncpg driver."""
        monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@db:5432/bulk")
        assert config.get_database_url() == "postgresql+asyncpg://u:p@db:5432/bulk"

    def test_missing_url_raises(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        with pytest.raises(ValueError, match="DATABASE_URL"):
            config.get_database_url()


class TestClampedSettings:
    def test_defaults(self, monkeypatch):
        for name in ("MAX_CONCURRENT_ROWS", "TEST_RUN_SIZE", "CREDITS_PER_MINUTE", "MAX_UNIT_ATTEMPTS"):
            monkeypatch.delenv(name, raising=False)

        assert config.get_max_concurrent_rows() == 5
        assert config.get_test_run_size() == 3
        assert config.get_credits_per_minute() == Decimal("7.5")
        assert config.get_max_unit_attempts() == 3

    def test_values_are_clamped(self, monkeypatch):
        monkeypatch.setenv("MAX_CONCURRENT_ROWS", "500")
        monkeypatch.setenv("TEST_RUN_SIZE", "0")
        assert config.get_max_concurrent_rows() == 50
        assert config.get_test_run_size() == 1

    def test_invalid_int_falls_back_to_default(self, monkeypatch):
        monkeypatch.setenv("MAX_CONCURRENT_ROWS", "lots")
        assert config.get_max_concurrent_rows() == 5

    @pytest.mark.parametrize("raw", ["-1", "0", "abc"])
    def test_invalid_credit_price_falls_back(self, monkeypatch, raw):
        monkeypatch.setenv("CREDITS_PER_MINUTE", raw)
        assert config.get_credits_per_minute() == Decimal("7.5")

    def test_settings_from_env(self, monkeypatch):
        monkeypatch.setenv("MAX_CONCURRENT_ROWS", "8")
        monkeypatch.setenv("POLL_INTERVAL_SECONDS", "2.5")

        settings = OrchestratorSettings.from_env()

        assert settings.max_concurrent_rows == 8
        assert settings.poll_interval_seconds == 2.5


class TestProviderSettings:
    def test_kie_key_required(self, monkeypatch):
        monkeypatch.delenv("KIE_API_KEY", raising=False)
        with pytest.raises(ConfigurationError):
            config.get_kie_api_key()

    def test_cloudinary_requires_all_three(self, monkeypatch):
        monkeypatch.setenv("CLOUDINARY_CLOUD_NAME", "demo")
        monkeypatch.setenv("CLOUDINARY_API_KEY", "key")
        monkeypatch.delenv("CLOUDINARY_API_SECRET", raising=False)
        assert config.get_cloudinary_credentials() is None

        monkeypatch.setenv("CLOUDINARY_API_SECRET", "secret")
        assert config.get_cloudinary_credentials() == ("demo", "key", "secret")

    def test_create_provider_from_env_stub(self, monkeypatch):
        from bulkgen.providers import create_provider_from_env
        from bulkgen.providers.stub import StubProvider

        monkeypatch.setenv("RENDER_PROVIDER", "stub")
        assert isinstance(create_provider_from_env(), StubProvider)

    def test_create_provider_from_env_unknown(self, monkeypatch):
        from bulkgen.providers import create_provider_from_env

        monkeypatch.setenv("RENDER_PROVIDER", "runway")
        with pytest.raises(ConfigurationError, match="runway"):
            create_provider_from_env()
