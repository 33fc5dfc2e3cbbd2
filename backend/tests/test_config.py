"""
Tests for application configuration and settings validation.
"""

import os
import pytest
from unittest.mock import patch


def test_settings_loads_defaults():
    """Settings should load with sensible defaults in development."""
    from smart_campaign.config import get_settings
    get_settings.cache_clear()

    with patch.dict(os.environ, {
        "ENVIRONMENT": "development",
        "DATABASE_URL": "postgresql+asyncpg://localhost/test",
    }, clear=False):
        get_settings.cache_clear()
        settings = get_settings()
        assert settings.environment == "development"
        assert settings.is_production is False
        assert settings.min_hours_between_runs == 24
        assert settings.max_new_ads_per_run_per_adset == 2
        get_settings.cache_clear()


def test_plain_postgres_url_is_rewritten_for_asyncpg():
    from smart_campaign.config import Settings
    settings = Settings(database_url="postgresql://user:pw@db-host/smart")
    assert settings.database_url == "postgresql+asyncpg://user:pw@db-host/smart"


def test_settings_cors_origin_list():
    """CORS origins string should be split into a list."""
    from smart_campaign.config import get_settings
    get_settings.cache_clear()

    with patch.dict(os.environ, {
        "ENVIRONMENT": "development",
        "DATABASE_URL": "postgresql+asyncpg://localhost/test",
        "CORS_ORIGINS": "http://localhost:3000, http://example.com",
    }, clear=False):
        get_settings.cache_clear()
        settings = get_settings()
        origins = settings.cors_origin_list
        assert len(origins) == 2
        assert "http://localhost:3000" in origins
        assert "http://example.com" in origins
        get_settings.cache_clear()


def test_production_requires_api_key():
    """Production mode should refuse to start without an API key."""
    from smart_campaign.config import Settings

    with pytest.raises(ValueError, match="API_KEY must be set"):
        Settings(
            environment="production",
            api_key="",
            encryption_key="x",
            database_url="postgresql+asyncpg://prod-host/db",
        )


def test_production_requires_encryption_key():
    from smart_campaign.config import Settings

    with pytest.raises(ValueError, match="ENCRYPTION_KEY must be set"):
        Settings(
            environment="production",
            api_key="a-real-api-key",
            encryption_key="",
            database_url="postgresql+asyncpg://prod-host/db",
        )


def test_production_accepts_real_secrets():
    """Production mode should accept real secrets."""
    from smart_campaign.config import Settings
    settings = Settings(
        environment="production",
        api_key="a-real-api-key",
        encryption_key="a-real-encryption-key",
        database_url="postgresql+asyncpg://prod-host/db",
    )
    assert settings.is_production is True
    assert settings.api_key == "a-real-api-key"


def test_negative_creation_cap_rejected():
    from smart_campaign.config import Settings
    with pytest.raises(ValueError):
        Settings(max_new_ads_per_run_per_adset=-1)
