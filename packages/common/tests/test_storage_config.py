"""Tests for configuration and the storage client lifecycle"""

import pytest

from billinglead_common.config import ConfigurationError, DatabaseSettings, RegistrySettings
from billinglead_common.storage import StorageClient, StorageNotOpenError


class TestSettings:
    """Environment-driven settings"""

    def test_database_defaults(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        monkeypatch.delenv("DATABASE_ECHO", raising=False)

        settings = DatabaseSettings.from_environment()

        assert settings.database_url.startswith("sqlite+aiosqlite://")
        assert settings.echo is False

    def test_database_from_environment(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgresql+asyncpg://u:p@db/leads")
        monkeypatch.setenv("DATABASE_ECHO", "true")

        settings = DatabaseSettings.from_environment()

        assert settings.database_url == "postgresql+asyncpg://u:p@db/leads"
        assert settings.echo is True

    def test_registry_from_environment(self, monkeypatch):
        monkeypatch.setenv("NPI_API_URL", "https://example.test/api/")
        monkeypatch.setenv("NPI_PAGE_LIMIT", "50")
        monkeypatch.setenv("NPI_BATCH_DELAY", "0.5")

        settings = RegistrySettings.from_environment()

        assert settings.api_url == "https://example.test/api/"
        assert settings.page_limit == 50
        assert settings.batch_delay == 0.5
        assert settings.max_concurrent == 3

    def test_invalid_values(self, monkeypatch):
        monkeypatch.setenv("NPI_PAGE_LIMIT", "lots")
        with pytest.raises(ConfigurationError, match="NPI_PAGE_LIMIT"):
            RegistrySettings.from_environment()

        monkeypatch.setenv("NPI_PAGE_LIMIT", "500")
        with pytest.raises(ConfigurationError, match="between 1 and 200"):
            RegistrySettings.from_environment()


class TestStorageClient:
    """Open / close lifecycle"""

    def test_session_before_open(self, database_settings):
        client = StorageClient(database_settings)

        with pytest.raises(StorageNotOpenError):
            client.session()
        with pytest.raises(StorageNotOpenError):
            client.engine

    @pytest.mark.asyncio
    async def test_context_manager(self, database_settings):
        async with StorageClient(database_settings) as client:
            assert client.is_open
            async with client.session() as session:
                assert session is not None

        assert not client.is_open
        # closing twice is harmless
        await client.close()
