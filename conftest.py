"""Fixtures shared by every package's tests."""

import pytest
import pytest_asyncio

from billinglead_common.config import DatabaseSettings, RegistrySettings
from billinglead_common.storage import StorageClient


@pytest.fixture
def database_settings(tmp_path):
    return DatabaseSettings(database_url=f"sqlite+aiosqlite:///{tmp_path / 'billinglead.db'}")


@pytest_asyncio.fixture
async def storage(database_settings):
    client = StorageClient(database_settings)
    await client.open()
    try:
        yield client
    finally:
        await client.close()


@pytest.fixture
def registry_settings():
    """Registry settings with no pause between waves."""
    return RegistrySettings(api_url="https://registry.test/api/", batch_delay=0)
