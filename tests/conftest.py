from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from objectgate.common.config import Settings, get_settings
from objectgate.main import create_app
from tests.factories import make_settings
from tests.services.mock_storage import MockStorageClient


@pytest.fixture(autouse=True)
def clear_settings_cache():
    get_settings.cache_clear()  # type: ignore[attr-defined]
    yield
    get_settings.cache_clear()  # type: ignore[attr-defined]


@pytest.fixture()
def settings() -> Settings:
    return make_settings()


@pytest.fixture()
def mock_storage() -> MockStorageClient:
    return MockStorageClient()


@pytest.fixture()
def client(settings, mock_storage):
    app = create_app(settings, storage_client=mock_storage)
    with TestClient(app) as test_client:
        yield test_client
