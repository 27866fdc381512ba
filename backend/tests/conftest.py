"""Shared fixtures. Nothing here talks to R2, Postgres or Gemini."""

from unittest.mock import MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from atelier.repository import InMemoryDesignRepository
from atelier.utils.r2 import R2Storage
from tests.helpers import DISABLED_CONFIG, TEST_CONFIG, USER, fake_presign, make_services


@pytest.fixture
def mock_s3():
    """A MagicMock boto3 S3 client; every call succeeds unless a test says otherwise."""
    client = MagicMock()
    client.generate_presigned_url.side_effect = fake_presign
    return client


@pytest.fixture
def storage(mock_s3):
    return R2Storage(TEST_CONFIG, client=mock_s3)


@pytest.fixture
def disabled_storage():
    return R2Storage(DISABLED_CONFIG)


@pytest.fixture
def repo():
    return InMemoryDesignRepository()


@pytest.fixture
def services(mock_s3):
    return make_services(mock_s3)


@pytest.fixture
async def client(services):
    """API client over ASGITransport, authenticated as USER."""
    from atelier.main import create_app

    app = create_app(services)
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(
        transport=transport, base_url="http://test", headers={"X-User-ID": USER}
    ) as c:
        yield c
