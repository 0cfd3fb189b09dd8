"""
Pytest fixtures for the inbox API.

The database session and Redis client are replaced with mocks through
dependency overrides; the startup hook is never run because the client is
not used as a context manager.
"""

import os
from types import SimpleNamespace
from unittest.mock import MagicMock
from uuid import UUID, uuid4

import pytest

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("WHATSAPP_PROVIDER", "stub")

from fastapi.testclient import TestClient  # noqa: E402

from inbox.providers import get_provider  # noqa: E402
from inbox.security.auth import UserClaims  # noqa: E402
from inbox_api import deps  # noqa: E402
from inbox_api.main import app  # noqa: E402
from inboxcore.db import get_db  # noqa: E402
from inboxcore.settings import get_settings  # noqa: E402

ORGANIZATION_ID = UUID("12345678-1234-1234-1234-123456789012")


@pytest.fixture(autouse=True)
def reset_caches():
    get_settings.cache_clear()
    get_provider.cache_clear()
    yield
    app.dependency_overrides.clear()
    get_settings.cache_clear()
    get_provider.cache_clear()


@pytest.fixture
def db():
    return MagicMock()


@pytest.fixture
def redis_client():
    client = MagicMock()
    client.get.return_value = None
    # INCR results for the hourly and daily rate limit windows
    client.pipeline.return_value.execute.return_value = [1, True, 1, True]
    return client


@pytest.fixture
def producer():
    return MagicMock()


@pytest.fixture
def client(db, redis_client, producer):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[deps.get_redis] = lambda: redis_client
    app.dependency_overrides[deps.get_producer] = lambda: producer
    return TestClient(app)


@pytest.fixture
def organization():
    return SimpleNamespace(id=ORGANIZATION_ID, name="Acme", is_active=True, subscription_tier="starter")


@pytest.fixture
def login_as(organization):
    """Authenticate requests as a member with the given role."""

    def _login(role: str) -> UserClaims:
        user = UserClaims(
            id=uuid4(),
            organization_id=None if role == "super_admin" else ORGANIZATION_ID,
            email=f"{role}@example.com",
            role=role,
        )
        app.dependency_overrides[deps.get_current_user] = lambda: user
        app.dependency_overrides[deps.get_current_organization] = lambda: organization
        return user

    return _login
