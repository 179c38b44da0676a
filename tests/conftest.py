"""Pytest configuration and fixtures."""

import os
import time
from collections.abc import Callable, Generator
from typing import Any
from unittest.mock import patch

import jwt
import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing application modules
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SUPABASE_URL", "https://test-project.supabase.co")
os.environ.setdefault("SUPABASE_SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret-for-marketplace-tests")

from tests.fakes import FakeSupabaseClient  # noqa: E402

TEST_JWT_SECRET = os.environ["JWT_SECRET"]

CUSTOMER_ID = "customer-1"
VENDOR_ID = "vendor-1"
OTHER_USER_ID = "stranger-1"
ADMIN_ID = "admin-1"


def make_token(
    user_id: str,
    role: str | None = "customer",
    secret: str = TEST_JWT_SECRET,
    expires_in: int = 3600,
    **claims: Any,
) -> str:
    """Issue an HS256 access token like the upstream identity provider."""
    now = int(time.time())
    payload: dict[str, Any] = {"sub": user_id, "iat": now, "exp": now + expires_in, **claims}
    if role is not None:
        payload["role"] = role
    return jwt.encode(payload, secret, algorithm="HS256")


@pytest.fixture(scope="session")
def test_settings() -> Generator[Any, None, None]:
    """Provide test settings with cleared cache.

    Yields:
        Settings: Test configuration settings.
    """
    from src.core.config import get_settings

    # Clear the cache to ensure fresh settings
    get_settings.cache_clear()

    settings = get_settings()
    yield settings

    # Clean up cache after tests
    get_settings.cache_clear()


@pytest.fixture
def fake_store() -> Generator[FakeSupabaseClient, None, None]:
    """Provide an in-memory store wired into every Supabase client lookup.

    Yields:
        FakeSupabaseClient: The shared fake client.
    """
    store = FakeSupabaseClient()
    with (
        patch("src.core.supabase.get_supabase_client", return_value=store),
        patch("src.services.chat_service.get_supabase_client", return_value=store),
        patch("src.services.order_service.get_supabase_client", return_value=store),
    ):
        yield store


@pytest.fixture
def token_factory() -> Callable[..., str]:
    return make_token


@pytest.fixture
def auth_headers() -> Callable[..., dict[str, str]]:
    """Build an Authorization header for a user and role."""

    def _headers(user_id: str = CUSTOMER_ID, role: str | None = "customer") -> dict[str, str]:
        return {"Authorization": f"Bearer {make_token(user_id, role)}"}

    return _headers


@pytest.fixture
def client(fake_store: FakeSupabaseClient) -> Generator[TestClient, None, None]:
    """Provide a test client for the FastAPI application.

    The lifespan runs per test, so realtime state starts empty each time.

    Args:
        fake_store: In-memory store fixture.

    Yields:
        TestClient: FastAPI test client.
    """
    from src.main import app

    with TestClient(app) as test_client:
        yield test_client
