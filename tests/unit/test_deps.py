"""Unit tests for FastAPI dependency injection functions."""

import time
from typing import Any
from unittest.mock import patch

import pytest
from fastapi import HTTPException

from src.api.deps import authenticate_token, get_admin_user, get_current_user
from src.api.middleware.auth import AuthError, AuthErrorCode
from src.schemas.auth import TokenPayload, UserContext, UserRole


def token_payload(role: str | None = "customer") -> TokenPayload:
    now = int(time.time())
    return TokenPayload(
        sub="550e8400-e29b-41d4-a716-446655440000",
        email="test@example.com",
        role=role,
        exp=now + 3600,
        iat=now,
    )


class TestGetCurrentUser:
    """Tests for get_current_user dependency."""

    @pytest.mark.asyncio
    @patch("src.api.deps.decode_jwt")
    async def test_extracts_user_context_correctly(self, mock_decode: Any) -> None:
        """Test get_current_user extracts UserContext from valid token."""
        mock_decode.return_value = token_payload()

        user = await get_current_user("Bearer valid-token")

        assert isinstance(user, UserContext)
        assert user.user_id == "550e8400-e29b-41d4-a716-446655440000"
        assert user.email == "test@example.com"
        assert user.role == UserRole.CUSTOMER
        mock_decode.assert_called_once_with("valid-token")

    @pytest.mark.asyncio
    async def test_raises_401_for_missing_header(self) -> None:
        """Test get_current_user raises 401 when Authorization header is missing."""
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user("")

        assert exc_info.value.status_code == 401
        assert "Authorization header required" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_raises_401_for_invalid_header_format(self) -> None:
        """Test get_current_user raises 401 for invalid header format."""
        # Missing "Bearer" prefix
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user("invalid-token")

        assert exc_info.value.status_code == 401
        assert "Invalid authorization header format" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_raises_401_for_wrong_scheme(self) -> None:
        """Test get_current_user raises 401 for non-Bearer scheme."""
        with pytest.raises(HTTPException) as exc_info:
            await get_current_user("Basic some-credentials")

        assert exc_info.value.status_code == 401

    @pytest.mark.asyncio
    @patch("src.api.deps.decode_jwt")
    async def test_raises_401_for_expired_token(self, mock_decode: Any) -> None:
        """Test get_current_user raises 401 for expired token."""
        mock_decode.side_effect = AuthError("Token has expired", AuthErrorCode.TOKEN_EXPIRED)

        with pytest.raises(HTTPException) as exc_info:
            await get_current_user("Bearer expired-token")

        assert exc_info.value.status_code == 401
        assert "expired" in exc_info.value.detail.lower()

    @pytest.mark.asyncio
    @patch("src.api.deps.decode_jwt")
    async def test_raises_401_with_auth_error_message(self, mock_decode: Any) -> None:
        mock_decode.side_effect = AuthError("Invalid token signature", AuthErrorCode.INVALID_SIGNATURE)

        with pytest.raises(HTTPException) as exc_info:
            await get_current_user("Bearer forged-token")

        assert exc_info.value.status_code == 401
        assert exc_info.value.detail == "Invalid token signature"


class TestGetAdminUser:
    """Tests for get_admin_user dependency."""

    @pytest.mark.asyncio
    async def test_allows_admin(self) -> None:
        admin = UserContext(user_id="admin-1", role=UserRole.ADMIN)

        assert await get_admin_user(admin) is admin

    @pytest.mark.asyncio
    @pytest.mark.parametrize("role", [UserRole.CUSTOMER, UserRole.VENDOR, None])
    async def test_rejects_other_roles(self, role: UserRole | None) -> None:
        with pytest.raises(HTTPException) as exc_info:
            await get_admin_user(UserContext(user_id="user-1", role=role))

        assert exc_info.value.status_code == 403


class TestAuthenticateToken:
    """Tests for the shared token check used by the realtime endpoint."""

    @patch("src.api.deps.decode_jwt")
    def test_returns_context(self, mock_decode: Any) -> None:
        mock_decode.return_value = token_payload("vendor")

        assert authenticate_token("raw-token").role == UserRole.VENDOR

    @patch("src.api.deps.decode_jwt")
    def test_propagates_auth_error(self, mock_decode: Any) -> None:
        mock_decode.side_effect = AuthError("Invalid token", AuthErrorCode.INVALID_TOKEN)

        with pytest.raises(AuthError):
            authenticate_token("raw-token")
