"""Authentication schemas for JWT tokens and user context."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class UserRole(str, Enum):
    """Roles issued by the upstream identity provider."""

    CUSTOMER = "customer"
    VENDOR = "vendor"
    ADMIN = "admin"


class UserContext(BaseModel):
    """Authenticated user context extracted from JWT token.

    This model represents the authenticated user for the current request.
    It is populated by the auth middleware from the validated JWT.
    """

    model_config = ConfigDict(from_attributes=True)

    user_id: str = Field(description="Unique identifier for the user (from JWT sub claim)")
    email: str | None = Field(default=None, description="User's email address if available")
    role: UserRole | None = Field(default=None, description="User's role (customer, vendor or admin)")

    @property
    def is_admin(self) -> bool:
        """Check if the user carries the admin role."""
        return self.role == UserRole.ADMIN


class TokenPayload(BaseModel):
    """JWT token payload structure.

    Represents the claims contained in an access token issued upstream.
    Used for validation and extraction of user information.
    """

    model_config = ConfigDict(from_attributes=True)

    sub: str = Field(description="Subject - the user's identifier")
    email: str | None = Field(default=None, description="User's email address")
    role: str | None = Field(default=None, description="User's role")
    exp: int = Field(description="Expiration timestamp (Unix epoch)")
    iat: int = Field(description="Issued at timestamp (Unix epoch)")

    @property
    def expiration_datetime(self) -> datetime:
        """Get expiration as datetime object."""
        return datetime.fromtimestamp(self.exp)

    def to_user_context(self) -> UserContext:
        """Convert token payload to UserContext.

        Unknown role claims are dropped rather than rejected.

        Returns:
            UserContext: User context derived from token claims.
        """
        try:
            role = UserRole(self.role) if self.role else None
        except ValueError:
            role = None
        return UserContext(
            user_id=self.sub,
            email=self.email,
            role=role,
        )


class AuthenticatedResponse(BaseModel):
    """Response for authenticated test endpoint.

    Used to verify authentication is working correctly.
    """

    model_config = ConfigDict(from_attributes=True)

    authenticated: bool = Field(default=True, description="Authentication status")
    user_id: str = Field(description="Authenticated user ID")
    email: str | None = Field(default=None, description="User email if available")
    role: str | None = Field(default=None, description="User role if available")
    online: bool = Field(default=False, description="Whether the user has a live realtime connection")
