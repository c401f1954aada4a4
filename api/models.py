"""
API request and response models for Gruff REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field, StringConstraints

from auth.models import Claims, SessionRecord, User

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Deliberately loose: one "@", no whitespace, a dot in the domain part.
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/auth/register.

    Only the email is trimmed. Passwords are hashed exactly as sent.
    """

    email: Annotated[str, StringConstraints(strip_whitespace=True, max_length=255, pattern=EMAIL_PATTERN)]
    password: str = Field(min_length=8, max_length=255)


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login."""

    email: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=255)]
    password: str = Field(min_length=1, max_length=255)


class RefreshRequest(BaseModel):
    """Request body for POST /api/v1/auth/refresh and /logout."""

    refresh_token: str = Field(min_length=1, max_length=4096)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class TokenResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user_id: str
    email: str
    is_admin: bool


class MeResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    email: str
    is_admin: bool
    expires_at: int

    @classmethod
    def from_claims(cls, claims: Claims) -> "MeResponse":
        return cls(user_id=claims.user_id, email=claims.email, is_admin=claims.is_admin, expires_at=claims.exp)


class UserResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    email: str
    is_admin: bool
    is_active: bool
    created_at: str
    last_login: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id or "",
            email=user.email,
            is_admin=user.is_admin,
            is_active=user.is_active,
            created_at=user.created_at or "",
            last_login=user.last_login,
        )


class SessionResponse(BaseModel):
    """One session row. The token hash is never returned."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    email: str
    created_at: int
    expires_at: int
    legacy: bool

    @classmethod
    def from_record(cls, record: SessionRecord) -> "SessionResponse":
        return cls(
            user_id=record.user_id,
            email=record.email,
            created_at=record.created_at,
            expires_at=record.expires_at,
            legacy=record.is_legacy,
        )


class CleanupResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    purged: int


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
