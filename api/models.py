"""
API request and response models for Tokenward REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Input validation rules:
  email     -- required, <= 500 chars, basic address shape
  password  -- 8..72 bytes of UTF-8 (bcrypt's input limit), taken verbatim
  name      -- required, <= 500 chars
  token     -- exactly 26 characters (base32 of 16 random bytes)
"""

from typing import Annotated, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from auth.models import Token, User
from auth.passwords import MAX_PASSWORD_BYTES
from auth.tokens import TOKEN_LENGTH

EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


def _check_password_bytes(value: str) -> str:
    if len(value.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"must not be more than {MAX_PASSWORD_BYTES} bytes long")
    return value


_Email = Annotated[str, Field(min_length=1, max_length=500, pattern=EMAIL_PATTERN)]
_Password = Annotated[str, Field(min_length=8), AfterValidator(_check_password_bytes)]
_TokenPlaintext = Annotated[str, Field(min_length=TOKEN_LENGTH, max_length=TOKEN_LENGTH)]


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Request body for POST /api/v1/users."""

    name: str = Field(min_length=1, max_length=500)
    email: _Email
    password: _Password


class ActivateRequest(BaseModel):
    """Request body for PUT /api/v1/users/activated."""

    token: _TokenPlaintext


class PasswordResetRequest(BaseModel):
    """Request body for PUT /api/v1/users/password."""

    password: _Password
    token: _TokenPlaintext


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/tokens/authentication."""

    email: _Email
    password: _Password


class EmailRequest(BaseModel):
    """Request body for POST /api/v1/tokens/activation and /tokens/password-reset."""

    model_config = ConfigDict(str_strip_whitespace=True)

    email: _Email


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of a user. The password hash and version never leave the server."""

    id: int
    name: str
    email: str
    activated: bool
    created_at: str

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            activated=user.activated,
            created_at=user.created_at,
        )


class UserEnvelope(BaseModel):
    user: UserResponse


class TokenResponse(BaseModel):
    """The one-time view of a freshly issued token."""

    token: str
    expiry: str  # ISO 8601 UTC

    @classmethod
    def from_token(cls, token: Token) -> "TokenResponse":
        return cls(token=token.plaintext, expiry=token.expiry.isoformat())


class AuthenticationTokenResponse(BaseModel):
    authentication_token: TokenResponse


class MessageResponse(BaseModel):
    message: str


class SystemInfo(BaseModel):
    environment: str
    version: str


class HealthResponse(BaseModel):
    status: str = "available"
    system_info: SystemInfo


class MetricsResponse(BaseModel):
    """Runtime counters for GET /api/v1/debug/vars."""

    version: str
    threads: int
    database: str  # connection pool status line
    background_tasks_in_flight: int
    timestamp: int  # Unix seconds


class ErrorDetail(BaseModel):
    code: str
    message: str
    detail: Optional[str] = None
    fields: Optional[dict[str, str]] = None


class ErrorResponse(BaseModel):
    error: ErrorDetail
