"""
API request and response models for the authcore REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Request bodies accept both snake_case and the camelCase keys used on the wire
(displayName, refreshToken, newPassword, ...). Session payloads are rendered
by AuthSession.to_wire() so there is exactly one definition of that shape.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

_EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class _Body(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, populate_by_name=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class SignUpRequest(_Body):
    """Request body for POST /api/v1/auth/signup.

    Password strength is enforced by the provider, not here, so the client
    gets the PASSWORD_TOO_WEAK code rather than a generic validation error.
    """

    email: str = Field(pattern=_EMAIL_PATTERN, max_length=255)
    password: str = Field(min_length=1, max_length=256)
    display_name: Optional[str] = Field(default=None, alias="displayName", max_length=255)
    provider: Optional[str] = None


class SignInRequest(_Body):
    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=256)
    provider: Optional[str] = None


class RefreshRequest(_Body):
    refresh_token: str = Field(alias="refreshToken", min_length=1)
    provider: Optional[str] = None


class VerifyTokenRequest(_Body):
    token: str = Field(min_length=1)
    provider: Optional[str] = None


class ResetPasswordRequestBody(_Body):
    email: str = Field(min_length=1, max_length=255)


class ResetPasswordBody(_Body):
    """Either token (forgot-password flow) or current_password (authenticated change)."""

    new_password: str = Field(alias="newPassword", min_length=1, max_length=256)
    token: Optional[str] = None
    current_password: Optional[str] = Field(default=None, alias="currentPassword")


class VerifyEmailRequest(_Body):
    token: str = Field(min_length=1)


class ResendVerificationRequest(_Body):
    """email is required for anonymous callers; authenticated callers always use their own address."""

    email: Optional[str] = Field(default=None, max_length=255)


class UserPatch(_Body):
    display_name: Optional[str] = Field(default=None, alias="displayName", max_length=255)
    avatar_url: Optional[str] = Field(default=None, alias="avatarUrl", max_length=2048)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class OAuthUrlResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str


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
    components: dict[str, str]
