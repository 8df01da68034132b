"""
auth/errors.py -- Typed error taxonomy for the auth core.

Every provider raises these; the orchestrator propagates them untouched (it
only swallows audit-log failures and the "try the next provider" scan in
verify_token). The HTTP layer renders code + message (plus details, when
set) with status_code.

Each class fixes a machine-readable code and a suggested HTTP status. Both can
be overridden per instance -- ProviderError in particular is raised with 400,
501, 502 or 503 depending on what went wrong.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any


class AuthError(Exception):
    """Base class for auth failures mapped to HTTP responses."""

    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    default_message: str = "Authentication error"

    def __init__(
        self,
        message: str | None = None,
        *,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)
        if status_code is not None:
            self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class InvalidCredentialsError(AuthError):
    code = "INVALID_CREDENTIALS"
    status_code = 401
    default_message = "Invalid email or password"


class UserNotFoundError(AuthError):
    code = "USER_NOT_FOUND"
    status_code = 404
    default_message = "User not found"


class UserAlreadyExistsError(AuthError):
    code = "USER_ALREADY_EXISTS"
    status_code = 409
    default_message = "User with this email already exists"


class EmailNotVerifiedError(AuthError):
    code = "EMAIL_NOT_VERIFIED"
    status_code = 403
    default_message = "Please verify your email address before signing in"


class AccountLockedError(AuthError):
    code = "ACCOUNT_LOCKED"
    status_code = 403

    def __init__(self, locked_until: datetime) -> None:
        self.locked_until = locked_until
        super().__init__(
            f"Account is locked. Try again after {locked_until.isoformat(timespec='seconds')}",
            details={"locked_until": locked_until.isoformat()},
        )


class AccountDisabledError(AuthError):
    code = "ACCOUNT_DISABLED"
    status_code = 403
    default_message = "Account has been disabled"


class InvalidTokenError(AuthError):
    code = "INVALID_TOKEN"
    status_code = 400
    default_message = "Invalid or expired token"


class TokenExpiredError(AuthError):
    code = "TOKEN_EXPIRED"
    status_code = 401
    default_message = "Token expired"


class InvalidRefreshTokenError(AuthError):
    code = "INVALID_REFRESH_TOKEN"
    status_code = 401
    default_message = "Invalid refresh token"


class PasswordTooWeakError(AuthError):
    code = "PASSWORD_TOO_WEAK"
    status_code = 400
    default_message = "Password must be at least 8 characters and contain a letter and a number"


class ProviderError(AuthError):
    code = "PROVIDER_ERROR"
    status_code = 503
    default_message = "Auth provider not available"


class OAuthError(AuthError):
    code = "OAUTH_ERROR"
    status_code = 400
    default_message = "OAuth sign-in failed"
