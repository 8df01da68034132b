"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; the store, providers and routes do the work.

Two families live here:
  Persistence entities -- User, PasswordCredential, Session, OAuthIdentity,
      AuthEvent. Mirrors of the rows in auth/store.py.
  Provider contract values -- AuthUser, AuthSession, TokenClaims,
      TokenVerification, PasswordUpdate. What providers return to the
      orchestrator and what the HTTP layer serializes.

Timestamps used in comparisons (expiries, lockouts) are timezone-aware
datetimes. created_at / updated_at are ISO-8601 strings because they are
only ever displayed.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

LOCAL_PROVIDER = "local"
REMOTE_PROVIDER = "remote"


class AuthEventType(str, Enum):
    sign_up = "sign_up"
    sign_in = "sign_in"
    sign_in_failed = "sign_in_failed"
    sign_out = "sign_out"
    token_refresh = "token_refresh"
    password_reset_request = "password_reset_request"
    password_reset_complete = "password_reset_complete"
    password_change = "password_change"
    email_verified = "email_verified"
    verification_email_resent = "verification_email_resent"
    account_locked = "account_locked"
    oauth_connect = "oauth_connect"
    user_updated = "user_updated"
    user_deleted = "user_deleted"


# ---------------------------------------------------------------------------
# Persistence entities
# ---------------------------------------------------------------------------


@dataclass
class User:
    """Provider-agnostic profile. email is stored lowercased and is unique.

    is_banned is the ban flag owned by the wider platform; the auth core only
    reads it (and the store exposes set_banned() for admin tooling/tests).
    """

    id: str
    email: str
    display_name: str | None = None
    avatar_url: str | None = None
    is_banned: bool = False
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class PasswordCredential:
    """Local password record, 1:1 with a User.

    Every *_token_hash field is a SHA-256 hex digest; plaintext tokens are
    never persisted.
    """

    user_id: str
    password_hash: str
    email_verified: bool = False
    failed_attempts: int = 0
    lockout_until: datetime | None = None
    verification_token_hash: str | None = None
    verification_expires_at: datetime | None = None
    reset_token_hash: str | None = None
    reset_expires_at: datetime | None = None
    last_login_at: datetime | None = None


@dataclass
class Session:
    """One issued access/refresh pair. Only is_active ever transitions."""

    user_id: str
    access_token_hash: str
    refresh_token_hash: str
    expires_at: datetime
    id: str | None = None
    is_active: bool = True
    created_at: str | None = None


@dataclass
class OAuthIdentity:
    user_id: str
    provider: str  # "github", "google"
    provider_user_id: str
    created_at: str | None = None


@dataclass
class AuthEvent:
    """Append-only audit record."""

    event_type: AuthEventType
    provider: str
    user_id: str | None = None
    email: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    id: int | None = None
    created_at: str | None = None


# ---------------------------------------------------------------------------
# Provider contract values
# ---------------------------------------------------------------------------


@dataclass
class AuthUser:
    id: str
    email: str
    email_verified: bool
    created_at: str
    display_name: str | None = None
    avatar_url: str | None = None
    updated_at: str | None = None
    is_banned: bool = False

    def to_wire(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "email": self.email,
            "emailVerified": self.email_verified,
            "createdAt": self.created_at,
        }
        if self.display_name is not None:
            payload["displayName"] = self.display_name
        if self.avatar_url is not None:
            payload["avatarUrl"] = self.avatar_url
        if self.updated_at is not None:
            payload["updatedAt"] = self.updated_at
        return payload


@dataclass
class AuthSession:
    """Token pair handed to the caller exactly once.

    expires_at is the access-token expiry in epoch milliseconds.
    """

    user: AuthUser
    access_token: str
    refresh_token: str
    expires_at: int
    provider: str
    token_type: str = "Bearer"

    def to_wire(self) -> dict[str, Any]:
        return {
            "user": self.user.to_wire(),
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "expiresAt": self.expires_at,
            "tokenType": self.token_type,
            "provider": self.provider,
        }


@dataclass(frozen=True)
class TokenClaims:
    """Decoded access-token payload. issued_at / expires_at are epoch seconds."""

    subject_id: str
    email: str
    provider: str
    issued_at: int
    expires_at: int
    token_id: str


@dataclass
class TokenVerification:
    valid: bool
    user: AuthUser | None = None
    error: str | None = None
    expires_at: int | None = None  # epoch milliseconds


@dataclass
class PasswordUpdate:
    """Either a reset token (forgot-password) or the current password (change)."""

    new_password: str
    token: str | None = None
    current_password: str | None = None
