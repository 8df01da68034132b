"""
auth/tokens.py -- Access-token codec and opaque one-time token helpers.

Security design decisions:
  JWT: python-jose with HS256. Tokens are signed with the shared SECRET_KEY
       and carry sub (user id), email, provider, iat, exp and jti. The codec
       is an instance built once at startup and injected -- there is no
       module-level secret.

       Expiry is checked against the codec's clock rather than python-jose's
       wall clock so providers and tests share one notion of "now".
       verify() distinguishes TokenExpiredError (signature fine, past exp)
       from InvalidTokenError (anything else).

       The provider claim lets each provider reject tokens minted for another
       provider without a network round trip.

  Opaque tokens: secrets.token_hex(32) -- 256 bits of entropy -- for refresh,
       verification and reset tokens. Only hash_token(token) (SHA-256 hex) is
       ever persisted; lookups go by hash. A leaked database yields no usable
       token. SHA-256 (not argon2) is sufficient because the inputs are
       high-entropy random values, not user-chosen secrets.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hashlib
import secrets
import uuid
from collections.abc import Callable
from datetime import datetime, timezone

from jose import JWTError, jwt

from auth.errors import InvalidTokenError, TokenExpiredError
from auth.models import TokenClaims

_ALGORITHM = "HS256"
_REQUIRED_CLAIMS = ("sub", "email", "provider", "iat", "exp", "jti")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Opaque tokens
# ---------------------------------------------------------------------------


def generate_opaque_token() -> str:
    """Return 32 random bytes as 64 hex chars."""
    return secrets.token_hex(32)


def hash_token(token: str) -> str:
    """Return the SHA-256 hex digest used as the at-rest form of any token."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Signed access tokens
# ---------------------------------------------------------------------------


class TokenCodec:
    """Signs and verifies short-lived bearer tokens.

    Usage:
        codec = TokenCodec(settings.secret_key)
        token, claims = codec.issue(user.id, user.email, "local", ttl_seconds=3600)
        claims = codec.verify(token)   # raises InvalidTokenError / TokenExpiredError
    """

    def __init__(self, secret: str, *, clock: Callable[[], datetime] = utcnow) -> None:
        if not secret:
            raise ValueError("A signing secret is required for the token codec")
        self._secret = secret
        self._clock = clock

    def issue(self, subject_id: str, email: str, provider: str, ttl_seconds: int) -> tuple[str, TokenClaims]:
        """Encode a signed token and return it together with its claims."""
        issued_at = int(self._clock().timestamp())
        claims = TokenClaims(
            subject_id=subject_id,
            email=email,
            provider=provider,
            issued_at=issued_at,
            expires_at=issued_at + ttl_seconds,
            token_id=str(uuid.uuid4()),
        )
        payload = {
            "sub": claims.subject_id,
            "email": claims.email,
            "provider": claims.provider,
            "iat": claims.issued_at,
            "exp": claims.expires_at,
            "jti": claims.token_id,
        }
        return jwt.encode(payload, self._secret, algorithm=_ALGORITHM), claims

    def verify(self, token: str) -> TokenClaims:
        """Decode and verify a token. Raises InvalidTokenError or TokenExpiredError."""
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[_ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTError as exc:
            raise InvalidTokenError("Invalid token") from exc

        if any(claim not in payload for claim in _REQUIRED_CLAIMS):
            raise InvalidTokenError("Invalid token")
        try:
            expires_at = int(payload["exp"])
            issued_at = int(payload["iat"])
        except (TypeError, ValueError) as exc:
            raise InvalidTokenError("Invalid token") from exc

        if expires_at <= int(self._clock().timestamp()):
            raise TokenExpiredError()

        return TokenClaims(
            subject_id=str(payload["sub"]),
            email=str(payload["email"]),
            provider=str(payload["provider"]),
            issued_at=issued_at,
            expires_at=expires_at,
            token_id=str(payload["jti"]),
        )

