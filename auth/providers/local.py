"""
auth/providers/local.py -- Self-hosted email/password provider.

Owns the whole credential lifecycle against CredentialStore + TokenCodec:
sign-up, sign-in with lockout, session issuance and rotation, one-time
reset/verification tokens.

Security design decisions:
  [C1] Unknown email and wrong password both raise InvalidCredentialsError
       and both pay for one argon2 verify (dummy hash for unknown emails).

  [C2] Lockout is enforced before the password is checked: a locked account
       rejects even the correct password until lockout_until passes. The
       failure counter is incremented atomically in the store and only reset
       by a successful sign-in or a password reset, so the first failure after
       a lockout expires locks the account again.

  [C3] EmailNotVerifiedError is raised only after a correct password, so the
       check cannot be used to discover unverified accounts without the password.

  [C4] Refresh tokens are single use. rotate_session() deactivates the
       presented session and inserts its successor in one transaction; a
       replay (concurrent or later) finds no active row and fails.

  [C5] verify_token() re-reads the user on every call so bans, edits and
       deletions take effect immediately. With revoke_access_on_sign_out the
       access token must also still belong to an active Session.

  Enumeration: reset_password_request() and resend_verification_email()
       return normally for unknown emails.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError

from auth.email import EmailDispatcher
from auth.errors import (
    AccountDisabledError,
    AccountLockedError,
    EmailNotVerifiedError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    InvalidTokenError,
    OAuthError,
    ProviderError,
    TokenExpiredError,
    UserAlreadyExistsError,
    UserNotFoundError,
)
from auth.models import (
    LOCAL_PROVIDER,
    AuthSession,
    AuthUser,
    PasswordCredential,
    PasswordUpdate,
    Session,
    TokenVerification,
    User,
)
from auth.passwords import PasswordHashPool, validate_password_strength
from auth.providers.base import AuthProvider
from auth.store import CredentialStore, normalize_email
from auth.tokens import TokenCodec, generate_opaque_token, hash_token, utcnow

logger = logging.getLogger("authcore.auth.local")

VERIFICATION_TOKEN_TTL = timedelta(hours=24)
RESET_TOKEN_TTL = timedelta(hours=1)


class LocalCredentialProvider(AuthProvider):
    """Password provider backed by the local database.

    Usage:
        provider = LocalCredentialProvider(store, codec, hasher, emails)
        session = await provider.sign_up("alice@example.com", "pass1234")
        result = await provider.verify_token(session.access_token)
    """

    name = LOCAL_PROVIDER

    def __init__(
        self,
        store: CredentialStore,
        codec: TokenCodec,
        hasher: PasswordHashPool,
        emails: EmailDispatcher,
        *,
        require_email_verification: bool = False,
        access_token_ttl_seconds: int = 3600,
        session_duration_hours: int = 168,
        max_failed_attempts: int = 5,
        lockout_duration_minutes: int = 30,
        revoke_access_on_sign_out: bool = True,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.codec = codec
        self.hasher = hasher
        self.emails = emails
        self.require_email_verification = require_email_verification
        self.access_token_ttl_seconds = access_token_ttl_seconds
        self.session_duration = timedelta(hours=session_duration_hours)
        self.max_failed_attempts = max_failed_attempts
        self.lockout_duration = timedelta(minutes=lockout_duration_minutes)
        self.revoke_access_on_sign_out = revoke_access_on_sign_out
        self.clock = clock

    # ------------------------------------------------------------------
    # Sign-up / sign-in
    # ------------------------------------------------------------------

    async def sign_up(self, email: str, password: str, display_name: str | None = None) -> AuthSession:
        email = normalize_email(email)
        if self.store.get_user_by_email(email) is not None:
            raise UserAlreadyExistsError()
        validate_password_strength(password)

        password_hash = await self.hasher.hash(password)
        verification_token = generate_opaque_token()
        now = self.clock()
        try:
            user = self.store.create_user_with_credential(
                email=email,
                display_name=display_name or email.split("@")[0],
                password_hash=password_hash,
                verification_token_hash=hash_token(verification_token),
                verification_expires_at=now + VERIFICATION_TOKEN_TTL,
                now=now,
            )
        except IntegrityError as exc:
            # Lost a race with a concurrent sign-up for the same email.
            raise UserAlreadyExistsError() from exc

        self.emails.send_verification(email, verification_token)
        logger.info("Local user created: %s", user.id)
        return self._issue_session(user, email_verified=False)

    async def sign_in(self, email: str, password: str) -> AuthSession:
        user = self.store.get_user_by_email(email)
        credential = self.store.get_credential(user.id) if user is not None else None
        if user is None or credential is None:
            await self.hasher.verify_dummy(password)
            raise InvalidCredentialsError()

        now = self.clock()
        if credential.lockout_until is not None and credential.lockout_until > now:
            raise AccountLockedError(credential.lockout_until)
        if user.is_banned:
            raise AccountDisabledError()

        if not await self.hasher.verify(credential.password_hash, password):
            attempts, locked_until = self.store.record_failed_attempt(
                user.id,
                max_attempts=self.max_failed_attempts,
                lockout_until=now + self.lockout_duration,
                now=now,
            )
            if locked_until is not None and locked_until > now and attempts >= self.max_failed_attempts:
                logger.warning("Account %s locked after %d failed attempts", user.id, attempts)
            raise InvalidCredentialsError()

        if self.require_email_verification and not credential.email_verified:
            raise EmailNotVerifiedError()

        self.store.record_successful_sign_in(user.id, now=now)
        if self.hasher.needs_rehash(credential.password_hash):
            self.store.update_password_hash(user.id, await self.hasher.hash(password), now=now)
            logger.info("Re-hashed password for %s with current parameters", user.id)

        return self._issue_session(user, email_verified=credential.email_verified)

    async def sign_out(self, access_token: str) -> None:
        try:
            claims = self.codec.verify(access_token)
        except (InvalidTokenError, TokenExpiredError):
            return
        if claims.provider != self.name:
            return
        count = self.store.deactivate_user_sessions(claims.subject_id, now=self.clock())
        logger.info("Signed out %s (%d sessions deactivated)", claims.subject_id, count)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def refresh_session(self, refresh_token: str) -> AuthSession:
        now = self.clock()
        current = self.store.get_active_session_by_refresh_hash(hash_token(refresh_token))
        if current is None:
            raise InvalidRefreshTokenError()
        if current.expires_at <= now:
            self.store.deactivate_session(current.id, now=now)
            raise TokenExpiredError("Refresh token expired")

        user = self.store.get_user(current.user_id)
        if user is None:
            raise InvalidRefreshTokenError()
        if user.is_banned:
            raise AccountDisabledError()

        session, record = self._mint_session(user, self._email_verified(user))
        if not self.store.rotate_session(current.id, record, now=now):
            raise InvalidRefreshTokenError()
        return session

    async def verify_token(self, access_token: str) -> TokenVerification:
        try:
            claims = self.codec.verify(access_token)
        except TokenExpiredError:
            return TokenVerification(valid=False, error="Token expired")
        except InvalidTokenError:
            return TokenVerification(valid=False, error="Invalid token")

        if claims.provider != self.name:
            return TokenVerification(valid=False, error="Token not issued by this provider")

        user = self.store.get_user(claims.subject_id)
        if user is None:
            return TokenVerification(valid=False, error="User not found")
        if self.revoke_access_on_sign_out and not self.store.is_access_token_active(
            hash_token(access_token), now=self.clock()
        ):
            return TokenVerification(valid=False, error="Session revoked")

        return TokenVerification(
            valid=True,
            user=self._to_auth_user(user, self.store.get_credential(user.id)),
            expires_at=claims.expires_at * 1000,
        )

    def issue_session_for(self, user: User) -> AuthSession:
        """Issue a local session for an already authenticated user (OAuth sign-in)."""
        return self._issue_session(user, email_verified=self._email_verified(user))

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    async def get_user(self, user_id: str) -> AuthUser | None:
        user = self.store.get_user(user_id)
        if user is None:
            return None
        return self._to_auth_user(user, self.store.get_credential(user.id))

    async def get_user_by_email(self, email: str) -> AuthUser | None:
        user = self.store.get_user_by_email(email)
        if user is None:
            return None
        return self._to_auth_user(user, self.store.get_credential(user.id))

    async def update_user(
        self,
        user_id: str,
        *,
        display_name: str | None = None,
        avatar_url: str | None = None,
    ) -> AuthUser:
        if not self.store.update_user_profile(
            user_id, now=self.clock(), display_name=display_name, avatar_url=avatar_url
        ):
            raise UserNotFoundError()
        return await self.get_user(user_id)  # type: ignore[return-value]

    async def delete_user(self, user_id: str) -> None:
        if not self.store.delete_user(user_id):
            raise UserNotFoundError()
        logger.info("Local user deleted: %s", user_id)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    async def reset_password_request(self, email: str) -> None:
        user = self.store.get_user_by_email(email)
        if user is None or self.store.get_credential(user.id) is None:
            return
        token = generate_opaque_token()
        now = self.clock()
        self.store.set_reset_token(user.id, hash_token(token), now + RESET_TOKEN_TTL, now=now)
        self.emails.send_password_reset(user.email, token)

    async def reset_password(self, update: PasswordUpdate, user_id: str | None = None) -> str | None:
        validate_password_strength(update.new_password)

        if update.token:
            new_hash = await self.hasher.hash(update.new_password)
            reset_user_id = self.store.consume_reset_token(hash_token(update.token), new_hash, now=self.clock())
            if reset_user_id is None:
                raise InvalidTokenError("Invalid or expired reset token")
            return reset_user_id

        if update.current_password and user_id:
            credential = self.store.get_credential(user_id)
            if credential is None:
                raise UserNotFoundError()
            if not await self.hasher.verify(credential.password_hash, update.current_password):
                raise InvalidCredentialsError("Current password is incorrect")
            self.store.update_password_hash(user_id, await self.hasher.hash(update.new_password), now=self.clock())
            return user_id

        raise InvalidCredentialsError("A reset token or the current password is required", status_code=400)

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    async def verify_email(self, token: str) -> AuthUser:
        user_id = self.store.consume_verification_token(hash_token(token), now=self.clock())
        if user_id is None:
            raise InvalidTokenError("Invalid or expired verification token")
        user = self.store.get_user(user_id)
        if user is None:
            raise UserNotFoundError()
        self.emails.send_welcome(user.email, user.display_name)
        return self._to_auth_user(user, self.store.get_credential(user_id))

    async def resend_verification_email(self, email: str, *, authenticated: bool = False) -> None:
        user = self.store.get_user_by_email(email)
        credential = self.store.get_credential(user.id) if user is not None else None
        if user is None or credential is None:
            return
        if credential.email_verified:
            if authenticated:
                raise ProviderError("Email is already verified", status_code=400)
            return
        token = generate_opaque_token()
        now = self.clock()
        self.store.set_verification_token(user.id, hash_token(token), now + VERIFICATION_TOKEN_TTL, now=now)
        self.emails.send_verification(user.email, token)

    # ------------------------------------------------------------------
    # OAuth is handled by the orchestrator's client registry
    # ------------------------------------------------------------------

    async def get_oauth_url(self, oauth_provider: str, redirect_url: str, state: str) -> str:
        raise OAuthError(f"OAuth provider {oauth_provider!r} is not configured")

    async def handle_oauth_callback(self, oauth_provider: str, code: str, redirect_url: str) -> AuthSession:
        raise OAuthError(f"OAuth provider {oauth_provider!r} is not configured")

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _issue_session(self, user: User, *, email_verified: bool) -> AuthSession:
        session, record = self._mint_session(user, email_verified)
        self.store.create_session(record, now=self.clock())
        return session

    def _mint_session(self, user: User, email_verified: bool) -> tuple[AuthSession, Session]:
        """Build the plaintext pair for the caller and the hashed row for the store."""
        access_token, claims = self.codec.issue(user.id, user.email, self.name, self.access_token_ttl_seconds)
        refresh_token = generate_opaque_token()
        record = Session(
            user_id=user.id,
            access_token_hash=hash_token(access_token),
            refresh_token_hash=hash_token(refresh_token),
            expires_at=self.clock() + self.session_duration,
        )
        session = AuthSession(
            user=_auth_user(user, email_verified),
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=claims.expires_at * 1000,
            provider=self.name,
        )
        return session, record

    def _email_verified(self, user: User) -> bool:
        return _is_verified(self.store.get_credential(user.id))

    def _to_auth_user(self, user: User, credential: PasswordCredential | None) -> AuthUser:
        return _auth_user(user, _is_verified(credential))


def _is_verified(credential: PasswordCredential | None) -> bool:
    # Users without a password credential came from OAuth or a remote
    # provider, both of which only hand over verified emails.
    return credential.email_verified if credential is not None else True


def _auth_user(user: User, email_verified: bool) -> AuthUser:
    return AuthUser(
        id=user.id,
        email=user.email,
        email_verified=email_verified,
        created_at=user.created_at or "",
        display_name=user.display_name,
        avatar_url=user.avatar_url,
        updated_at=user.updated_at,
        is_banned=user.is_banned,
    )
