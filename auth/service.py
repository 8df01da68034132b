"""
auth/service.py -- AuthService: provider registry, dispatch and audit trail.

One AuthService is built at process start (api/main.py lifespan) and stored
on app.state. Nothing here is a module-level singleton; tests build a fresh
instance per case.

Dispatch:
  Write operations go to the active provider unless the caller names one.
  verify_token() without a provider scans every registered provider in
  registration order (local first, then remote) and returns the first valid
  result. A miss therefore still costs one remote /users/me call when the
  remote provider is enabled; that round trip is accepted so remote tokens
  never need a local shape check.

Audit:
  Every state-changing operation appends an AuthEvent. Persisting the event
  is best-effort: a failure is logged and never fails the operation itself.
  Failed sign-ins are recorded as sign_in_failed (plus account_locked when
  the account is locked).

OAuth:
  get_oauth_url() creates a random state, remembers it for
  oauth_state_ttl_seconds under a lock, and returns the authorization URL.
  handle_oauth_callback() consumes the state (single use, must match the
  provider), exchanges the code for a verified identity, links the identity
  to a local user and issues a local session.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from auth.dependencies import create_auth_gate
from auth.email import AuthEmailSender, EmailDispatcher, LoggingEmailSender
from auth.errors import AccountLockedError, AuthError, OAuthError, ProviderError, UserNotFoundError
from auth.models import (
    LOCAL_PROVIDER,
    AuthEvent,
    AuthEventType,
    AuthSession,
    AuthUser,
    PasswordUpdate,
    TokenVerification,
)
from auth.oauth import OAuthClients
from auth.passwords import PasswordHashPool
from auth.providers import AuthProvider, LocalCredentialProvider, RemoteVerifyProvider
from auth.store import CredentialStore
from auth.tokens import TokenCodec, utcnow

logger = logging.getLogger("authcore.auth")


class AuthService:
    """Orchestrates the registered providers.

    Usage:
        service = AuthService.from_settings(settings, store)
        session = await service.sign_in("alice@example.com", "pass1234")
        result = await service.verify_token(session.access_token)
        service.close()
    """

    def __init__(
        self,
        providers: list[AuthProvider],
        store: CredentialStore,
        *,
        active_provider: str = LOCAL_PROVIDER,
        oauth: OAuthClients | None = None,
        oauth_state_ttl_seconds: int = 600,
        require_email_verification: bool = False,
        clock: Callable[[], datetime] = utcnow,
        resources: list[Any] | None = None,
    ) -> None:
        if not providers:
            raise ValueError("At least one auth provider must be enabled")
        self._providers: dict[str, AuthProvider] = {p.name: p for p in providers}
        self.store = store
        self.oauth = oauth or OAuthClients([])
        self.oauth_state_ttl = timedelta(seconds=oauth_state_ttl_seconds)
        self.require_email_verification = require_email_verification
        self.clock = clock
        self._resources = resources or []
        self._oauth_states: dict[str, tuple[str, datetime]] = {}
        self._oauth_lock = threading.Lock()

        if active_provider in self._providers:
            self.active_provider = active_provider
        else:
            fallback = LOCAL_PROVIDER if LOCAL_PROVIDER in self._providers else next(iter(self._providers))
            logger.warning("Active provider %r is not available; falling back to %r", active_provider, fallback)
            self.active_provider = fallback
        logger.info("Auth providers: %s (active: %s)", ", ".join(self._providers), self.active_provider)

    @classmethod
    def from_settings(
        cls,
        settings,
        store: CredentialStore,
        *,
        email_sender: AuthEmailSender | None = None,
        http=None,
        oauth_session_factory=None,
        clock: Callable[[], datetime] = utcnow,
    ) -> AuthService:
        """Wire codec, hasher, email dispatch and providers from Settings."""
        hasher = PasswordHashPool(
            memory_cost=settings.argon2_memory_cost_kib,
            time_cost=settings.argon2_time_cost,
            parallelism=settings.argon2_parallelism,
            max_workers=settings.password_hash_workers,
        )
        emails = EmailDispatcher(
            email_sender or LoggingEmailSender(reveal_links=settings.debug),
            settings.verify_email_link,
            settings.reset_password_link,
            max_workers=settings.email_workers,
        )
        codec = TokenCodec(settings.secret_key, clock=clock)

        providers: list[AuthProvider] = []
        if settings.local_enabled:
            providers.append(
                LocalCredentialProvider(
                    store,
                    codec,
                    hasher,
                    emails,
                    require_email_verification=settings.require_email_verification,
                    access_token_ttl_seconds=settings.access_token_ttl_seconds,
                    session_duration_hours=settings.session_duration_hours,
                    max_failed_attempts=settings.max_failed_attempts,
                    lockout_duration_minutes=settings.lockout_duration_minutes,
                    revoke_access_on_sign_out=settings.revoke_access_on_sign_out,
                    clock=clock,
                )
            )
        if settings.remote_enabled:
            providers.append(
                RemoteVerifyProvider(
                    settings.remote_base_url,
                    store,
                    http=http,
                    timeout=settings.remote_timeout_seconds,
                    clock=clock,
                )
            )

        oauth_kwargs = {"session_factory": oauth_session_factory} if oauth_session_factory else {}
        return cls(
            providers,
            store,
            active_provider=settings.active_provider,
            oauth=OAuthClients.from_settings(settings, **oauth_kwargs),
            oauth_state_ttl_seconds=settings.oauth_state_ttl_seconds,
            require_email_verification=settings.require_email_verification,
            clock=clock,
            resources=[hasher, emails],
        )

    # ------------------------------------------------------------------
    # Provider registry
    # ------------------------------------------------------------------

    def get_active_provider(self) -> AuthProvider:
        return self._providers[self.active_provider]

    def get_provider(self, name: str | None = None) -> AuthProvider:
        """Return the named provider, or the active one when name is None."""
        if name is None:
            return self.get_active_provider()
        provider = self._providers.get(name)
        if provider is None:
            raise ProviderError(f"Auth provider {name!r} is not available", status_code=400)
        return provider

    def is_provider_enabled(self, name: str) -> bool:
        return name in self._providers

    def describe(self) -> dict[str, Any]:
        return {
            "activeProvider": self.active_provider,
            "providers": list(self._providers),
            "features": {
                "emailVerification": self.require_email_verification,
                "signUp": self.get_active_provider().name == LOCAL_PROVIDER,
                "oauth": self.oauth.enabled_providers(),
            },
        }

    # ------------------------------------------------------------------
    # Sign-up / sign-in / sign-out
    # ------------------------------------------------------------------

    async def sign_up(
        self,
        email: str,
        password: str,
        display_name: str | None = None,
        provider: str | None = None,
    ) -> AuthSession:
        auth_provider = self.get_provider(provider)
        session = await auth_provider.sign_up(email, password, display_name)
        self._log_event(AuthEventType.sign_up, auth_provider.name, session.user.id, session.user.email)
        return session

    async def sign_in(self, email: str, password: str, provider: str | None = None) -> AuthSession:
        auth_provider = self.get_provider(provider)
        try:
            session = await auth_provider.sign_in(email, password)
        except AuthError as exc:
            self._log_event(
                AuthEventType.sign_in_failed, auth_provider.name, email=email, metadata={"code": exc.code}
            )
            if isinstance(exc, AccountLockedError):
                self._log_event(
                    AuthEventType.account_locked,
                    auth_provider.name,
                    email=email,
                    metadata={"locked_until": exc.locked_until.isoformat()},
                )
            raise
        self._log_event(AuthEventType.sign_in, auth_provider.name, session.user.id, session.user.email)
        return session

    async def sign_out(self, access_token: str, provider: str | None = None) -> None:
        verification, verified_by = await self._verify(access_token, provider)
        auth_provider = verified_by or self.get_provider(provider)
        await auth_provider.sign_out(access_token)
        if verification.valid and verification.user is not None:
            self._log_event(AuthEventType.sign_out, auth_provider.name, verification.user.id, verification.user.email)

    async def refresh_session(self, refresh_token: str, provider: str | None = None) -> AuthSession:
        auth_provider = self.get_provider(provider)
        session = await auth_provider.refresh_session(refresh_token)
        self._log_event(AuthEventType.token_refresh, auth_provider.name, session.user.id, session.user.email)
        return session

    # ------------------------------------------------------------------
    # Verification and lookup
    # ------------------------------------------------------------------

    async def verify_token(self, access_token: str, provider: str | None = None) -> TokenVerification:
        verification, _ = await self._verify(access_token, provider)
        return verification

    async def get_user(self, user_id: str, provider: str | None = None) -> AuthUser | None:
        if provider is not None:
            return await self.get_provider(provider).get_user(user_id)
        for auth_provider in self._providers.values():
            try:
                user = await auth_provider.get_user(user_id)
            except Exception:
                logger.warning("get_user failed on provider %s", auth_provider.name, exc_info=True)
                continue
            if user is not None:
                return user
        return None

    async def get_user_by_email(self, email: str, provider: str | None = None) -> AuthUser | None:
        if provider is not None:
            return await self.get_provider(provider).get_user_by_email(email)
        for auth_provider in self._providers.values():
            try:
                user = await auth_provider.get_user_by_email(email)
            except Exception:
                logger.warning("get_user_by_email failed on provider %s", auth_provider.name, exc_info=True)
                continue
            if user is not None:
                return user
        return None

    # ------------------------------------------------------------------
    # Passwords and email verification
    # ------------------------------------------------------------------

    async def reset_password_request(self, email: str, provider: str | None = None) -> None:
        auth_provider = self.get_provider(provider)
        await auth_provider.reset_password_request(email)
        self._log_event(AuthEventType.password_reset_request, auth_provider.name, email=email)

    async def reset_password(
        self,
        update: PasswordUpdate,
        user_id: str | None = None,
        provider: str | None = None,
    ) -> None:
        auth_provider = self.get_provider(provider)
        affected = await auth_provider.reset_password(update, user_id)
        event_type = AuthEventType.password_reset_complete if update.token else AuthEventType.password_change
        self._log_event(event_type, auth_provider.name, affected or user_id)

    async def verify_email(self, token: str, provider: str | None = None) -> AuthUser:
        auth_provider = self.get_provider(provider)
        user = await auth_provider.verify_email(token)
        self._log_event(AuthEventType.email_verified, auth_provider.name, user.id, user.email)
        return user

    async def resend_verification_email(
        self,
        email: str,
        *,
        authenticated: bool = False,
        provider: str | None = None,
    ) -> None:
        auth_provider = self.get_provider(provider)
        await auth_provider.resend_verification_email(email, authenticated=authenticated)
        self._log_event(AuthEventType.verification_email_resent, auth_provider.name, email=email)

    # ------------------------------------------------------------------
    # Profile
    # ------------------------------------------------------------------

    async def update_user(
        self,
        user_id: str,
        *,
        display_name: str | None = None,
        avatar_url: str | None = None,
        provider: str | None = None,
    ) -> AuthUser:
        auth_provider = self.get_provider(provider)
        user = await auth_provider.update_user(user_id, display_name=display_name, avatar_url=avatar_url)
        self._log_event(AuthEventType.user_updated, auth_provider.name, user.id, user.email)
        return user

    async def delete_user(self, user_id: str, provider: str | None = None) -> None:
        auth_provider = self.get_provider(provider)
        user = await auth_provider.get_user(user_id)
        if user is None:
            raise UserNotFoundError()
        await auth_provider.delete_user(user_id)
        self._log_event(AuthEventType.user_deleted, auth_provider.name, user_id, user.email)

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    async def get_oauth_url(self, oauth_provider: str, redirect_url: str) -> str:
        """Return the provider authorization URL carrying a fresh CSRF state."""
        state = self._new_oauth_state(oauth_provider)
        if self.oauth.is_configured(oauth_provider):
            return self.oauth.authorization_url(oauth_provider, redirect_url, state)
        return await self.get_active_provider().get_oauth_url(oauth_provider, redirect_url, state)

    async def handle_oauth_callback(
        self,
        oauth_provider: str,
        code: str,
        redirect_url: str,
        state: str | None,
    ) -> AuthSession:
        """Finish an OAuth sign-in. Raises OAuthError on a bad state or unverified identity."""
        if not state or not self._consume_oauth_state(state, oauth_provider):
            raise OAuthError("Invalid or expired OAuth state")

        if not self.oauth.is_configured(oauth_provider):
            active = self.get_active_provider()
            session = await active.handle_oauth_callback(oauth_provider, code, redirect_url)
            self._log_oauth_sign_in(session, active.name, oauth_provider)
            return session

        local = self._providers.get(LOCAL_PROVIDER)
        if not isinstance(local, LocalCredentialProvider):
            raise OAuthError("OAuth sign-in requires the local provider")

        profile = await asyncio.to_thread(self.oauth.fetch_identity, oauth_provider, code, redirect_url)
        user, connected = self.store.link_oauth_identity(
            email=profile.email,
            provider=oauth_provider,
            provider_user_id=profile.subject_id,
            display_name=profile.display_name,
            avatar_url=profile.avatar_url,
            now=self.clock(),
        )
        if connected:
            self._log_event(
                AuthEventType.oauth_connect,
                LOCAL_PROVIDER,
                user.id,
                user.email,
                metadata={"oauth_provider": oauth_provider},
            )
        if user.is_banned:
            raise OAuthError("Account has been disabled", status_code=403)
        session = local.issue_session_for(user)
        self._log_oauth_sign_in(session, LOCAL_PROVIDER, oauth_provider)
        return session

    # ------------------------------------------------------------------
    # HTTP gate and lifecycle
    # ------------------------------------------------------------------

    def create_auth_middleware(self):
        """Return the FastAPI dependency that authenticates a request."""
        return create_auth_gate(self)

    def close(self) -> None:
        for resource in self._resources:
            resource.shutdown()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _verify(
        self, access_token: str, provider: str | None
    ) -> tuple[TokenVerification, AuthProvider | None]:
        if provider is not None:
            auth_provider = self.get_provider(provider)
            verification = await auth_provider.verify_token(access_token)
            return verification, auth_provider if verification.valid else None

        for auth_provider in self._providers.values():
            try:
                verification = await auth_provider.verify_token(access_token)
            except Exception:
                logger.warning("Token verification raised on provider %s", auth_provider.name, exc_info=True)
                continue
            if verification.valid:
                return verification, auth_provider
        return TokenVerification(valid=False, error="Invalid token"), None

    def _new_oauth_state(self, oauth_provider: str) -> str:
        state = secrets.token_urlsafe(32)
        now = self.clock()
        with self._oauth_lock:
            self._prune_oauth_states(now)
            self._oauth_states[state] = (oauth_provider, now + self.oauth_state_ttl)
        return state

    def _consume_oauth_state(self, state: str, oauth_provider: str) -> bool:
        now = self.clock()
        with self._oauth_lock:
            self._prune_oauth_states(now)
            entry = self._oauth_states.pop(state, None)
        return entry is not None and entry[0] == oauth_provider

    def _prune_oauth_states(self, now: datetime) -> None:
        expired = [s for s, (_, expires_at) in self._oauth_states.items() if expires_at <= now]
        for s in expired:
            del self._oauth_states[s]

    def _log_oauth_sign_in(self, session: AuthSession, provider_name: str, oauth_provider: str) -> None:
        self._log_event(
            AuthEventType.sign_in,
            provider_name,
            session.user.id,
            session.user.email,
            metadata={"oauth_provider": oauth_provider},
        )

    def _log_event(
        self,
        event_type: AuthEventType,
        provider: str,
        user_id: str | None = None,
        email: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        try:
            self.store.append_event(
                AuthEvent(event_type=event_type, provider=provider, user_id=user_id, email=email, metadata=metadata or {}),
                now=self.clock(),
            )
        except Exception:
            logger.warning("Failed to log auth event %s", event_type.value, exc_info=True)
