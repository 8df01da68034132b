"""
auth/providers/remote.py -- Provider that delegates credential checks to a remote identity service.

The remote system (a Directus-style API under remote_base_url) owns passwords
and tokens. This provider proxies login/refresh/logout/password calls and
verifies access tokens by calling GET /users/me with the bearer token.

Every successful verification upserts a local shadow User keyed by the
verified email, so the rest of the platform sees one stable user id no matter
which provider authenticated the request. Registration is not exposed:
sign_up() raises ProviderError 501.

HTTP:
  A shared requests.Session with max_redirects=3 (injectable for tests).
  Calls are blocking and run through asyncio.to_thread() so they never stall
  the event loop. Transport errors are logged and reported as an invalid
  verification, or as ProviderError 502 for proxied operations.

  Remote "expires" values are access-token lifetimes in milliseconds;
  expires_at is computed as now_ms + expires.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any

import requests

from auth.errors import InvalidCredentialsError, InvalidRefreshTokenError, InvalidTokenError, ProviderError
from auth.models import REMOTE_PROVIDER, AuthSession, AuthUser, PasswordUpdate, TokenVerification, User
from auth.providers.base import AuthProvider
from auth.store import CredentialStore
from auth.tokens import utcnow

logger = logging.getLogger("authcore.auth.remote")


def _default_session() -> requests.Session:
    session = requests.Session()
    session.max_redirects = 3
    return session


class RemoteVerifyProvider(AuthProvider):
    """Verify-oriented provider backed by a remote identity API.

    Usage:
        provider = RemoteVerifyProvider("https://cms.example.com", store)
        result = await provider.verify_token(bearer)
    """

    name = REMOTE_PROVIDER

    def __init__(
        self,
        base_url: str,
        store: CredentialStore,
        *,
        http: requests.Session | None = None,
        timeout: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not base_url:
            raise ValueError("A base URL is required for the remote provider")
        self.base_url = base_url.rstrip("/")
        self.store = store
        self.http = http or _default_session()
        self.timeout = timeout
        self.clock = clock

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------

    async def sign_up(self, email: str, password: str, display_name: str | None = None) -> AuthSession:
        raise ProviderError("Sign-up is not supported by the remote provider", status_code=501)

    async def sign_in(self, email: str, password: str) -> AuthSession:
        resp = await self._post("/auth/login", {"email": email, "password": password, "mode": "json"})
        if not resp.ok:
            raise InvalidCredentialsError()
        data = _data(resp)
        access_token = data.get("access_token")
        refresh_token = data.get("refresh_token")
        expires = data.get("expires")
        if not access_token or not refresh_token or not expires:
            raise ProviderError("Remote login response missing tokens", status_code=502)
        return await self._session_from(access_token, refresh_token, int(expires))

    async def sign_out(self, access_token: str) -> None:
        try:
            await asyncio.to_thread(
                self.http.post,
                self._url("/auth/logout"),
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.warning("Remote logout failed: %s", exc)

    async def refresh_session(self, refresh_token: str) -> AuthSession:
        resp = await self._post("/auth/refresh", {"refresh_token": refresh_token, "mode": "json"})
        if not resp.ok:
            raise InvalidRefreshTokenError()
        data = _data(resp)
        access_token = data.get("access_token")
        expires = data.get("expires")
        if not access_token or not expires:
            raise ProviderError("Remote refresh response missing tokens", status_code=502)
        return await self._session_from(access_token, data.get("refresh_token") or refresh_token, int(expires))

    async def verify_token(self, access_token: str) -> TokenVerification:
        try:
            resp = await asyncio.to_thread(
                self.http.get,
                self._url("/users/me"),
                headers={"Authorization": f"Bearer {access_token}"},
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            logger.warning("Remote token verification failed: %s", exc)
            return TokenVerification(valid=False, error="Token verification failed")

        if not resp.ok:
            return TokenVerification(valid=False, error="Invalid token")
        remote_user = _data(resp)
        email = remote_user.get("email")
        if not email:
            return TokenVerification(valid=False, error="Invalid token")

        user = self.store.upsert_shadow_user(
            email=email,
            display_name=_display_name(email, remote_user.get("first_name"), remote_user.get("last_name")),
            avatar_url=remote_user.get("avatar"),
            now=self.clock(),
        )
        return TokenVerification(valid=True, user=_auth_user(user))

    async def get_user(self, user_id: str) -> AuthUser | None:
        user = self.store.get_user(user_id)
        return _auth_user(user) if user is not None else None

    async def get_user_by_email(self, email: str) -> AuthUser | None:
        user = self.store.get_user_by_email(email)
        return _auth_user(user) if user is not None else None

    async def reset_password_request(self, email: str) -> None:
        resp = await self._post("/auth/password/request", {"email": email})
        if not resp.ok:
            raise ProviderError("Failed to request password reset", status_code=502)

    async def reset_password(self, update: PasswordUpdate, user_id: str | None = None) -> str | None:
        if not update.token:
            raise ProviderError("Remote password reset requires a reset token", status_code=400)
        resp = await self._post("/auth/password/reset", {"token": update.token, "password": update.new_password})
        if not resp.ok:
            raise ProviderError("Failed to reset password", status_code=502)
        return user_id

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def _post(self, path: str, body: dict[str, Any]) -> requests.Response:
        try:
            return await asyncio.to_thread(self.http.post, self._url(path), json=body, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning("Remote call %s failed: %s", path, exc)
            raise ProviderError("Remote identity service unreachable", status_code=502) from exc

    async def _session_from(self, access_token: str, refresh_token: str, expires_ms: int) -> AuthSession:
        verification = await self.verify_token(access_token)
        if not verification.valid or verification.user is None:
            raise InvalidTokenError("Failed to verify remote token", status_code=401)
        return AuthSession(
            user=verification.user,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=int(self.clock().timestamp() * 1000) + expires_ms,
            provider=self.name,
        )


def _data(resp: requests.Response) -> dict[str, Any]:
    try:
        payload = resp.json()
    except ValueError:
        return {}
    data = payload.get("data") if isinstance(payload, dict) else None
    return data if isinstance(data, dict) else {}


def _display_name(email: str, first_name: str | None, last_name: str | None) -> str:
    name = " ".join(part for part in (first_name, last_name) if part)
    return name or email.split("@")[0]


def _auth_user(user: User) -> AuthUser:
    return AuthUser(
        id=user.id,
        email=user.email,
        email_verified=True,
        created_at=user.created_at or "",
        display_name=user.display_name,
        avatar_url=user.avatar_url,
        updated_at=user.updated_at,
        is_banned=user.is_banned,
    )
