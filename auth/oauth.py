"""
auth/oauth.py -- Authlib OAuth 2.0 client configuration for social sign-in.

Built from Settings by the orchestrator at startup. Only providers with both
client ID and secret configured are registered -- GET /api/v1/auth/providers
lists them via enabled_providers().

Security notes:
  [H1] Email verification is mandatory. fetch_identity() raises OAuthError if
       the provider does not confirm the email is verified. An unverified
       email from GitHub could belong to an attacker who added a victim's
       address without confirming it.

  The OAuth state parameter (CSRF protection) is generated and validated by
  the orchestrator, which holds pending states in memory with an expiry. This
  module only passes the value through to the authorization URL.

Supported providers:
  github  -- Authorization code flow; static endpoints.
  google  -- Authorization code flow; OIDC userinfo endpoint.
  discord -- Authorization code flow; /users/@me carries email + verified.

The HTTP work is synchronous (authlib's requests integration). Callers on the
event loop run fetch_identity() through asyncio.to_thread().

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from authlib.integrations.base_client import OAuthError as AuthlibOAuthError
from authlib.integrations.requests_client import OAuth2Session
from requests import RequestException

from auth.errors import OAuthError

logger = logging.getLogger("authcore.auth.oauth")

_TIMEOUT_SECONDS = 10


@dataclass(frozen=True)
class OAuthProviderConfig:
    name: str
    label: str
    client_id: str
    client_secret: str
    authorize_url: str
    token_url: str
    scope: str


@dataclass
class OAuthProfile:
    """Normalized identity returned by a provider after code exchange."""

    email: str
    subject_id: str
    display_name: str | None = None
    avatar_url: str | None = None


_GITHUB = {
    "label": "GitHub",
    "authorize_url": "https://github.com/login/oauth/authorize",
    "token_url": "https://github.com/login/oauth/access_token",  # noqa: S105 -- URL, not a password
    "scope": "read:user user:email",
}
_GITHUB_API = "https://api.github.com"

_GOOGLE = {
    "label": "Google",
    "authorize_url": "https://accounts.google.com/o/oauth2/v2/auth",
    "token_url": "https://oauth2.googleapis.com/token",  # noqa: S105 -- URL, not a password
    "scope": "openid email profile",
}
_GOOGLE_USERINFO = "https://openidconnect.googleapis.com/v1/userinfo"

_DISCORD = {
    "label": "Discord",
    "authorize_url": "https://discord.com/oauth2/authorize",
    "token_url": "https://discord.com/api/oauth2/token",  # noqa: S105 -- URL, not a password
    "scope": "identify email",
}
_DISCORD_API = "https://discord.com/api"
_DISCORD_CDN = "https://cdn.discordapp.com"


class OAuthClients:
    """Registry of configured OAuth providers.

    Usage:
        clients = OAuthClients.from_settings(settings)
        url = clients.authorization_url("github", redirect_url, state)
        profile = clients.fetch_identity("github", code, redirect_url)

    session_factory builds the authlib client; tests pass a MagicMock.
    """

    def __init__(
        self,
        providers: list[OAuthProviderConfig],
        *,
        session_factory: Callable[..., OAuth2Session] = OAuth2Session,
    ) -> None:
        self._providers = {p.name: p for p in providers}
        self._session_factory = session_factory

    @classmethod
    def from_settings(cls, settings, **kwargs) -> OAuthClients:
        providers: list[OAuthProviderConfig] = []
        if settings.github_client_id and settings.github_client_secret:
            providers.append(
                OAuthProviderConfig(
                    name="github",
                    client_id=settings.github_client_id,
                    client_secret=settings.github_client_secret,
                    **_GITHUB,
                )
            )
            logger.info("GitHub OAuth provider registered")
        if settings.google_client_id and settings.google_client_secret:
            providers.append(
                OAuthProviderConfig(
                    name="google",
                    client_id=settings.google_client_id,
                    client_secret=settings.google_client_secret,
                    **_GOOGLE,
                )
            )
            logger.info("Google OAuth provider registered")
        if settings.discord_client_id and settings.discord_client_secret:
            providers.append(
                OAuthProviderConfig(
                    name="discord",
                    client_id=settings.discord_client_id,
                    client_secret=settings.discord_client_secret,
                    **_DISCORD,
                )
            )
            logger.info("Discord OAuth provider registered")
        return cls(providers, **kwargs)

    def is_configured(self, name: str) -> bool:
        return name in self._providers

    def enabled_providers(self) -> list[dict]:
        """Return [{"name": ..., "label": ...}] for every configured provider."""
        return [{"name": p.name, "label": p.label} for p in self._providers.values()]

    def authorization_url(self, name: str, redirect_url: str, state: str) -> str:
        cfg = self._get(name)
        client = self._client(cfg, redirect_url)
        url, _ = client.create_authorization_url(cfg.authorize_url, state=state)
        return url

    def fetch_identity(self, name: str, code: str, redirect_url: str) -> OAuthProfile:
        """Exchange the authorization code and return the verified identity [H1].

        Raises OAuthError on any exchange failure or when no verified email
        can be confirmed.
        """
        cfg = self._get(name)
        client = self._client(cfg, redirect_url)
        try:
            client.fetch_token(cfg.token_url, code=code, timeout=_TIMEOUT_SECONDS)
            return _PROFILE_FETCHERS[name](client)
        except (AuthlibOAuthError, RequestException, KeyError, ValueError) as exc:
            logger.warning("OAuth code exchange failed for %s: %s", name, exc)
            raise OAuthError(f"{cfg.label} sign-in failed") from exc

    def _get(self, name: str) -> OAuthProviderConfig:
        cfg = self._providers.get(name)
        if cfg is None:
            raise OAuthError(f"OAuth provider {name!r} is not configured")
        return cfg

    def _client(self, cfg: OAuthProviderConfig, redirect_url: str) -> OAuth2Session:
        return self._session_factory(
            cfg.client_id,
            cfg.client_secret,
            scope=cfg.scope,
            redirect_uri=redirect_url,
        )


# ---------------------------------------------------------------------------
# Provider-specific profile extraction [H1]
# ---------------------------------------------------------------------------


def _get_github_profile(client) -> OAuthProfile:
    """GitHub does not include the email in the token response.

    Two API calls are required:
      1. GET /user -- numeric user ID (stable subject), name, avatar.
      2. GET /user/emails -- the primary verified email.

    Only the entry with both primary=true AND verified=true is accepted.
    """
    resp = client.get(f"{_GITHUB_API}/user", timeout=_TIMEOUT_SECONDS)
    resp.raise_for_status()
    profile = resp.json()

    emails_resp = client.get(f"{_GITHUB_API}/user/emails", timeout=_TIMEOUT_SECONDS)
    emails_resp.raise_for_status()

    email: str | None = None
    for entry in emails_resp.json():
        if entry.get("primary") and entry.get("verified"):
            email = entry["email"]
            break

    if not email:
        raise OAuthError(
            "GitHub account has no primary verified email. "
            "Verify your email address on GitHub before signing in."
        )

    return OAuthProfile(
        email=email,
        subject_id=str(profile["id"]),
        display_name=profile.get("name") or profile.get("login"),
        avatar_url=profile.get("avatar_url"),
    )


def _get_google_profile(client) -> OAuthProfile:
    """Google userinfo; the email is only accepted when email_verified is true.

    A missing email_verified claim counts as unverified.
    """
    resp = client.get(_GOOGLE_USERINFO, timeout=_TIMEOUT_SECONDS)
    resp.raise_for_status()
    userinfo = resp.json()

    if not userinfo.get("email_verified", False):
        raise OAuthError("Google account email is not verified")

    email = userinfo.get("email")
    subject_id = userinfo.get("sub")
    if not email or not subject_id:
        raise OAuthError("Google sign-in returned no email or subject")

    return OAuthProfile(
        email=email,
        subject_id=str(subject_id),
        display_name=userinfo.get("name"),
        avatar_url=userinfo.get("picture"),
    )


def _get_discord_profile(client) -> OAuthProfile:
    """Discord returns email and a verified flag on /users/@me (email scope)."""
    resp = client.get(f"{_DISCORD_API}/users/@me", timeout=_TIMEOUT_SECONDS)
    resp.raise_for_status()
    profile = resp.json()

    email = profile.get("email")
    if not email or not profile.get("verified", False):
        raise OAuthError("Discord account has no verified email")

    avatar_url = None
    if profile.get("avatar"):
        avatar_url = f"{_DISCORD_CDN}/avatars/{profile['id']}/{profile['avatar']}.png"

    return OAuthProfile(
        email=email,
        subject_id=str(profile["id"]),
        display_name=profile.get("global_name") or profile.get("username"),
        avatar_url=avatar_url,
    )


_PROFILE_FETCHERS: dict[str, Callable[..., OAuthProfile]] = {
    "github": _get_github_profile,
    "google": _get_google_profile,
    "discord": _get_discord_profile,
}
