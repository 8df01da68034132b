"""
tests/conftest.py -- Shared test fixtures for authcore.

This module provides:
  - FakeClock: a controllable clock injected into codec, providers and service
  - RecordingEmailSender: captures every email the dispatcher sends
  - store / local_provider / service: fresh instances per test over a SQLite
    file in tmp_path
  - api_client: TestClient over the real FastAPI app with a patched lifespan

Design: SQLite files in tmp_path rather than ':memory:' because argon2 work
and TestClient route handlers run on other threads; a file DB presents the
same schema to every connection.

Argon2 runs with deliberately tiny parameters here (the production floor is
enforced by core.config, which these fixtures bypass) so the suite stays
fast. test_passwords.py covers the production defaults separately.

The DEBUG env var must be set before any api/ import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

# CRITICAL: Set DEBUG before any api/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.email import EmailDispatcher
from auth.oauth import OAuthClients
from auth.passwords import PasswordHashPool
from auth.providers import LocalCredentialProvider
from auth.service import AuthService
from auth.store import CredentialStore
from auth.tokens import TokenCodec

TEST_SECRET = "test-secret-key-that-is-at-least-32-characters"
VERIFY_URL = "https://app.example.com/auth/verify-email"
RESET_URL = "https://app.example.com/auth/reset-password"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingEmailSender:
    """AuthEmailSender that records (kind, email, url_or_name) tuples."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str, str | None]] = []

    def send_verification_email(self, email: str, url: str) -> None:
        self.sent.append(("verification", email, url))

    def send_password_reset_email(self, email: str, url: str) -> None:
        self.sent.append(("password_reset", email, url))

    def send_welcome_email(self, email: str, display_name: str | None) -> None:
        self.sent.append(("welcome", email, display_name))

    def last(self, kind: str) -> tuple[str, str, str | None]:
        return [m for m in self.sent if m[0] == kind][-1]

    def last_token(self, kind: str) -> str:
        """Extract the plaintext token from the most recent link of this kind."""
        url = self.last(kind)[2]
        return url.split("token=", 1)[1]


def fast_hasher() -> PasswordHashPool:
    return PasswordHashPool(memory_cost=1024, time_cost=1, parallelism=1, max_workers=2)


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path) -> Generator[CredentialStore, None, None]:
    s = CredentialStore(f"sqlite:///{tmp_path / 'auth.db'}")
    yield s
    s.close()


@pytest.fixture
def sender() -> RecordingEmailSender:
    return RecordingEmailSender()


@pytest.fixture
def emails(sender) -> Generator[EmailDispatcher, None, None]:
    dispatcher = EmailDispatcher(sender, VERIFY_URL, RESET_URL, max_workers=1)
    yield dispatcher
    dispatcher.shutdown()


@pytest.fixture
def hasher() -> Generator[PasswordHashPool, None, None]:
    pool = fast_hasher()
    yield pool
    pool.shutdown()


@pytest.fixture
def codec(clock) -> TokenCodec:
    return TokenCodec(TEST_SECRET, clock=clock)


@pytest.fixture
def make_local(store, codec, hasher, emails, clock):
    """Factory for LocalCredentialProvider with overridable options."""

    def _make(**overrides) -> LocalCredentialProvider:
        return LocalCredentialProvider(store, codec, hasher, emails, clock=clock, **overrides)

    return _make


@pytest.fixture
def local_provider(make_local) -> LocalCredentialProvider:
    return make_local()


@pytest.fixture
def service(local_provider, store, clock) -> AuthService:
    return AuthService([local_provider], store, oauth=OAuthClients([]), clock=clock)


# ---------------------------------------------------------------------------
# API fixture
# ---------------------------------------------------------------------------


def _patch_lifespan(store: CredentialStore, service: AuthService):
    """Return an async context manager that replaces the real lifespan.

    Wires the pre-built test store and service into app.state so TestClient
    routes hit real handlers over an isolated database.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.credential_store = store
        app.state.auth_service = service
        app.state.auth_gate = service.create_auth_middleware()
        yield

    return test_lifespan


@pytest.fixture
def api_client(tmp_path, sender) -> Generator[tuple[TestClient, AuthService, RecordingEmailSender], None, None]:
    """Yield (client, service, sender) for API integration tests.

    Rate limiting is disabled so repeated sign-in attempts in one test do
    not trip the limiter.
    """
    api_store = CredentialStore(f"sqlite:///{tmp_path / 'api.db'}")
    pool = fast_hasher()
    dispatcher = EmailDispatcher(sender, VERIFY_URL, RESET_URL, max_workers=1)
    provider = LocalCredentialProvider(api_store, TokenCodec(TEST_SECRET), pool, dispatcher)
    api_service = AuthService([provider], api_store, oauth=OAuthClients([]), resources=[pool, dispatcher])

    app.router.lifespan_context = _patch_lifespan(api_store, api_service)
    limiter.enabled = False

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, api_service, sender

    limiter.enabled = True
    api_service.close()
    api_store.close()
