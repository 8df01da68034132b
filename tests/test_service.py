"""
tests/test_service.py -- AuthService orchestration.

Covers:
  - from_settings wiring: registration order, active-provider fallback
  - provider lookup and describe()
  - audit events for every state-changing operation, including failed sign-ins
  - audit failures never fail the operation
  - verify_token: named delegation and the ordered fallback scan
  - OAuth state lifecycle and callback linking
"""

from __future__ import annotations

import asyncio
from unittest.mock import MagicMock

import pytest

from auth.errors import AccountLockedError, InvalidCredentialsError, OAuthError, ProviderError
from auth.models import AuthEventType, PasswordUpdate
from auth.oauth import OAuthClients, OAuthProviderConfig
from auth.providers import RemoteVerifyProvider
from auth.service import AuthService
from core.config import Settings

EMAIL = "alice@example.com"
PASSWORD = "pass1234"
SECRET = "service-test-secret-key-at-least-32-chars"


def run(coro):
    return asyncio.run(coro)


def _events(store) -> list[AuthEventType]:
    return [e.event_type for e in reversed(store.list_events())]


def _response(ok: bool = True, payload: dict | None = None) -> MagicMock:
    resp = MagicMock()
    resp.ok = ok
    resp.json.return_value = payload or {}
    return resp


@pytest.fixture
def remote_http() -> MagicMock:
    http = MagicMock()
    http.get.return_value = _response(ok=False)
    return http


@pytest.fixture
def two_provider_service(local_provider, store, clock, remote_http) -> AuthService:
    remote = RemoteVerifyProvider("https://cms.example.com", store, http=remote_http, clock=clock)
    return AuthService([local_provider, remote], store, clock=clock)


class TestWiring:
    def test_from_settings_local_only(self, store) -> None:
        service = AuthService.from_settings(Settings(debug=True, secret_key=SECRET), store)
        try:
            assert service.active_provider == "local"
            assert service.is_provider_enabled("local") is True
            assert service.is_provider_enabled("remote") is False
        finally:
            service.close()

    def test_from_settings_registration_order(self, store) -> None:
        settings = Settings(
            debug=True,
            secret_key=SECRET,
            remote_enabled=True,
            remote_base_url="https://cms.example.com",
            active_provider="remote",
        )
        service = AuthService.from_settings(settings, store, http=MagicMock())
        try:
            assert service.describe()["providers"] == ["local", "remote"]
            assert service.get_active_provider().name == "remote"
        finally:
            service.close()

    def test_unavailable_active_provider_falls_back_to_local(self, store) -> None:
        settings = Settings(debug=True, secret_key=SECRET, active_provider="remote")
        service = AuthService.from_settings(settings, store)
        try:
            assert service.active_provider == "local"
        finally:
            service.close()

    def test_no_providers_rejected(self, store) -> None:
        with pytest.raises(ValueError):
            AuthService([], store)

    def test_unknown_provider(self, service) -> None:
        with pytest.raises(ProviderError) as exc_info:
            service.get_provider("saml")
        assert exc_info.value.status_code == 400

    def test_describe(self, service) -> None:
        info = service.describe()
        assert info["activeProvider"] == "local"
        assert info["providers"] == ["local"]
        assert info["features"]["signUp"] is True
        assert info["features"]["oauth"] == []


class TestAuditTrail:
    def test_sign_up_and_sign_in_logged(self, service, store) -> None:
        session = run(service.sign_up(EMAIL, PASSWORD))
        run(service.sign_in(EMAIL, PASSWORD))
        events = store.list_events(user_id=session.user.id)
        assert [e.event_type for e in reversed(events)] == [AuthEventType.sign_up, AuthEventType.sign_in]
        assert all(e.provider == "local" for e in events)

    def test_failed_sign_in_and_lockout_logged(self, service, store) -> None:
        run(service.sign_up(EMAIL, PASSWORD))
        for _ in range(5):
            with pytest.raises(InvalidCredentialsError):
                run(service.sign_in(EMAIL, "wrong1234"))
        with pytest.raises(AccountLockedError):
            run(service.sign_in(EMAIL, PASSWORD))

        events = store.list_events()
        failed = [e for e in events if e.event_type == AuthEventType.sign_in_failed]
        assert len(failed) == 6
        assert {e.metadata["code"] for e in failed} == {"INVALID_CREDENTIALS", "ACCOUNT_LOCKED"}
        assert events[0].event_type == AuthEventType.account_locked
        assert events[0].email == EMAIL

    def test_session_lifecycle_logged(self, service, store) -> None:
        session = run(service.sign_up(EMAIL, PASSWORD))
        rotated = run(service.refresh_session(session.refresh_token))
        run(service.sign_out(rotated.access_token))
        assert _events(store) == [AuthEventType.sign_up, AuthEventType.token_refresh, AuthEventType.sign_out]
        assert run(service.verify_token(rotated.access_token)).valid is False

    def test_sign_out_with_dead_token_logs_nothing(self, service, store) -> None:
        run(service.sign_out("garbage"))
        assert store.list_events() == []

    def test_password_and_verification_events(self, service, store, emails, sender) -> None:
        session = run(service.sign_up(EMAIL, PASSWORD))
        run(service.reset_password_request(EMAIL))
        emails.flush(timeout=5)
        run(service.reset_password(PasswordUpdate("newpass99", token=sender.last_token("password_reset"))))
        run(service.reset_password(PasswordUpdate("newpass77", current_password="newpass99"), session.user.id))
        run(service.resend_verification_email(EMAIL))
        emails.flush(timeout=5)
        run(service.verify_email(sender.last_token("verification")))

        assert _events(store) == [
            AuthEventType.sign_up,
            AuthEventType.password_reset_request,
            AuthEventType.password_reset_complete,
            AuthEventType.password_change,
            AuthEventType.verification_email_resent,
            AuthEventType.email_verified,
        ]
        reset = next(e for e in store.list_events() if e.event_type == AuthEventType.password_reset_complete)
        assert reset.user_id == session.user.id

    def test_profile_events(self, service, store) -> None:
        session = run(service.sign_up(EMAIL, PASSWORD))
        run(service.update_user(session.user.id, display_name="Al"))
        run(service.delete_user(session.user.id))
        assert _events(store)[-2:] == [AuthEventType.user_updated, AuthEventType.user_deleted]
        assert run(service.get_user(session.user.id)) is None

    def test_audit_failure_does_not_fail_operation(self, service, store, monkeypatch) -> None:
        monkeypatch.setattr(store, "append_event", MagicMock(side_effect=RuntimeError("disk full")))
        session = run(service.sign_up(EMAIL, PASSWORD))
        assert run(service.sign_in(EMAIL, PASSWORD)).user.id == session.user.id


class TestVerifyScan:
    def test_local_token_short_circuits(self, two_provider_service, remote_http) -> None:
        session = run(two_provider_service.sign_up(EMAIL, PASSWORD))
        result = run(two_provider_service.verify_token(session.access_token))
        assert result.valid is True
        assert result.user.id == session.user.id
        remote_http.get.assert_not_called()

    def test_miss_scans_every_provider(self, two_provider_service, remote_http) -> None:
        """An unknown token still costs one remote introspection call."""
        result = run(two_provider_service.verify_token("garbage"))
        assert result.valid is False
        remote_http.get.assert_called_once()

    def test_remote_token_accepted_by_scan(self, two_provider_service, remote_http) -> None:
        remote_http.get.return_value = _response(payload={"data": {"email": "carol@example.com"}})
        result = run(two_provider_service.verify_token("remote-token"))
        assert result.valid is True
        assert result.user.email == "carol@example.com"

    def test_named_provider_delegates_directly(self, two_provider_service, remote_http) -> None:
        session = run(two_provider_service.sign_up(EMAIL, PASSWORD))
        result = run(two_provider_service.verify_token(session.access_token, provider="remote"))
        assert result.valid is False
        remote_http.get.assert_called_once()

    def test_scan_skips_raising_provider(self, local_provider, store, clock) -> None:
        broken = MagicMock()
        broken.name = "remote"

        async def explode(token):
            raise RuntimeError("boom")

        broken.verify_token = explode
        service = AuthService([broken, local_provider], store, clock=clock)
        session = run(local_provider.sign_up(EMAIL, PASSWORD))
        assert run(service.verify_token(session.access_token)).valid is True

    def test_get_user_by_email_scans(self, two_provider_service) -> None:
        session = run(two_provider_service.sign_up(EMAIL, PASSWORD))
        assert run(two_provider_service.get_user_by_email("ALICE@example.com")).id == session.user.id
        assert run(two_provider_service.get_user_by_email("nobody@example.com")) is None


def _github_clients() -> tuple[OAuthClients, MagicMock]:
    factory = MagicMock()
    client = factory.return_value
    client.create_authorization_url.side_effect = lambda url, state: (f"{url}?state={state}", state)
    client.fetch_token.return_value = {"access_token": "gh-token"}

    def get(url, timeout):
        if url.endswith("/user"):
            return _response(payload={"id": 42, "login": "alice-gh", "avatar_url": "https://img/gh.png"})
        return _response(payload=[{"email": EMAIL, "primary": True, "verified": True}])

    client.get.side_effect = get
    config = OAuthProviderConfig(
        name="github",
        label="GitHub",
        client_id="id",
        client_secret="secret",
        authorize_url="https://github.com/login/oauth/authorize",
        token_url="https://github.com/login/oauth/access_token",
        scope="read:user user:email",
    )
    return OAuthClients([config], session_factory=factory), factory


class TestOAuth:
    @pytest.fixture
    def oauth_service(self, local_provider, store, clock) -> AuthService:
        clients, _ = _github_clients()
        return AuthService([local_provider], store, oauth=clients, clock=clock)

    def _state(self, url: str) -> str:
        return url.split("state=", 1)[1]

    def test_full_flow(self, oauth_service, store) -> None:
        url = run(oauth_service.get_oauth_url("github", "https://app/cb"))
        assert url.startswith("https://github.com/login/oauth/authorize?state=")

        session = run(oauth_service.handle_oauth_callback("github", "code-1", "https://app/cb", self._state(url)))
        assert session.provider == "local"
        assert session.user.email == EMAIL
        assert session.user.email_verified is True
        assert run(oauth_service.verify_token(session.access_token)).valid is True

        connect, sign_in = reversed(store.list_events())
        assert connect.event_type == AuthEventType.oauth_connect
        assert sign_in.event_type == AuthEventType.sign_in
        assert connect.user_id == sign_in.user_id == session.user.id
        assert sign_in.metadata == {"oauth_provider": "github"}
        assert [i.provider_user_id for i in store.get_oauth_identities(session.user.id)] == ["42"]

    def test_oauth_links_existing_local_account(self, oauth_service) -> None:
        local = run(oauth_service.sign_up(EMAIL, PASSWORD))
        url = run(oauth_service.get_oauth_url("github", "https://app/cb"))
        session = run(oauth_service.handle_oauth_callback("github", "code", "https://app/cb", self._state(url)))
        assert session.user.id == local.user.id

    def test_repeat_sign_in_connects_once(self, oauth_service, store) -> None:
        for _ in range(2):
            url = run(oauth_service.get_oauth_url("github", "https://app/cb"))
            run(oauth_service.handle_oauth_callback("github", "code", "https://app/cb", self._state(url)))
        assert _events(store) == [AuthEventType.oauth_connect, AuthEventType.sign_in, AuthEventType.sign_in]

    def test_state_is_single_use(self, oauth_service) -> None:
        state = self._state(run(oauth_service.get_oauth_url("github", "https://app/cb")))
        run(oauth_service.handle_oauth_callback("github", "code", "https://app/cb", state))
        with pytest.raises(OAuthError):
            run(oauth_service.handle_oauth_callback("github", "code", "https://app/cb", state))

    def test_missing_or_unknown_state(self, oauth_service) -> None:
        with pytest.raises(OAuthError):
            run(oauth_service.handle_oauth_callback("github", "code", "https://app/cb", None))
        with pytest.raises(OAuthError):
            run(oauth_service.handle_oauth_callback("github", "code", "https://app/cb", "forged"))

    def test_state_expires(self, oauth_service, clock) -> None:
        state = self._state(run(oauth_service.get_oauth_url("github", "https://app/cb")))
        clock.advance(minutes=11)
        with pytest.raises(OAuthError):
            run(oauth_service.handle_oauth_callback("github", "code", "https://app/cb", state))

    def test_state_bound_to_provider(self, oauth_service) -> None:
        state = self._state(run(oauth_service.get_oauth_url("github", "https://app/cb")))
        with pytest.raises(OAuthError):
            run(oauth_service.handle_oauth_callback("google", "code", "https://app/cb", state))

    def test_unconfigured_provider_delegates_to_active(self, service) -> None:
        with pytest.raises(OAuthError):
            run(service.get_oauth_url("google", "https://app/cb"))

    def test_gate_factory(self, service) -> None:
        assert callable(service.create_auth_middleware())

