"""
tests/test_store.py -- CredentialStore persistence and atomicity.

Covers:
  - sign-up insert is atomic: a duplicate email leaves no second user and no
    orphan credential
  - emails are case-insensitive
  - record_failed_attempt increments atomically (threaded) and locks at the threshold
  - rotate_session redeems a session exactly once
  - reset and verification tokens are single use and honour expiry
  - shadow upsert never duplicates by email
  - OAuth linking reuses existing users; delete_user cascades
  - audit events are appended and listed newest first
"""

from __future__ import annotations

import threading
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import AuthEvent, AuthEventType, Session
from auth.store import CredentialStore
from auth.tokens import hash_token


def _create(store: CredentialStore, now, email: str = "alice@example.com"):
    return store.create_user_with_credential(
        email=email,
        display_name="Alice",
        password_hash="hash",
        verification_token_hash=hash_token("verify-token"),
        verification_expires_at=now + timedelta(hours=24),
        now=now,
    )


def _session(user_id: str, now, suffix: str) -> Session:
    return Session(
        user_id=user_id,
        access_token_hash=hash_token(f"access-{suffix}"),
        refresh_token_hash=hash_token(f"refresh-{suffix}"),
        expires_at=now + timedelta(days=7),
    )


class TestUsers:
    def test_create_and_lookup(self, store, clock) -> None:
        user = _create(store, clock())
        assert store.get_user(user.id).email == "alice@example.com"
        assert store.get_user_by_email("ALICE@Example.com").id == user.id
        credential = store.get_credential(user.id)
        assert credential.email_verified is False
        assert credential.failed_attempts == 0
        assert credential.lockout_until is None

    def test_duplicate_email_rolls_back(self, store, clock) -> None:
        """The second insert fails without leaving a user or credential behind."""
        _create(store, clock())
        with pytest.raises(IntegrityError):
            _create(store, clock(), email="Alice@Example.com")
        with store.engine.connect() as conn:
            users = conn.exec_driver_sql("SELECT COUNT(*) FROM users").scalar()
            creds = conn.exec_driver_sql("SELECT COUNT(*) FROM password_credentials").scalar()
        assert users == 1
        assert creds == 1

    def test_credential_failure_rolls_back_user(self, store, clock) -> None:
        """A credential insert that fails after the user row is written leaves no user behind."""
        with pytest.raises(IntegrityError):
            store.create_user_with_credential(
                email="alice@example.com",
                display_name="Alice",
                password_hash=None,  # violates NOT NULL on password_credentials
                verification_token_hash=hash_token("verify-token"),
                verification_expires_at=clock() + timedelta(hours=24),
                now=clock(),
            )
        assert store.get_user_by_email("alice@example.com") is None
        with store.engine.connect() as conn:
            assert conn.exec_driver_sql("SELECT COUNT(*) FROM users").scalar() == 0
            assert conn.exec_driver_sql("SELECT COUNT(*) FROM password_credentials").scalar() == 0
        # The email is still free for a real sign-up.
        assert _create(store, clock()).email == "alice@example.com"

    def test_update_profile_and_ban(self, store, clock) -> None:
        user = _create(store, clock())
        assert store.update_user_profile(user.id, now=clock(), avatar_url="https://img/a.png") is True
        assert store.set_banned(user.id, True, now=clock()) is True
        refreshed = store.get_user(user.id)
        assert refreshed.display_name == "Alice"
        assert refreshed.avatar_url == "https://img/a.png"
        assert refreshed.is_banned is True
        assert store.update_user_profile("missing", now=clock(), display_name="x") is False

    def test_delete_user_cascades(self, store, clock) -> None:
        user = _create(store, clock())
        store.create_session(_session(user.id, clock(), "1"), now=clock())
        assert store.delete_user(user.id) is True
        assert store.get_user(user.id) is None
        assert store.get_credential(user.id) is None
        assert store.list_sessions(user.id) == []
        assert store.delete_user(user.id) is False

    def test_ping(self, store) -> None:
        assert store.ping() is True


class TestFailedAttempts:
    def test_locks_at_threshold(self, store, clock) -> None:
        user = _create(store, clock())
        until = clock() + timedelta(minutes=30)
        for expected in range(1, 5):
            attempts, locked = store.record_failed_attempt(user.id, max_attempts=5, lockout_until=until, now=clock())
            assert attempts == expected
            assert locked is None
        attempts, locked = store.record_failed_attempt(user.id, max_attempts=5, lockout_until=until, now=clock())
        assert attempts == 5
        assert locked == until

    def test_success_resets_counter(self, store, clock) -> None:
        user = _create(store, clock())
        until = clock() + timedelta(minutes=30)
        for _ in range(5):
            store.record_failed_attempt(user.id, max_attempts=5, lockout_until=until, now=clock())
        store.record_successful_sign_in(user.id, now=clock())
        credential = store.get_credential(user.id)
        assert credential.failed_attempts == 0
        assert credential.lockout_until is None
        assert credential.last_login_at == clock()

    def test_concurrent_failures_are_not_lost(self, store, clock) -> None:
        """Eight threads x five failures must count exactly forty attempts."""
        user = _create(store, clock())
        until = clock() + timedelta(minutes=30)
        errors: list[BaseException] = []

        def worker() -> None:
            try:
                for _ in range(5):
                    store.record_failed_attempt(user.id, max_attempts=5, lockout_until=until, now=clock())
            except BaseException as exc:  # surfaced via the errors list
                errors.append(exc)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        credential = store.get_credential(user.id)
        assert credential.failed_attempts == 40
        assert credential.lockout_until == until


class TestSessions:
    def test_rotate_exactly_once(self, store, clock) -> None:
        user = _create(store, clock())
        first = store.create_session(_session(user.id, clock(), "1"), now=clock())
        assert store.rotate_session(first.id, _session(user.id, clock(), "2"), now=clock()) is True
        assert store.rotate_session(first.id, _session(user.id, clock(), "3"), now=clock()) is False

        sessions = store.list_sessions(user.id)
        assert len(sessions) == 2
        assert [s.is_active for s in sessions] == [False, True]
        assert store.get_active_session_by_refresh_hash(hash_token("refresh-1")) is None
        assert store.get_active_session_by_refresh_hash(hash_token("refresh-2")) is not None

    def test_access_token_active_until_deactivated(self, store, clock) -> None:
        user = _create(store, clock())
        store.create_session(_session(user.id, clock(), "1"), now=clock())
        assert store.is_access_token_active(hash_token("access-1"), now=clock()) is True
        assert store.deactivate_user_sessions(user.id, now=clock()) == 1
        assert store.is_access_token_active(hash_token("access-1"), now=clock()) is False

    def test_session_expiry_respected(self, store, clock) -> None:
        user = _create(store, clock())
        store.create_session(_session(user.id, clock(), "1"), now=clock())
        clock.advance(days=8)
        assert store.is_access_token_active(hash_token("access-1"), now=clock()) is False


class TestOneTimeTokens:
    def test_reset_token_single_use_and_revokes_sessions(self, store, clock) -> None:
        user = _create(store, clock())
        store.create_session(_session(user.id, clock(), "1"), now=clock())
        store.set_reset_token(user.id, hash_token("reset"), clock() + timedelta(hours=1), now=clock())

        assert store.consume_reset_token(hash_token("reset"), "new-hash", now=clock()) == user.id
        assert store.consume_reset_token(hash_token("reset"), "other-hash", now=clock()) is None

        credential = store.get_credential(user.id)
        assert credential.password_hash == "new-hash"
        assert credential.reset_token_hash is None
        assert all(not s.is_active for s in store.list_sessions(user.id))

    def test_expired_reset_token_rejected(self, store, clock) -> None:
        user = _create(store, clock())
        store.set_reset_token(user.id, hash_token("reset"), clock() + timedelta(hours=1), now=clock())
        clock.advance(hours=1, seconds=1)
        assert store.consume_reset_token(hash_token("reset"), "new-hash", now=clock()) is None
        assert store.get_credential(user.id).password_hash == "hash"

    def test_verification_token_single_use(self, store, clock) -> None:
        user = _create(store, clock())
        assert store.consume_verification_token(hash_token("verify-token"), now=clock()) == user.id
        assert store.consume_verification_token(hash_token("verify-token"), now=clock()) is None
        assert store.get_credential(user.id).email_verified is True

    def test_expired_verification_token_rejected(self, store, clock) -> None:
        _create(store, clock())
        clock.advance(hours=25)
        assert store.consume_verification_token(hash_token("verify-token"), now=clock()) is None


class TestShadowAndOAuth:
    def test_shadow_upsert_never_duplicates(self, store, clock) -> None:
        first = store.upsert_shadow_user(email="Bob@Example.com", display_name=None, avatar_url=None, now=clock())
        assert first.display_name == "bob"
        second = store.upsert_shadow_user(
            email="bob@example.com", display_name="Bob B", avatar_url="https://img/b.png", now=clock()
        )
        assert second.id == first.id
        assert second.display_name == "Bob B"
        assert second.avatar_url == "https://img/b.png"
        with store.engine.connect() as conn:
            assert conn.exec_driver_sql("SELECT COUNT(*) FROM users").scalar() == 1

    def test_oauth_link_reuses_email_match(self, store, clock) -> None:
        user = _create(store, clock())
        linked, connected = store.link_oauth_identity(
            email="alice@example.com",
            provider="github",
            provider_user_id="42",
            display_name="alice-gh",
            avatar_url="https://img/gh.png",
            now=clock(),
        )
        assert connected is True
        assert linked.id == user.id
        assert linked.avatar_url == "https://img/gh.png"
        again, connected_again = store.link_oauth_identity(
            email="changed@example.com",
            provider="github",
            provider_user_id="42",
            display_name=None,
            avatar_url=None,
            now=clock(),
        )
        assert again.id == user.id
        assert connected_again is False
        identities = store.get_oauth_identities(user.id)
        assert [(i.provider, i.provider_user_id) for i in identities] == [("github", "42")]

    def test_oauth_link_creates_user(self, store, clock) -> None:
        user, connected = store.link_oauth_identity(
            email="new@example.com",
            provider="google",
            provider_user_id="sub-1",
            display_name="New Person",
            avatar_url=None,
            now=clock(),
        )
        assert connected is True
        assert user.email == "new@example.com"
        assert user.display_name == "New Person"
        assert store.get_credential(user.id) is None


class TestEvents:
    def test_append_and_list(self, store, clock) -> None:
        store.append_event(AuthEvent(event_type=AuthEventType.sign_up, provider="local", user_id="u1"), now=clock())
        store.append_event(
            AuthEvent(event_type=AuthEventType.sign_in_failed, provider="local", metadata={"code": "X"}),
            now=clock(),
        )
        events = store.list_events()
        assert [e.event_type for e in events] == [AuthEventType.sign_in_failed, AuthEventType.sign_up]
        assert events[0].metadata == {"code": "X"}
        assert [e.event_type for e in store.list_events(user_id="u1")] == [AuthEventType.sign_up]
