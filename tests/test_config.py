"""
tests/test_config.py -- Settings validation and derived values.

Covers:
  - [M7] production mode without SECRET_KEY refuses to start
  - [M6] short keys are rejected in every mode
  - [P1] argon2 parameters below the floor are rejected
  - remote provider is disabled when it has no base URL
  - verify / reset links derive from FRONTEND_URL unless set explicitly
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from core.config import Settings

SECRET = "config-test-secret-key-at-least-32-chars"


def _settings(**kwargs) -> Settings:
    return Settings(_env_file=None, **kwargs)


class TestSecretKey:
    def test_production_requires_key(self) -> None:
        with pytest.raises(ValidationError, match="SECRET_KEY is required"):
            _settings(debug=False, secret_key="")

    def test_debug_generates_key(self) -> None:
        settings = _settings(debug=True, secret_key="")
        assert len(settings.secret_key) == 64

    @pytest.mark.parametrize("debug", [True, False])
    def test_short_key_rejected(self, debug: bool) -> None:
        with pytest.raises(ValidationError, match="at least 32 characters"):
            _settings(debug=debug, secret_key="too-short")

    def test_explicit_key_kept(self) -> None:
        assert _settings(secret_key=SECRET).secret_key == SECRET


class TestPasswordHashing:
    def test_defaults_meet_floor(self) -> None:
        settings = _settings(secret_key=SECRET)
        assert settings.argon2_memory_cost_kib == 65536
        assert settings.argon2_time_cost == 3
        assert settings.argon2_parallelism == 4

    @pytest.mark.parametrize(
        "field,value",
        [("argon2_memory_cost_kib", 32768), ("argon2_time_cost", 2), ("argon2_parallelism", 1)],
    )
    def test_weak_parameters_rejected(self, field: str, value: int) -> None:
        with pytest.raises(ValidationError):
            _settings(secret_key=SECRET, **{field: value})

    def test_stronger_parameters_accepted(self) -> None:
        settings = _settings(secret_key=SECRET, argon2_memory_cost_kib=131072, argon2_time_cost=4)
        assert settings.argon2_memory_cost_kib == 131072

    def test_zero_failed_attempts_rejected(self) -> None:
        with pytest.raises(ValidationError):
            _settings(secret_key=SECRET, max_failed_attempts=0)


class TestProviders:
    def test_remote_without_url_disabled(self) -> None:
        settings = _settings(secret_key=SECRET, remote_enabled=True)
        assert settings.remote_enabled is False

    def test_remote_with_url_enabled(self) -> None:
        settings = _settings(secret_key=SECRET, remote_enabled=True, remote_base_url="https://cms.example.com")
        assert settings.remote_enabled is True

    def test_unknown_active_provider_rejected(self) -> None:
        with pytest.raises(ValidationError):
            _settings(secret_key=SECRET, active_provider="saml")


class TestDerivedValues:
    def test_links_follow_frontend_url(self) -> None:
        settings = _settings(secret_key=SECRET, frontend_url="https://app.example.com/")
        assert settings.verify_email_link == "https://app.example.com/auth/verify-email"
        assert settings.reset_password_link == "https://app.example.com/auth/reset-password"

    def test_explicit_links_win(self) -> None:
        settings = _settings(secret_key=SECRET, verify_email_url="https://x.example.com/v")
        assert settings.verify_email_link == "https://x.example.com/v"

    def test_session_duration_seconds(self) -> None:
        assert _settings(secret_key=SECRET).session_duration_seconds == 7 * 24 * 3600
