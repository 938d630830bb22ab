"""
tests/test_config.py -- Tests for core.config.Settings.

Settings is constructed with _env_file=None and explicit values so the
developer's .env and environment never leak into the assertions.

Coverage:
  - SECRET_KEY policy: generated in debug, required in production, 32-char minimum
  - Defaults for token lifetimes, session cap, reset cooldown
  - get_settings() singleton
"""

from __future__ import annotations

import pytest

from core.config import Settings, get_settings


class TestSecretKey:
    def test_debug_generates_key(self) -> None:
        settings = Settings(_env_file=None, debug=True, secret_key="")
        assert len(settings.secret_key) == 64

    def test_production_requires_key(self) -> None:
        with pytest.raises(ValueError, match="SECRET_KEY is required"):
            Settings(_env_file=None, debug=False, secret_key="")

    def test_short_key_rejected(self) -> None:
        with pytest.raises(ValueError, match="at least 32 characters"):
            Settings(_env_file=None, debug=True, secret_key="too-short")

    def test_explicit_key_kept(self) -> None:
        key = "k" * 40
        assert Settings(_env_file=None, debug=False, secret_key=key).secret_key == key


class TestDefaults:
    def test_token_and_session_defaults(self) -> None:
        settings = Settings(_env_file=None, debug=True, secret_key="s" * 32)
        assert settings.access_token_expire_seconds == 900
        assert settings.refresh_token_expire_days == 30
        assert settings.refresh_token_expire_seconds == 30 * 24 * 60 * 60
        assert settings.max_sessions_per_account == 10
        assert settings.reset_token_expire_seconds == 900
        assert settings.reset_resend_cooldown_seconds == 120

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("MAX_SESSIONS_PER_ACCOUNT", "3")
        monkeypatch.setenv("LOGIN_RATE_LIMIT", "2 per minute")
        settings = Settings(_env_file=None, debug=True, secret_key="s" * 32)
        assert settings.max_sessions_per_account == 3
        assert settings.login_rate_limit == "2 per minute"


def test_get_settings_is_cached() -> None:
    assert get_settings() is get_settings()
