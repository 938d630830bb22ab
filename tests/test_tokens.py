"""
tests/test_tokens.py -- Unit tests for auth/tokens.py primitives.

Coverage:
  - bcrypt hash / verify, including a malformed stored hash
  - Access token round trip, expiry, bad signature, wrong type, unknown role
  - Opaque token lengths and HMAC hashing
  - Generated passwords satisfy the registration strength rules
  - Refresh cookie attributes
"""

from __future__ import annotations

import string
from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt
from starlette.responses import Response

from api.models import check_password_strength
from auth.errors import TokenExpired, TokenInvalid
from auth.models import Role
from auth.tokens import (
    REFRESH_COOKIE,
    clear_refresh_cookie,
    create_access_token,
    decode_access_token,
    generate_password,
    generate_refresh_token,
    generate_reset_token,
    hash_password,
    hash_token,
    set_refresh_cookie,
    verify_password,
)
from core.config import get_settings


def _encode(claims: dict, key: str | None = None) -> str:
    return jwt.encode(claims, key or get_settings().secret_key, algorithm="HS256")


class TestPasswords:
    def test_hash_and_verify(self) -> None:
        hashed = hash_password("Passw0rd123")
        assert hashed != "Passw0rd123"
        assert verify_password("Passw0rd123", hashed)
        assert not verify_password("Passw0rd124", hashed)

    def test_malformed_hash_is_a_mismatch(self) -> None:
        assert verify_password("anything", "not-a-bcrypt-hash") is False


class TestAccessTokens:
    def test_round_trip(self) -> None:
        token, expires_at = create_access_token(42, Role.broker)
        claims = decode_access_token(token)
        assert claims.account_id == 42
        assert claims.role is Role.broker
        assert abs((claims.expires_at - expires_at).total_seconds()) < 1

    def test_default_lifetime_from_settings(self) -> None:
        _, expires_at = create_access_token(1, "user")
        lifetime = expires_at - datetime.now(timezone.utc)
        assert lifetime <= timedelta(seconds=get_settings().access_token_expire_seconds)
        assert lifetime > timedelta(seconds=get_settings().access_token_expire_seconds - 60)

    def test_expired_token(self) -> None:
        past = datetime.now(timezone.utc) - timedelta(hours=1)
        token = _encode({"sub": "1", "role": "user", "type": "access", "iat": past, "exp": past})
        with pytest.raises(TokenExpired):
            decode_access_token(token)

    def test_wrong_signature(self) -> None:
        future = datetime.now(timezone.utc) + timedelta(minutes=5)
        token = _encode({"sub": "1", "role": "user", "type": "access", "iat": future, "exp": future}, "x" * 64)
        with pytest.raises(TokenInvalid):
            decode_access_token(token)

    def test_wrong_type(self) -> None:
        now = datetime.now(timezone.utc)
        token = _encode({"sub": "1", "role": "user", "type": "refresh", "iat": now, "exp": now + timedelta(minutes=5)})
        with pytest.raises(TokenInvalid):
            decode_access_token(token)

    def test_unknown_role(self) -> None:
        now = datetime.now(timezone.utc)
        token = _encode({"sub": "1", "role": "root", "type": "access", "iat": now, "exp": now + timedelta(minutes=5)})
        with pytest.raises(TokenInvalid):
            decode_access_token(token)

    def test_garbage(self) -> None:
        with pytest.raises(TokenInvalid):
            decode_access_token("not.a.jwt")


class TestOpaqueTokens:
    def test_lengths_and_alphabet(self) -> None:
        refresh = generate_refresh_token()
        reset = generate_reset_token()
        assert len(refresh) == 128
        assert len(reset) == 64
        assert set(refresh + reset) <= set(string.hexdigits.lower())

    def test_tokens_are_unique(self) -> None:
        assert generate_refresh_token() != generate_refresh_token()

    def test_hash_is_deterministic_and_not_the_raw_value(self) -> None:
        token = generate_reset_token()
        assert hash_token(token) == hash_token(token)
        assert hash_token(token) != token
        assert len(hash_token(token)) == 64


class TestGeneratePassword:
    def test_meets_strength_rules(self) -> None:
        for _ in range(20):
            password = generate_password()
            assert len(password) == 16
            assert check_password_strength(password) == password

    def test_contains_special_character(self) -> None:
        password = generate_password(8)
        assert any(not c.isalnum() for c in password)

    def test_too_short_rejected(self) -> None:
        with pytest.raises(ValueError):
            generate_password(7)


class TestRefreshCookie:
    def test_set_cookie_attributes(self) -> None:
        resp = Response()
        set_refresh_cookie(resp, "abc123")
        header = resp.headers["set-cookie"].lower()
        assert header.startswith(f"{REFRESH_COOKIE}=abc123")
        assert "httponly" in header
        assert "samesite=strict" in header
        assert "path=/" in header
        assert f"max-age={get_settings().refresh_token_expire_seconds}" in header

    def test_clear_cookie_expires_immediately(self) -> None:
        resp = Response()
        clear_refresh_cookie(resp)
        header = resp.headers["set-cookie"].lower()
        assert header.startswith(f"{REFRESH_COOKIE}=")
        assert "max-age=0" in header
