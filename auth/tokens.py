"""
auth/tokens.py -- JWT, password hashing, and opaque token primitives.

Security design decisions:
  JWT: python-jose with HS256. Access tokens are signed with SECRET_KEY and
       carry the account id (sub), role, type="access", iat and exp. They are
       never looked up in storage, which is why they are short-lived (15 min
       by default). decode_access_token() raises TokenExpired or TokenInvalid;
       the dependency layer turns either into a 401.

  Passwords: bcrypt directly (no passlib wrapper). Its cost factor makes
       brute-force expensive for low-entropy secrets. _DUMMY_HASH enables
       timing equalization in AuthService.login() so response time does not
       reveal whether an email is registered [C1].

  Refresh / reset tokens: secrets.token_hex() gives 512 / 256 bits of
       entropy. Only HMAC-SHA256(SECRET_KEY, raw) is stored, so lookup is
       O(1) via a UNIQUE index and a leaked database does not yield usable
       tokens. bcrypt's slowness is unnecessary at this entropy.

  SECRET_KEY: sourced from core.config.get_settings(), validated at startup.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import bcrypt
from jose import jwt
from jose.exceptions import ExpiredSignatureError, JWTError

from auth.errors import TokenExpired, TokenInvalid
from auth.models import Role
from core.config import get_settings

logger = logging.getLogger("estategate.auth")

# ---------------------------------------------------------------------------
# Config -- read once at module load via the lru_cache singleton [M6]
# ---------------------------------------------------------------------------

_settings = get_settings()

_ALGORITHM = "HS256"

REFRESH_TOKEN_BYTES = 64  # 128 hex chars
RESET_TOKEN_BYTES = 32  # 64 hex chars, the reset-password contract length
RESET_TOKEN_LENGTH = RESET_TOKEN_BYTES * 2

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input beyond 72 bytes. The password contracts cap length
    at 100 characters, and anything past 72 bytes simply does not add strength.
    """
    return bcrypt.hashpw(plain.encode("utf-8")[:72], bcrypt.gensalt(rounds=12)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8")[:72], hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first login attempt is not measurably slower than subsequent ones.
_DUMMY_HASH: str = hash_password("estategate_timing_dummy")


def burn_password_check(plain: str) -> None:
    """Run a bcrypt comparison that always fails, to equalize response timing."""
    verify_password(plain, _DUMMY_HASH)


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AccessClaims:
    account_id: int
    role: Role
    issued_at: datetime
    expires_at: datetime


def create_access_token(account_id: int, role: Role | str, expire_seconds: int = 0) -> tuple[str, datetime]:
    """Encode a signed access token. Returns (token, expires_at).

    Args:
        account_id:     Numeric account ID, stored as the JWT subject.
        role:           Role at issue time. Role changes take effect on the
                        next issue (login or refresh).
        expire_seconds: Lifetime in seconds. If 0 (default), uses
                        Settings.access_token_expire_seconds.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.access_token_expire_seconds
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(seconds=duration)
    payload = {
        "sub": str(account_id),
        "role": Role(role).value,
        "type": "access",
        "iat": now,
        "exp": expires_at,
    }
    return jwt.encode(payload, _settings.secret_key, algorithm=_ALGORITHM), expires_at


def decode_access_token(token: str) -> AccessClaims:
    """Verify signature and expiry of an access token and return its claims.

    Raises TokenExpired for a well-signed token past its exp, TokenInvalid for
    anything else (bad signature, malformed, wrong type, unknown role).
    """
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except ExpiredSignatureError as exc:
        raise TokenExpired() from exc
    except JWTError as exc:
        raise TokenInvalid() from exc

    if payload.get("type") != "access":
        raise TokenInvalid()
    try:
        account_id = int(payload["sub"])
        role = Role(payload["role"])
        issued_at = datetime.fromtimestamp(payload["iat"], tz=timezone.utc)
        expires_at = datetime.fromtimestamp(payload["exp"], tz=timezone.utc)
    except (KeyError, TypeError, ValueError) as exc:
        raise TokenInvalid() from exc
    return AccessClaims(account_id=account_id, role=role, issued_at=issued_at, expires_at=expires_at)


# ---------------------------------------------------------------------------
# Opaque tokens
# ---------------------------------------------------------------------------


def generate_refresh_token() -> str:
    return secrets.token_hex(REFRESH_TOKEN_BYTES)


def generate_reset_token() -> str:
    """Return a 64-character hex reset token (256 bits of entropy)."""
    return secrets.token_hex(RESET_TOKEN_BYTES)


def hash_token(raw_token: str) -> str:
    """Return HMAC-SHA256(SECRET_KEY, raw_token) as a hex string.

    Deterministic, so the store can look tokens up by hash. Using SECRET_KEY
    as the HMAC key means a database dump alone cannot be matched against
    guessed tokens.
    """
    return hmac.new(
        _settings.secret_key.encode(),
        raw_token.encode(),
        hashlib.sha256,
    ).hexdigest()


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------

REFRESH_COOKIE = "refresh_token"


def set_refresh_cookie(response, token: str) -> None:
    """Write the refresh token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="strict": never sent on cross-site requests.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the refresh session expiry.
    """
    response.set_cookie(
        REFRESH_COOKIE,
        value=token,
        httponly=True,
        samesite="strict",
        secure=_settings.secure_cookies,
        max_age=_settings.refresh_token_expire_seconds,
        path="/",
    )


def clear_refresh_cookie(response) -> None:
    response.delete_cookie(
        REFRESH_COOKIE,
        httponly=True,
        samesite="strict",
        secure=_settings.secure_cookies,
        path="/",
    )


# ---------------------------------------------------------------------------
# Generated passwords (CLI bootstrap)
# ---------------------------------------------------------------------------

_LOWER = "abcdefghijklmnopqrstuvwxyz"
_UPPER = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
_DIGITS = "0123456789"
_SPECIAL = "!@#%^&*()_+-=[]|;:,.?"


def generate_password(length: int = 16) -> str:
    """Return a random password that satisfies every strength rule.

    One character from each class is guaranteed, the rest are drawn from the
    union, and the result is shuffled with the CSPRNG.
    """
    if length < 8:
        raise ValueError("Password length must be at least 8 characters")
    rng = secrets.SystemRandom()
    chars = [secrets.choice(_LOWER), secrets.choice(_UPPER), secrets.choice(_DIGITS), secrets.choice(_SPECIAL)]
    alphabet = _LOWER + _UPPER + _DIGITS + _SPECIAL
    chars.extend(secrets.choice(alphabet) for _ in range(length - len(chars)))
    rng.shuffle(chars)
    return "".join(chars)
