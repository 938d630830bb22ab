"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, minimal logic). Dataclasses own the
domain shape; the store and services do the work.

Role tiers are strictly ordered: user < broker < admin < owner.
Role.at_least() is the single comparison used by route guards and services.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    user = "user"
    broker = "broker"
    admin = "admin"
    owner = "owner"

    @property
    def tier(self) -> int:
        return _TIERS[self]

    def at_least(self, minimum: Role | str) -> bool:
        """Return True if this role is at or above minimum in the tier ordering."""
        return self.tier >= Role(minimum).tier


_TIERS = {Role.user: 0, Role.broker: 1, Role.admin: 2, Role.owner: 3}

# Roles whose accounts only an owner may create, modify, or delete.
PRIVILEGED_ROLES = frozenset({Role.admin, Role.owner})


@dataclass
class Account:
    """A registered identity.

    email is always stored lowercase. hashed_password is None for admin
    accounts created by an owner until they complete the credential-setup
    (reset) flow. The reset_* fields hold the HMAC of the single live reset
    token, if any; the raw token is never stored.
    """

    username: str
    email: str
    role: Role = Role.user
    id: int | None = None
    hashed_password: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_login_at: datetime | None = None
    reset_token_hash: str | None = None
    reset_token_expires_at: datetime | None = None
    reset_token_created_at: datetime | None = None


@dataclass
class RefreshSession:
    """One device/browser binding. token_hash is HMAC-SHA256 of the opaque refresh token.

    previous_token_hash holds the value this session had before its last
    rotation. Every earlier value is also kept in the store's retired-token
    history, so a replay of any old token can be told apart from a token
    that never existed.
    """

    account_id: int
    token_hash: str
    expires_at: datetime
    created_at: datetime
    device: str = ""
    user_agent: str = ""
    id: int | None = None
    previous_token_hash: str | None = None


@dataclass(frozen=True)
class DeviceMeta:
    device: str = "Unknown Device"
    user_agent: str = ""


@dataclass(frozen=True)
class SessionInfo:
    """Listing projection of a RefreshSession -- never includes the token hash."""

    device: str
    user_agent: str
    created_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


@dataclass(frozen=True)
class Identity:
    """The caller resolved from a verified access token."""

    account_id: int
    role: Role
