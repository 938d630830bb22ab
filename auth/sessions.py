"""
auth/sessions.py -- TokenService: access/refresh token pairs and multi-device sessions.

An access token is stateless (signature + expiry only). A refresh token is
the stateful, revocable half: its HMAC is persisted as one RefreshSession row
per device, and it is exchanged exactly once for a new pair.

Rotation contract:
  rotate_refresh_token(R) succeeds at most once for any R. The store swaps
  the session's token hash in a single conditional UPDATE, so two concurrent
  rotations of the same R produce one success and one RefreshTokenReused.
  Every hash a session rotates away from is kept in its retired-token
  history, so a replay of R fails with RefreshTokenReused however many
  rotations have happened since. The history is dropped with the session.

Expired sessions are excluded from listings and rotation at read time and
purged from storage lazily (on the next session write for that account, or by
purge_expired_sessions() from the CLI). There is no background sweeper.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from auth.errors import RefreshTokenExpired, RefreshTokenInvalid, RefreshTokenReused
from auth.models import DeviceMeta, RefreshSession, Role, SessionInfo, TokenPair
from auth.store import AccountStore, utcnow
from auth.tokens import AccessClaims, create_access_token, decode_access_token, generate_refresh_token, hash_token
from core.config import Settings, get_settings

logger = logging.getLogger("estategate.auth")


class TokenService:
    """Issues, verifies, rotates, and revokes tokens. Holds no per-request state."""

    def __init__(self, store: AccountStore, settings: Settings | None = None) -> None:
        self._store = store
        self._settings = settings or get_settings()

    @property
    def refresh_lifetime(self) -> timedelta:
        return timedelta(days=self._settings.refresh_token_expire_days)

    def issue_token_pair(self, account_id: int, role: Role | str, device_meta: DeviceMeta | None = None) -> TokenPair:
        """Sign an access token and persist a new refresh session for the account."""
        device_meta = device_meta or DeviceMeta()
        access_token, access_expires_at = create_access_token(account_id, role)
        refresh_token = generate_refresh_token()
        now = utcnow()
        refresh_expires_at = now + self.refresh_lifetime
        self._store.add_session(
            RefreshSession(
                account_id=account_id,
                token_hash=hash_token(refresh_token),
                device=device_meta.device[:100],
                user_agent=device_meta.user_agent,
                created_at=now,
                expires_at=refresh_expires_at,
            ),
            max_sessions=self._settings.max_sessions_per_account,
            now=now,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh_expires_at,
        )

    def verify_access_token(self, token: str) -> AccessClaims:
        """Pure signature and expiry check. Never touches storage."""
        return decode_access_token(token)

    def rotate_refresh_token(self, old_refresh_token: str) -> TokenPair:
        """Exchange a live refresh token for a new pair, invalidating the old one.

        Raises:
            RefreshTokenReused   -- the token was already rotated (replay or lost race)
            RefreshTokenExpired  -- the session exists but has expired (it is deleted)
            RefreshTokenInvalid  -- no session ever held this token, or its account is gone
        """
        old_hash = hash_token(old_refresh_token)
        new_refresh_token = generate_refresh_token()
        now = utcnow()
        refresh_expires_at = now + self.refresh_lifetime

        session = self._store.rotate_session(
            old_hash,
            hash_token(new_refresh_token),
            created_at=now,
            expires_at=refresh_expires_at,
            now=now,
        )
        if session is None:
            raise self._classify_failed_rotation(old_hash, now)

        account = self._store.find_by_id(session.account_id)
        if account is None:
            self._store.delete_session(session.token_hash)
            raise RefreshTokenInvalid()

        access_token, access_expires_at = create_access_token(account.id, account.role)
        return TokenPair(
            access_token=access_token,
            refresh_token=new_refresh_token,
            access_expires_at=access_expires_at,
            refresh_expires_at=refresh_expires_at,
        )

    def _classify_failed_rotation(self, old_hash: str, now: datetime) -> RefreshTokenInvalid:
        replaced = self._store.find_session_by_retired_hash(old_hash)
        if replaced is not None:
            logger.warning("Refresh token reuse detected for account %s", replaced.account_id)
            return RefreshTokenReused()
        stale = self._store.find_session(old_hash)
        if stale is not None and stale.expires_at <= now:
            self._store.delete_session(old_hash)
            return RefreshTokenExpired()
        return RefreshTokenInvalid()

    def revoke_session(self, account_id: int, refresh_token: str) -> bool:
        """Remove exactly one session (logout from one device). Returns True if one was removed."""
        return self._store.delete_session(hash_token(refresh_token), account_id=account_id)

    def revoke_all_sessions(self, account_id: int) -> int:
        """Clear the account's entire session list. Idempotent; returns rows removed."""
        removed = self._store.delete_all_sessions(account_id)
        logger.info("Revoked %d session(s) for account %s", removed, account_id)
        return removed

    def list_sessions(self, account_id: int) -> list[SessionInfo]:
        return [
            SessionInfo(
                device=s.device,
                user_agent=s.user_agent,
                created_at=s.created_at,
                expires_at=s.expires_at,
            )
            for s in self._store.list_sessions(account_id)
        ]

    def purge_expired_sessions(self) -> int:
        return self._store.purge_expired_sessions()
