"""
auth/service.py -- AuthService: registration, login, sessions, and account administration.

Routes stay thin: they validate the payload, resolve the caller's Identity,
and call exactly one method here. Every method raises an AuthError subclass
on failure and never builds an HTTP response.

Security:
  [C1] login() runs a bcrypt comparison for unknown emails and for accounts
       without a password, so response time does not reveal which factor
       failed. The error is the same InvalidCredentials in every case.
  Owner rules (update_user_role, delete_user): only an owner may assign the
       admin role or touch an admin/owner account. The owner role itself is
       never assigned through the API, and nobody changes or deletes their
       own account through the admin endpoints.

Store failures (SQLAlchemyError) are logged here with the traceback and
re-raised as Internal so clients see a generic 500.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import functools
import logging
import re
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import (
    AuthError,
    BadRequest,
    Conflict,
    Forbidden,
    Internal,
    InvalidCredentials,
    NotFound,
    RefreshTokenInvalid,
)
from auth.models import PRIVILEGED_ROLES, Account, DeviceMeta, Identity, Role, SessionInfo, TokenPair
from auth.reset import PasswordResetService
from auth.sessions import TokenService
from auth.store import AccountStore, utcnow
from auth.tokens import burn_password_check, hash_password, verify_password

logger = logging.getLogger("estategate.auth")

# First match wins.
_DEVICE_PATTERNS = (
    (re.compile(r"Mobile", re.IGNORECASE), "Mobile Device"),
    (re.compile(r"Tablet|iPad", re.IGNORECASE), "Tablet"),
    (re.compile(r"Windows", re.IGNORECASE), "Windows PC"),
    (re.compile(r"Mac", re.IGNORECASE), "Mac"),
    (re.compile(r"Linux", re.IGNORECASE), "Linux PC"),
)


def extract_device_label(user_agent: str | None) -> str:
    """Map a User-Agent header to a coarse, human-readable device label."""
    if not user_agent:
        return "Unknown Device"
    for pattern, label in _DEVICE_PATTERNS:
        if pattern.search(user_agent):
            return label
    return "Unknown Device"


def device_meta_from_user_agent(user_agent: str | None) -> DeviceMeta:
    return DeviceMeta(device=extract_device_label(user_agent), user_agent=(user_agent or "")[:500])


def _store_errors(method):
    """Translate unexpected store failures into Internal, logging the cause."""

    @functools.wraps(method)
    def wrapper(*args, **kwargs):
        try:
            return method(*args, **kwargs)
        except AuthError:
            raise
        except SQLAlchemyError as exc:
            logger.exception("Store failure in %s", method.__name__)
            raise Internal() from exc

    return wrapper


@dataclass(frozen=True)
class UserPage:
    accounts: list[Account]
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


class AuthService:
    def __init__(self, store: AccountStore, tokens: TokenService, resets: PasswordResetService) -> None:
        self._store = store
        self._tokens = tokens
        self._resets = resets

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    @_store_errors
    def register(
        self, username: str, email: str, password: str, device_meta: DeviceMeta | None = None
    ) -> tuple[Account, TokenPair]:
        """Create a user-role account and sign it in on the calling device."""
        if self._store.find_by_email(email) is not None:
            raise Conflict("User with this email already exists.")
        if self._store.find_by_username(username) is not None:
            raise Conflict("Username already taken.")

        account_id = self._store.create_account(
            Account(
                username=username,
                email=email,
                hashed_password=hash_password(password),
                role=Role.user,
                last_login_at=utcnow(),
            )
        )
        account = self._require_account(account_id)
        pair = self._tokens.issue_token_pair(account.id, account.role, device_meta)
        logger.info("Registered account %s", account.id)
        return account, pair

    @_store_errors
    def login(self, email: str, password: str, device_meta: DeviceMeta | None = None) -> tuple[Account, TokenPair]:
        """Verify credentials and issue a token pair bound to a new session.

        Uses timing equalization [C1]: bcrypt runs whether or not the account
        exists or has a password set.
        """
        account = self._store.find_by_email(email)
        if account is None or account.hashed_password is None:
            burn_password_check(password)
            raise InvalidCredentials()
        if not verify_password(password, account.hashed_password):
            raise InvalidCredentials()

        self._store.update_account(account.id, last_login_at=utcnow())
        pair = self._tokens.issue_token_pair(account.id, account.role, device_meta)
        return self._require_account(account.id), pair

    @_store_errors
    def logout(self, identity: Identity, refresh_token: str | None) -> bool:
        """End the session bound to refresh_token. A missing or unknown token is not an error."""
        if not refresh_token:
            return False
        return self._tokens.revoke_session(identity.account_id, refresh_token)

    @_store_errors
    def logout_all(self, identity: Identity) -> int:
        return self._tokens.revoke_all_sessions(identity.account_id)

    @_store_errors
    def refresh(self, refresh_token: str | None) -> TokenPair:
        if not refresh_token:
            raise RefreshTokenInvalid("Refresh token required.")
        return self._tokens.rotate_refresh_token(refresh_token)

    # ------------------------------------------------------------------
    # Self-service
    # ------------------------------------------------------------------

    @_store_errors
    def get_profile(self, account_id: int) -> Account:
        return self._require_account(account_id)

    @_store_errors
    def update_profile(self, account_id: int, username: str | None = None) -> Account:
        """Apply self-service profile edits. Role is never editable here."""
        if username is None:
            raise BadRequest("No valid fields to update.")
        account = self._require_account(account_id)
        if username != account.username:
            existing = self._store.find_by_username(username)
            if existing is not None and existing.id != account_id:
                raise Conflict("Username already taken.")
            self._store.update_account(account_id, username=username)
        return self._require_account(account_id)

    @_store_errors
    def list_sessions(self, account_id: int) -> list[SessionInfo]:
        return self._tokens.list_sessions(account_id)

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    @_store_errors
    def create_owner(self, username: str, email: str, password: str) -> Account:
        """Bootstrap the single owner account. Only reachable from the CLI."""
        if self._store.has_role(Role.owner):
            raise Conflict("An owner account already exists.")
        if self._store.find_by_email(email) is not None:
            raise Conflict("User with this email already exists.")
        if self._store.find_by_username(username) is not None:
            raise Conflict("Username already taken.")
        account_id = self._store.create_account(
            Account(username=username, email=email, hashed_password=hash_password(password), role=Role.owner)
        )
        logger.info("Owner account %s created", account_id)
        return self._require_account(account_id)

    @_store_errors
    def create_admin(self, username: str, email: str) -> Account:
        """Create an admin without a password and mail a credential-setup link."""
        if self._store.find_by_email(email) is not None:
            raise Conflict("User with this email already exists.")
        if self._store.find_by_username(username) is not None:
            raise Conflict("Username already taken.")

        account_id = self._store.create_account(Account(username=username, email=email, role=Role.admin))
        account = self._require_account(account_id)
        self._resets.issue_setup_token(account)
        logger.info("Admin account %s created", account.id)
        return account

    @_store_errors
    def update_user_role(self, identity: Identity, target_id: int, role: Role | str) -> Account:
        role = Role(role)
        if target_id == identity.account_id:
            raise BadRequest("You cannot change your own role.")

        target = self._require_account(target_id)
        if role in PRIVILEGED_ROLES and identity.role is not Role.owner:
            raise Forbidden("Only owners can promote users to admin or owner roles.")
        if target.role in PRIVILEGED_ROLES and identity.role is not Role.owner:
            raise Forbidden("Only owners can modify admin or owner roles.")
        if role is Role.owner:
            raise BadRequest("Owner role assignment requires special authorization.")

        self._store.update_account(target_id, role=role)
        logger.info(
            "Account %s role changed %s -> %s by %s", target_id, target.role.value, role.value, identity.account_id
        )
        return self._require_account(target_id)

    @_store_errors
    def delete_user(self, identity: Identity, target_id: int) -> None:
        """Delete an account and all of its sessions."""
        if target_id == identity.account_id:
            raise BadRequest("You cannot delete your own account.")
        target = self._require_account(target_id)
        if target.role in PRIVILEGED_ROLES and identity.role is not Role.owner:
            raise Forbidden("Only owners can delete admin or owner accounts.")
        self._store.delete_account(target_id)
        logger.info("Account %s deleted by %s", target_id, identity.account_id)

    @_store_errors
    def get_user_by_id(self, identity: Identity, target_id: int) -> Account:
        if target_id != identity.account_id and not identity.role.at_least(Role.admin):
            raise Forbidden("Access denied.")
        return self._require_account(target_id)

    @_store_errors
    def list_users(
        self,
        role: Role | str | None = None,
        search: str | None = None,
        page: int = 1,
        limit: int = 10,
        sort_by: str = "createdAt",
        sort_order: str = "desc",
    ) -> UserPage:
        page = max(page, 1)
        limit = min(max(limit, 1), 100)
        accounts, total = self._store.list_accounts(
            role=Role(role).value if role else None,
            search=search or None,
            offset=(page - 1) * limit,
            limit=limit,
            sort_by=sort_by,
            sort_order=sort_order,
        )
        return UserPage(accounts=accounts, page=page, limit=limit, total=total)

    @_store_errors
    def get_user_stats(self) -> dict:
        now = utcnow()
        by_role = self._store.count_by_role()
        return {
            "totalUsers": sum(by_role.values()),
            "byRole": by_role,
            "newLast7Days": self._store.count_created_since(now - timedelta(days=7)),
            "newLast30Days": self._store.count_created_since(now - timedelta(days=30)),
            "activeSessionUsers": self._store.count_accounts_with_live_sessions(now),
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_account(self, account_id: int) -> Account:
        account = self._store.find_by_id(account_id)
        if account is None:
            raise NotFound("User not found.")
        return account
