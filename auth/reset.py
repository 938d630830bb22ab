"""
auth/reset.py -- PasswordResetService: the single-use reset-token lifecycle.

Lifecycle of one token:
  issued    forgot() or issue_setup_token() stores HMAC(token) plus an expiry
            on the account row, replacing any earlier token.
  live      validate_token() answers {isValid, email} without side effects.
  consumed  reset() swaps the password hash and clears the token fields in one
            conditional UPDATE, then revokes every refresh session.
  expired   the expiry check in every query makes the token unusable; the
            fields are cleared lazily or by `main.py purge`.

Enumeration: forgot() returns the same message whether or not the email is
registered, and mail delivery failures never change the response.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from auth.errors import ResetTokenInvalid
from auth.mailer import Mailer, MailDeliveryError
from auth.models import Account
from auth.sessions import TokenService
from auth.store import AccountStore, utcnow
from auth.tokens import RESET_TOKEN_LENGTH, generate_reset_token, hash_password, hash_token
from core.config import Settings, get_settings

logger = logging.getLogger("estategate.auth")

FORGOT_PASSWORD_MESSAGE = "If an account with that email exists, you will receive a password reset link."
RESET_SUCCESS_MESSAGE = "Password reset successful. Please login with your new password."


class PasswordResetService:
    def __init__(
        self,
        store: AccountStore,
        tokens: TokenService,
        mailer: Mailer,
        settings: Settings | None = None,
    ) -> None:
        self._store = store
        self._tokens = tokens
        self._mailer = mailer
        self._settings = settings or get_settings()

    def reset_link(self, token: str) -> str:
        return f"{self._settings.app_base_url.rstrip('/')}/auth/reset-password?token={token}"

    def forgot(self, email: str) -> str:
        """Start a reset for email if it is registered. Always returns the same message."""
        account = self._store.find_by_email(email)
        if account is None:
            logger.info("Password reset requested for unknown email")
            return FORGOT_PASSWORD_MESSAGE

        if self._within_cooldown(account):
            logger.info("Password reset for account %s skipped: token issued recently", account.id)
            return FORGOT_PASSWORD_MESSAGE

        self._issue(account)
        return FORGOT_PASSWORD_MESSAGE

    def issue_setup_token(self, account: Account) -> None:
        """Issue a reset token so an owner-created admin can set credentials. No cooldown."""
        self._issue(account)

    def validate_token(self, token: str) -> dict:
        """Report whether token is live. Read-only."""
        account = self._lookup(token)
        if account is None:
            return {"isValid": False}
        return {"isValid": True, "email": account.email}

    def reset(self, token: str, new_password: str) -> Account:
        """Consume token, set the new password, and sign the account out everywhere.

        Raises ResetTokenInvalid when the token is unknown, expired, or was
        consumed by a concurrent call.
        """
        if len(token) != RESET_TOKEN_LENGTH:
            raise ResetTokenInvalid()
        account_id = self._store.consume_reset_token(hash_token(token), hash_password(new_password))
        if account_id is None:
            raise ResetTokenInvalid()

        self._tokens.revoke_all_sessions(account_id)
        logger.info("Password reset completed for account %s", account_id)
        account = self._store.find_by_id(account_id)
        if account is None:
            raise ResetTokenInvalid()
        return account

    def purge_expired_tokens(self) -> int:
        return self._store.purge_expired_reset_tokens()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _lookup(self, token: str) -> Account | None:
        if len(token) != RESET_TOKEN_LENGTH:
            return None
        return self._store.find_by_live_reset_token(hash_token(token))

    def _within_cooldown(self, account: Account) -> bool:
        now = utcnow()
        if account.reset_token_expires_at is None or account.reset_token_expires_at <= now:
            return False
        if account.reset_token_created_at is None:
            return False
        cooldown = timedelta(seconds=self._settings.reset_resend_cooldown_seconds)
        return now - account.reset_token_created_at < cooldown

    def _issue(self, account: Account) -> None:
        token = generate_reset_token()
        expires_at = utcnow() + timedelta(seconds=self._settings.reset_token_expire_seconds)
        self._store.set_reset_token(account.id, hash_token(token), expires_at)
        try:
            self._mailer.send_password_reset(account, token, self.reset_link(token))
        except MailDeliveryError as e:
            logger.warning("Password reset mail for account %s not delivered: %s", account.id, e)
