"""
auth/errors.py -- Error taxonomy for the auth, session, and reset flows.

Every error carries the HTTP status, a machine-readable code, and a message
that is safe to show to the client. api/main.py turns any AuthError into the
uniform {success: false, message, code} envelope, so services raise these
and never build responses themselves.

Hierarchy:
  AuthError
    ValidationFailed (422)     aggregated field errors, client-correctable
    BadRequest (400)
    Unauthenticated (401)      missing/invalid/expired credentials
      InvalidCredentials       login failure, same for every cause
      TokenInvalid / TokenExpired              access token
      RefreshTokenInvalid / RefreshTokenExpired / RefreshTokenReused
    Forbidden (403)            valid identity, insufficient role
    NotFound (404)
      ResetTokenInvalid (400)  no live reset token matches
    Conflict (409)             duplicate email or username
    Internal (500)             store or signing failure, detail logged only

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class FieldError:
    """One failed field check. path uses dotted notation ("profile.name")."""

    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.path}: {self.message}" if self.path else self.message


class AuthError(Exception):
    status_code: int = 500
    code: str = "internal_error"
    default_message: str = "An unexpected error occurred."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationFailed(AuthError):
    status_code = 422
    code = "validation_error"
    default_message = "Validation failed."

    def __init__(self, errors: list[FieldError]) -> None:
        self.errors = list(errors)
        joined = ", ".join(str(e) for e in self.errors)
        super().__init__(f"Validation failed: {joined}" if joined else None)


class BadRequest(AuthError):
    status_code = 400
    code = "bad_request"
    default_message = "Bad request."


class Unauthenticated(AuthError):
    status_code = 401
    code = "unauthorized"
    default_message = "Authentication required."


class InvalidCredentials(Unauthenticated):
    code = "bad_credentials"
    default_message = "Invalid email or password."


class TokenInvalid(Unauthenticated):
    code = "invalid_token"
    default_message = "Invalid token."


class TokenExpired(Unauthenticated):
    code = "token_expired"
    default_message = "Token has expired."


class RefreshTokenInvalid(Unauthenticated):
    code = "invalid_refresh_token"
    default_message = "Invalid refresh token."


class RefreshTokenExpired(RefreshTokenInvalid):
    code = "refresh_token_expired"
    default_message = "Refresh token has expired."


class RefreshTokenReused(RefreshTokenInvalid):
    code = "refresh_token_reused"
    default_message = "Refresh token has already been used."


class Forbidden(AuthError):
    status_code = 403
    code = "forbidden"
    default_message = "Insufficient permissions."


class NotFound(AuthError):
    status_code = 404
    code = "not_found"
    default_message = "Resource not found."


class ResetTokenInvalid(NotFound):
    status_code = 400
    code = "invalid_reset_token"
    default_message = "Invalid or expired reset token."


class Conflict(AuthError):
    status_code = 409
    code = "conflict"
    default_message = "Resource already exists."


class Internal(AuthError):
    pass
