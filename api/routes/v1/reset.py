"""
api/routes/v1/reset.py -- Password reset REST endpoints.

Routes:
  POST /api/v1/auth/forgot-password              -- request a reset link (always 200)
  POST /api/v1/auth/reset-password               -- consume a token and set a new password
  GET  /api/v1/auth/validate-reset-token?token=  -- {isValid, email?}

Security:
  forgot-password answers identically for registered and unknown emails, and
  its rate limit is the tightest in the service.
  A successful reset signs the account out of every device.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request

from api.limiter import FORGOT_PASSWORD_LIMIT, RESET_PASSWORD_LIMIT, limiter
from api.models import ForgotPasswordRequest, ResetPasswordRequest, envelope
from api.validation import validated_body
from auth.errors import BadRequest
from auth.reset import RESET_SUCCESS_MESSAGE, PasswordResetService
from core.sanitize import CREDENTIAL_RULES, sanitize

# Auth policy: all three endpoints are public -- the token is the credential.
router = APIRouter()


def _service(request: Request) -> PasswordResetService:
    return request.app.state.reset_service


@limiter.limit(FORGOT_PASSWORD_LIMIT)
@router.post("/auth/forgot-password")
def forgot_password(
    request: Request,
    body: ForgotPasswordRequest = Depends(validated_body(ForgotPasswordRequest)),
) -> dict:
    message = _service(request).forgot(body.email)
    return envelope(message=message)


@limiter.limit(RESET_PASSWORD_LIMIT)
@router.post("/auth/reset-password")
def reset_password(
    request: Request,
    body: ResetPasswordRequest = Depends(validated_body(ResetPasswordRequest, CREDENTIAL_RULES)),
) -> dict:
    _service(request).reset(body.token, body.new_password)
    return envelope(message=RESET_SUCCESS_MESSAGE)


@router.get("/auth/validate-reset-token")
def validate_reset_token(request: Request, token: Optional[str] = None) -> dict:
    """Report whether a reset token is live without consuming it."""
    cleaned = sanitize({"token": token or ""}, CREDENTIAL_RULES).value
    token = cleaned["token"] if cleaned else ""
    if not token:
        raise BadRequest("Reset token is required")
    return envelope(_service(request).validate_token(token))
