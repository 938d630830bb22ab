"""
API request and response models for the EstateGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Request models are never bound directly as FastAPI body parameters. Every
body goes through api.validation first (sanitization, then validation), so
the field messages below are what clients see in the aggregated
"Validation failed: ..." message.

Wire names follow the frontend's camelCase (newPassword, refreshToken,
createdAt); populate_by_name lets Python callers use the snake_case names.
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, EmailStr, Field, field_validator
from pydantic_core import PydanticCustomError

from auth.models import Account, Role, SessionInfo

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_ ]+$")
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 100
RESET_TOKEN_LENGTH = 64

_PASSWORD_RULES = (
    (re.compile(r"[a-z]"), "Password must contain at least one lowercase letter"),
    (re.compile(r"[A-Z]"), "Password must contain at least one uppercase letter"),
    (re.compile(r"\d"), "Password must contain at least one number"),
)


# ---------------------------------------------------------------------------
# Shared field checks
# ---------------------------------------------------------------------------


def check_password_strength(value: str) -> str:
    """Validate a new password, reporting every failed rule at once.

    Raises PydanticCustomError of type "password_strength" whose context
    carries the list of failures; api.validation expands it into one
    FieldError per rule.
    """
    failures: list[str] = []
    if len(value) < PASSWORD_MIN_LENGTH:
        failures.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters")
    if len(value) > PASSWORD_MAX_LENGTH:
        failures.append(f"Password must be at most {PASSWORD_MAX_LENGTH} characters")
    for pattern, message in _PASSWORD_RULES:
        if not pattern.search(value):
            failures.append(message)
    if failures:
        raise PydanticCustomError(
            "password_strength",
            "Password does not meet the strength requirements",
            {"failures": failures},
        )
    return value


def check_username(value: str) -> str:
    value = value.strip()
    if len(value) < 3:
        raise ValueError("Username must be at least 3 characters")
    if len(value) > 30:
        raise ValueError("Username must be less than 30 characters")
    if not USERNAME_PATTERN.match(value):
        raise ValueError("Username can only contain letters, numbers, and underscores")
    return value


def _normalize_email(value: Any) -> Any:
    if isinstance(value, str):
        value = value.strip().lower()
        if not value:
            raise ValueError("Email is required")
        if len(value) > 255:
            raise ValueError("Email must be at most 255 characters")
    return value


# Trimmed, lowercased, length-capped, then checked by email-validator.
NormalizedEmail = Annotated[EmailStr, BeforeValidator(_normalize_email)]


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(BaseModel):
    """Body for POST /api/v1/auth/register."""

    username: str
    email: NormalizedEmail
    password: str

    @field_validator("username")
    @classmethod
    def validate_username(cls, value: str) -> str:
        return check_username(value)

    @field_validator("password")
    @classmethod
    def validate_password(cls, value: str) -> str:
        return check_password_strength(value)


class LoginRequest(BaseModel):
    """Body for POST /api/v1/auth/login. Password strength is not re-checked here."""

    email: NormalizedEmail
    password: str = Field(min_length=1, max_length=PASSWORD_MAX_LENGTH)


class CreateAdminRequest(BaseModel):
    """Body for POST /api/v1/auth/create-admin. The admin sets a password via the reset flow."""

    username: str
    email: NormalizedEmail

    @field_validator("username")
    @classmethod
    def validate_username(cls, value: str) -> str:
        return check_username(value)


class ForgotPasswordRequest(BaseModel):
    email: NormalizedEmail


class ResetPasswordRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    token: str
    new_password: str = Field(alias="newPassword")

    @field_validator("token")
    @classmethod
    def validate_token(cls, value: str) -> str:
        if not value:
            raise ValueError("Reset token is required")
        if len(value) != RESET_TOKEN_LENGTH:
            raise ValueError("Invalid reset token format")
        return value

    @field_validator("new_password")
    @classmethod
    def validate_new_password(cls, value: str) -> str:
        return check_password_strength(value)


class RefreshRequest(BaseModel):
    """Optional body for POST /api/v1/auth/refresh when no cookie is sent."""

    model_config = ConfigDict(populate_by_name=True)

    refresh_token: Optional[str] = Field(default=None, alias="refreshToken", max_length=256)


class UpdateRoleRequest(BaseModel):
    role: Role


class SortOrderEnum(str, Enum):
    asc = "asc"
    desc = "desc"


class UserListQuery(BaseModel):
    """Query string for GET /api/v1/users."""

    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    role: Optional[Role] = None
    search: Optional[str] = Field(default=None, max_length=100)
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=10, ge=1, le=100)
    sort_by: str = Field(default="createdAt", alias="sortBy", max_length=30)
    sort_order: SortOrderEnum = Field(default=SortOrderEnum.desc, alias="sortOrder")


class ProfileUpdateRequest(BaseModel):
    """Body for PATCH /api/v1/user/profile.

    Only the listed fields are read; anything else in the body (role
    included) is ignored.
    """

    username: Optional[str] = None

    @field_validator("username")
    @classmethod
    def validate_username(cls, value: Optional[str]) -> Optional[str]:
        return check_username(value) if value is not None else None


class ContactRequest(BaseModel):
    """Body for POST /api/v1/contact."""

    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(min_length=1, max_length=100)
    email: NormalizedEmail
    phone: str = Field(min_length=1, max_length=30)
    subject: str = Field(default="General Inquiry", max_length=200)
    message: str = Field(min_length=1, max_length=5000)

    @field_validator("subject")
    @classmethod
    def default_subject(cls, value: str) -> str:
        return value or "General Inquiry"


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class AccountPublic(BaseModel):
    """Public projection of an Account.

    Never carries the password hash, reset-token fields, or session tokens.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: int
    username: str
    email: str
    role: Role
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    updated_at: Optional[datetime] = Field(default=None, alias="updatedAt")
    last_login_at: Optional[datetime] = Field(default=None, alias="lastLoginAt")

    @classmethod
    def from_account(cls, account: Account) -> "AccountPublic":
        """Factory Method -- the mapping lives beside the output model."""
        return cls(
            id=account.id,
            username=account.username,
            email=account.email,
            role=account.role,
            created_at=account.created_at,
            updated_at=account.updated_at,
            last_login_at=account.last_login_at,
        )


class SessionPublic(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    device: str
    user_agent: str = Field(alias="userAgent")
    created_at: datetime = Field(alias="createdAt")
    expires_at: datetime = Field(alias="expiresAt")

    @classmethod
    def from_session(cls, session: SessionInfo) -> "SessionPublic":
        return cls(
            device=session.device,
            user_agent=session.user_agent,
            created_at=session.created_at,
            expires_at=session.expires_at,
        )


class AuthPayload(BaseModel):
    """data block of login, register, and refresh responses."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    access_token: str = Field(alias="accessToken")
    token_type: str = Field(default="bearer", alias="tokenType")
    expires_at: datetime = Field(alias="expiresAt")
    user: Optional[AccountPublic] = None


class Pagination(BaseModel):
    model_config = ConfigDict(frozen=True)

    page: int
    limit: int
    total: int
    pages: int


def envelope(data: Any = None, message: Optional[str] = None, pagination: Optional[Pagination] = None) -> dict:
    """Build the uniform success envelope {success, message?, data?}.

    Pydantic models inside data are dumped by alias so the wire format stays
    camelCase.
    """
    body: dict[str, Any] = {"success": True}
    if message is not None:
        body["message"] = message
    if data is not None:
        body["data"] = _dump(data)
    if pagination is not None:
        body["pagination"] = pagination.model_dump()
    return body


def error_envelope(message: str, code: Optional[str] = None, errors: Optional[list[dict]] = None) -> dict:
    body: dict[str, Any] = {"success": False, "message": message}
    if code is not None:
        body["code"] = code
    if errors:
        body["errors"] = errors
    return body


def _dump(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, list):
        return [_dump(v) for v in value]
    if isinstance(value, dict):
        return {k: _dump(v) for k, v in value.items()}
    return value


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
