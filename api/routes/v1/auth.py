"""
api/routes/v1/auth.py -- Authentication and self-service REST endpoints.

Routes:
  POST  /api/v1/auth/register      -- create a user account; sets refresh cookie; 201
  POST  /api/v1/auth/login         -- password login; sets refresh cookie
  POST  /api/v1/auth/logout        -- end this device's session (requires auth)
  POST  /api/v1/auth/logout-all    -- end every session of the caller (requires auth)
  POST  /api/v1/auth/refresh       -- rotate the refresh token (cookie or body)
  POST  /api/v1/auth/create-admin  -- create an admin without a password (owner only)
  GET   /api/v1/auth/me            -- current account (requires auth)
  GET   /api/v1/user/profile       -- current account profile (requires auth)
  PATCH /api/v1/user/profile       -- edit own username (requires auth)
  GET   /api/v1/user/sessions      -- list own live sessions (requires auth)

Security:
  Register and login are rate-limited per IP (see api.limiter).
  [C1] AuthService.login() provides timing equalization -- never inline the
       lookup + verify here.
  Cache-Control: no-store on every response that carries a token.
  The refresh token only ever leaves the server in the httpOnly cookie.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import LOGIN_LIMIT, REGISTER_LIMIT, limiter
from api.models import (
    AccountPublic,
    AuthPayload,
    CreateAdminRequest,
    LoginRequest,
    ProfileUpdateRequest,
    RefreshRequest,
    RegisterRequest,
    SessionPublic,
    envelope,
    error_envelope,
)
from api.validation import validated_body
from auth.dependencies import require_auth, require_owner
from auth.errors import RefreshTokenInvalid
from auth.models import Account, Identity, TokenPair
from auth.service import AuthService, device_meta_from_user_agent
from auth.tokens import REFRESH_COOKIE, clear_refresh_cookie, set_refresh_cookie
from core.sanitize import CREDENTIAL_RULES

# Auth policy:
# - POST  /auth/register, /auth/login, /auth/refresh:  public
# - POST  /auth/logout, /auth/logout-all:              requires auth (require_auth)
# - GET   /auth/me, /user/profile, /user/sessions:     requires auth (require_auth)
# - PATCH /user/profile:                               requires auth (require_auth)
# - POST  /auth/create-admin:                          requires owner (require_owner)
router = APIRouter()


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


def _token_response(
    pair: TokenPair, message: str, account: Account | None = None, status_code: int = 200
) -> JSONResponse:
    payload = AuthPayload(
        access_token=pair.access_token,
        expires_at=pair.access_expires_at,
        user=AccountPublic.from_account(account) if account is not None else None,
    )
    resp = JSONResponse(status_code=status_code, content=envelope(payload, message))
    set_refresh_cookie(resp, pair.refresh_token)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(REGISTER_LIMIT)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", status_code=201)
def register(
    request: Request,
    body: RegisterRequest = Depends(validated_body(RegisterRequest, CREDENTIAL_RULES)),
) -> JSONResponse:
    """Create a user-role account and sign it in on this device."""
    account, pair = _service(request).register(
        body.username,
        body.email,
        body.password,
        device_meta_from_user_agent(request.headers.get("user-agent")),
    )
    return _token_response(pair, "User registered successfully", account, status_code=201)


@limiter.limit(LOGIN_LIMIT)
@router.post("/auth/login")
def login(
    request: Request,
    body: LoginRequest = Depends(validated_body(LoginRequest, CREDENTIAL_RULES)),
) -> JSONResponse:
    """Authenticate with email and password.

    Unknown email, wrong password, and an account without a password all
    produce the same 401 bad_credentials response.
    """
    account, pair = _service(request).login(
        body.email,
        body.password,
        device_meta_from_user_agent(request.headers.get("user-agent")),
    )
    return _token_response(pair, "Login successful", account)


@router.post("/auth/refresh")
def refresh(
    request: Request,
    body: RefreshRequest = Depends(validated_body(RefreshRequest, CREDENTIAL_RULES)),
) -> JSONResponse:
    """Exchange the refresh token (cookie first, then body) for a new pair.

    A rejected token also clears the cookie so the browser stops presenting it.
    """
    token = request.cookies.get(REFRESH_COOKIE) or body.refresh_token
    try:
        pair = _service(request).refresh(token)
    except RefreshTokenInvalid as exc:
        resp = JSONResponse(status_code=exc.status_code, content=error_envelope(exc.message, exc.code))
        clear_refresh_cookie(resp)
        resp.headers["Cache-Control"] = "no-store"
        return resp
    return _token_response(pair, "Token refreshed successfully")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout")
def logout(request: Request, identity: Identity = Depends(require_auth)) -> JSONResponse:
    """End the session bound to this device's refresh cookie. Idempotent."""
    _service(request).logout(identity, request.cookies.get(REFRESH_COOKIE))
    resp = JSONResponse(content=envelope(message="Logged out successfully"))
    clear_refresh_cookie(resp)
    return resp


@router.post("/auth/logout-all")
def logout_all(request: Request, identity: Identity = Depends(require_auth)) -> JSONResponse:
    removed = _service(request).logout_all(identity)
    resp = JSONResponse(content=envelope({"sessionsRevoked": removed}, "Logged out from all devices"))
    clear_refresh_cookie(resp)
    return resp


@router.get("/auth/me")
def me(request: Request, identity: Identity = Depends(require_auth)) -> dict:
    """Return the account behind the access token."""
    account = _service(request).get_profile(identity.account_id)
    return envelope(AccountPublic.from_account(account))


@router.get("/user/profile")
def get_profile(request: Request, identity: Identity = Depends(require_auth)) -> dict:
    account = _service(request).get_profile(identity.account_id)
    return envelope(AccountPublic.from_account(account))


@router.patch("/user/profile")
def update_profile(
    request: Request,
    identity: Identity = Depends(require_auth),
    body: ProfileUpdateRequest = Depends(validated_body(ProfileUpdateRequest)),
) -> dict:
    """Edit own profile. The role cannot be changed here."""
    account = _service(request).update_profile(identity.account_id, username=body.username)
    return envelope(AccountPublic.from_account(account), "Profile updated successfully")


@router.get("/user/sessions")
def list_sessions(request: Request, identity: Identity = Depends(require_auth)) -> dict:
    """List the caller's live sessions, newest first. Token values are never included."""
    sessions = _service(request).list_sessions(identity.account_id)
    return envelope([SessionPublic.from_session(s) for s in sessions])


# ---------------------------------------------------------------------------
# Owner only
# ---------------------------------------------------------------------------


@router.post("/auth/create-admin", status_code=201)
def create_admin(
    request: Request,
    identity: Identity = Depends(require_owner),
    body: CreateAdminRequest = Depends(validated_body(CreateAdminRequest)),
) -> dict:
    """Create an admin account. The new admin receives a credential-setup link by mail."""
    account = _service(request).create_admin(body.username, body.email)
    return envelope(AccountPublic.from_account(account), "Admin user created successfully")
