"""
auth/dependencies.py -- FastAPI Depends() helpers for role-gated routes.

The access token is read in priority order:
  1. Authorization: Bearer <token> header -- API clients and the SPA.
  2. "access_token" cookie -- browser clients that keep the token in a cookie.

require_role(minimum) builds a dependency that verifies the token through the
TokenService on app.state, compares the embedded role against the tier
ordering user < broker < admin < owner, and returns the caller's Identity.
The identity is also placed on request.state.identity for downstream code;
nothing is stored globally.

Failures raise the AuthError taxonomy, which api/main.py renders:
  no token / bad signature / expired  -> Unauthenticated subclasses (401)
  role below minimum                  -> Forbidden (403)

Layer rule: no imports from api/. This module may import from fastapi
because it is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from collections.abc import Callable

from fastapi import Request

from auth.errors import Forbidden, Unauthenticated
from auth.models import Identity, Role
from auth.sessions import TokenService

ACCESS_COOKIE = "access_token"


def extract_access_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        if token:
            return token
    return request.cookies.get(ACCESS_COOKIE) or None


def has_at_least(role: Role | str, minimum: Role | str) -> bool:
    """Return True if role sits at or above minimum in the tier ordering."""
    return Role(role).at_least(minimum)


def _token_service(request: Request) -> TokenService:
    return request.app.state.token_service


def require_role(minimum: Role | str) -> Callable[[Request], Identity]:
    """Return a dependency that admits callers whose role is at least minimum.

    Use as a FastAPI dependency:
        @router.get("/admin-only")
        def route(identity: Identity = Depends(require_role(Role.admin))): ...
    """
    minimum = Role(minimum)

    def dependency(request: Request) -> Identity:
        token = extract_access_token(request)
        if token is None:
            raise Unauthenticated("Access token required.")
        claims = _token_service(request).verify_access_token(token)
        if not has_at_least(claims.role, minimum):
            raise Forbidden(f"{minimum.value.capitalize()} access required.")
        identity = Identity(account_id=claims.account_id, role=claims.role)
        request.state.identity = identity
        return identity

    dependency.__name__ = f"require_{minimum.value}"
    return dependency


require_auth = require_role(Role.user)
require_broker = require_role(Role.broker)
require_admin = require_role(Role.admin)
require_owner = require_role(Role.owner)
