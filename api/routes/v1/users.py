"""
api/routes/v1/users.py -- Account administration REST endpoints.

Routes:
  GET    /api/v1/users          -- paginated account listing (admin)
  GET    /api/v1/users/stats    -- account and session statistics (admin)
  GET    /api/v1/users/{id}     -- one account (admin, or the account itself)
  PATCH  /api/v1/users/{id}     -- change an account's role (admin; owner rules)
  DELETE /api/v1/users/{id}     -- delete an account and its sessions (admin; owner rules)

Owner rules live in AuthService.update_user_role() / delete_user(), not here.
/users/stats is declared before /users/{id} so "stats" is never parsed as an id.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import AccountPublic, Pagination, UpdateRoleRequest, UserListQuery, envelope
from api.validation import validated_body, validated_query
from auth.dependencies import require_admin, require_auth
from auth.models import Identity
from auth.service import AuthService

# Auth policy:
# - GET    /users, /users/stats:  requires admin (require_admin)
# - GET    /users/{id}:           requires auth; self or admin checked in the service
# - PATCH  /users/{id}:           requires admin; owner rules in the service
# - DELETE /users/{id}:           requires admin; owner rules in the service
router = APIRouter()


def _service(request: Request) -> AuthService:
    return request.app.state.auth_service


@router.get("/users")
def list_users(
    request: Request,
    identity: Identity = Depends(require_admin),
    query: UserListQuery = Depends(validated_query(UserListQuery)),
) -> dict:
    """List accounts with optional role filter and username/email search."""
    page = _service(request).list_users(
        role=query.role,
        search=query.search,
        page=query.page,
        limit=query.limit,
        sort_by=query.sort_by,
        sort_order=query.sort_order.value,
    )
    return envelope(
        [AccountPublic.from_account(a) for a in page.accounts],
        "Users fetched successfully",
        pagination=Pagination(page=page.page, limit=page.limit, total=page.total, pages=page.pages),
    )


@router.get("/users/stats")
def user_stats(request: Request, identity: Identity = Depends(require_admin)) -> dict:
    return envelope(_service(request).get_user_stats(), "User statistics fetched successfully")


@router.get("/users/{user_id}")
def get_user(request: Request, user_id: int, identity: Identity = Depends(require_auth)) -> dict:
    account = _service(request).get_user_by_id(identity, user_id)
    return envelope(AccountPublic.from_account(account))


@router.patch("/users/{user_id}")
def update_user_role(
    request: Request,
    user_id: int,
    identity: Identity = Depends(require_admin),
    body: UpdateRoleRequest = Depends(validated_body(UpdateRoleRequest)),
) -> dict:
    account = _service(request).update_user_role(identity, user_id, body.role)
    return envelope(AccountPublic.from_account(account), "User role updated successfully")


@router.delete("/users/{user_id}")
def delete_user(request: Request, user_id: int, identity: Identity = Depends(require_admin)) -> dict:
    _service(request).delete_user(identity, user_id)
    return envelope(message="User deleted successfully")
