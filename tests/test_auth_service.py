"""
tests/test_auth_service.py -- Unit tests for AuthService.

Coverage:
  - register / login / logout / refresh, including the uniform login failure
  - Self-service profile edits
  - Owner bootstrap and admin creation (setup mail issued)
  - Role administration rules, in the order they are checked
  - Listing, statistics, and the store-failure translation to Internal
  - User-Agent -> device label mapping
"""

from __future__ import annotations

from collections.abc import Callable

import pytest
from sqlalchemy.exc import SQLAlchemyError

from auth.errors import (
    BadRequest,
    Conflict,
    Forbidden,
    Internal,
    InvalidCredentials,
    NotFound,
    RefreshTokenInvalid,
)
from auth.models import Account, DeviceMeta, Identity, Role
from auth.service import AuthService, device_meta_from_user_agent, extract_device_label
from auth.store import AccountStore
from auth.tokens import verify_password

MakeAccount = Callable[..., Account]


def _identity(account: Account) -> Identity:
    return Identity(account_id=account.id, role=account.role)


class TestRegisterAndLogin:
    def test_register_creates_user_and_session(self, auth_service: AuthService, store: AccountStore) -> None:
        account, pair = auth_service.register("alice", "alice@example.com", "Passw0rd123", DeviceMeta("Mac", "ua"))
        assert account.role is Role.user
        assert account.last_login_at is not None
        assert verify_password("Passw0rd123", account.hashed_password)
        assert store.count_sessions(account.id) == 1
        assert pair.access_token

    def test_register_duplicate_email(self, auth_service: AuthService, make_account: MakeAccount) -> None:
        make_account()
        with pytest.raises(Conflict) as exc_info:
            auth_service.register("other", "alice@example.com", "Passw0rd123")
        assert exc_info.value.message == "User with this email already exists."

    def test_register_duplicate_username(self, auth_service: AuthService, make_account: MakeAccount) -> None:
        make_account()
        with pytest.raises(Conflict) as exc_info:
            auth_service.register("alice", "other@example.com", "Passw0rd123")
        assert exc_info.value.message == "Username already taken."

    def test_login_success_updates_last_login(
        self, auth_service: AuthService, make_account: MakeAccount, password: str
    ) -> None:
        created = make_account()
        assert created.last_login_at is None
        account, pair = auth_service.login("alice@example.com", password)
        assert account.id == created.id
        assert account.last_login_at is not None
        assert pair.refresh_token

    def test_login_failures_are_indistinguishable(
        self, auth_service: AuthService, make_account: MakeAccount, password: str
    ) -> None:
        """Wrong password, unknown email, and passwordless account raise the same error."""
        make_account()
        make_account("admin1", "admin1@example.com", role=Role.admin, password_hash=None)

        errors = []
        for email, secret in [
            ("alice@example.com", "Wrong0ne"),
            ("nobody@example.com", password),
            ("admin1@example.com", password),
        ]:
            with pytest.raises(InvalidCredentials) as exc_info:
                auth_service.login(email, secret)
            errors.append((exc_info.value.status_code, exc_info.value.code, exc_info.value.message))
        assert len(set(errors)) == 1
        assert errors[0] == (401, "bad_credentials", "Invalid email or password.")

    def test_logout_without_token_is_noop(self, auth_service: AuthService, make_account: MakeAccount) -> None:
        account = make_account()
        assert auth_service.logout(_identity(account), None) is False

    def test_logout_removes_only_that_session(
        self, auth_service: AuthService, store: AccountStore, make_account: MakeAccount, password: str
    ) -> None:
        account = make_account()
        _, first = auth_service.login("alice@example.com", password)
        auth_service.login("alice@example.com", password)
        assert auth_service.logout(_identity(account), first.refresh_token) is True
        assert store.count_sessions(account.id) == 1

    def test_logout_all(self, auth_service: AuthService, make_account: MakeAccount, password: str) -> None:
        account = make_account()
        auth_service.login("alice@example.com", password)
        auth_service.login("alice@example.com", password)
        assert auth_service.logout_all(_identity(account)) == 2

    def test_refresh_requires_token(self, auth_service: AuthService) -> None:
        with pytest.raises(RefreshTokenInvalid) as exc_info:
            auth_service.refresh(None)
        assert exc_info.value.message == "Refresh token required."

    def test_refresh_rotates(self, auth_service: AuthService, make_account: MakeAccount, password: str) -> None:
        make_account()
        _, pair = auth_service.login("alice@example.com", password)
        rotated = auth_service.refresh(pair.refresh_token)
        assert rotated.refresh_token != pair.refresh_token


class TestProfile:
    def test_update_username(self, auth_service: AuthService, make_account: MakeAccount) -> None:
        account = make_account()
        updated = auth_service.update_profile(account.id, username="alice_2")
        assert updated.username == "alice_2"
        assert updated.role is Role.user

    def test_update_without_fields(self, auth_service: AuthService, make_account: MakeAccount) -> None:
        account = make_account()
        with pytest.raises(BadRequest) as exc_info:
            auth_service.update_profile(account.id)
        assert exc_info.value.message == "No valid fields to update."

    def test_update_to_taken_username(self, auth_service: AuthService, make_account: MakeAccount) -> None:
        make_account()
        bob = make_account("bob", "bob@example.com")
        with pytest.raises(Conflict):
            auth_service.update_profile(bob.id, username="alice")

    def test_same_username_is_accepted(self, auth_service: AuthService, make_account: MakeAccount) -> None:
        account = make_account()
        assert auth_service.update_profile(account.id, username="alice").username == "alice"

    def test_profile_of_deleted_account(self, auth_service: AuthService) -> None:
        with pytest.raises(NotFound) as exc_info:
            auth_service.get_profile(404)
        assert exc_info.value.message == "User not found."


class TestBootstrap:
    def test_create_owner_once(self, auth_service: AuthService) -> None:
        owner = auth_service.create_owner("owner", "owner@example.com", "Passw0rd123")
        assert owner.role is Role.owner
        with pytest.raises(Conflict):
            auth_service.create_owner("owner2", "owner2@example.com", "Passw0rd123")

    def test_create_admin_issues_setup_token(
        self, auth_service: AuthService, store: AccountStore, mailer, password: str
    ) -> None:
        admin = auth_service.create_admin("newadmin", "newadmin@example.com")
        assert admin.role is Role.admin
        assert admin.hashed_password is None
        assert len(mailer.resets) == 1
        sent_to, token, link = mailer.resets[0]
        assert sent_to.id == admin.id
        assert link.endswith(f"?token={token}")
        assert store.find_by_id(admin.id).reset_token_hash is not None

        # The admin cannot sign in until the setup link is used.
        with pytest.raises(InvalidCredentials):
            auth_service.login("newadmin@example.com", password)

    def test_create_admin_duplicate(self, auth_service: AuthService, make_account: MakeAccount) -> None:
        make_account()
        with pytest.raises(Conflict):
            auth_service.create_admin("someone", "alice@example.com")


class TestRoleAdministration:
    @pytest.fixture
    def people(self, make_account: MakeAccount) -> dict[str, Account]:
        return {
            "owner": make_account("owner", "owner@example.com", role=Role.owner),
            "admin": make_account("admin", "admin@example.com", role=Role.admin),
            "admin2": make_account("admin2", "admin2@example.com", role=Role.admin),
            "user": make_account("user", "user@example.com"),
        }

    def test_cannot_change_own_role(self, auth_service: AuthService, people: dict[str, Account]) -> None:
        with pytest.raises(BadRequest) as exc_info:
            auth_service.update_user_role(_identity(people["owner"]), people["owner"].id, Role.user)
        assert exc_info.value.message == "You cannot change your own role."

    def test_missing_target(self, auth_service: AuthService, people: dict[str, Account]) -> None:
        with pytest.raises(NotFound):
            auth_service.update_user_role(_identity(people["admin"]), 999, Role.broker)

    def test_admin_cannot_promote_to_admin(self, auth_service: AuthService, people: dict[str, Account]) -> None:
        with pytest.raises(Forbidden) as exc_info:
            auth_service.update_user_role(_identity(people["admin"]), people["user"].id, Role.admin)
        assert exc_info.value.message == "Only owners can promote users to admin or owner roles."

    def test_admin_cannot_modify_admin(self, auth_service: AuthService, people: dict[str, Account]) -> None:
        with pytest.raises(Forbidden) as exc_info:
            auth_service.update_user_role(_identity(people["admin"]), people["admin2"].id, Role.user)
        assert exc_info.value.message == "Only owners can modify admin or owner roles."

    def test_owner_role_never_assigned(self, auth_service: AuthService, people: dict[str, Account]) -> None:
        with pytest.raises(BadRequest) as exc_info:
            auth_service.update_user_role(_identity(people["owner"]), people["user"].id, Role.owner)
        assert exc_info.value.message == "Owner role assignment requires special authorization."

    def test_admin_promotes_user_to_broker(self, auth_service: AuthService, people: dict[str, Account]) -> None:
        updated = auth_service.update_user_role(_identity(people["admin"]), people["user"].id, "broker")
        assert updated.role is Role.broker

    def test_owner_promotes_user_to_admin(self, auth_service: AuthService, people: dict[str, Account]) -> None:
        updated = auth_service.update_user_role(_identity(people["owner"]), people["user"].id, Role.admin)
        assert updated.role is Role.admin

    def test_delete_rules(self, auth_service: AuthService, store: AccountStore, people: dict[str, Account]) -> None:
        with pytest.raises(BadRequest):
            auth_service.delete_user(_identity(people["admin"]), people["admin"].id)
        with pytest.raises(Forbidden):
            auth_service.delete_user(_identity(people["admin"]), people["admin2"].id)

        auth_service.delete_user(_identity(people["admin"]), people["user"].id)
        assert store.find_by_id(people["user"].id) is None
        auth_service.delete_user(_identity(people["owner"]), people["admin2"].id)
        assert store.find_by_id(people["admin2"].id) is None

    def test_get_user_by_id_access(self, auth_service: AuthService, people: dict[str, Account]) -> None:
        user = people["user"]
        assert auth_service.get_user_by_id(_identity(user), user.id).id == user.id
        assert auth_service.get_user_by_id(_identity(people["admin"]), user.id).id == user.id
        with pytest.raises(Forbidden) as exc_info:
            auth_service.get_user_by_id(_identity(user), people["admin"].id)
        assert exc_info.value.message == "Access denied."

    def test_list_users(self, auth_service: AuthService, people: dict[str, Account]) -> None:
        page = auth_service.list_users(role="admin", sort_by="username", sort_order="asc")
        assert [a.username for a in page.accounts] == ["admin", "admin2"]
        assert page.total == 2

        page = auth_service.list_users(search="USER")
        assert [a.username for a in page.accounts] == ["user"]

    def test_list_users_clamps_paging(self, auth_service: AuthService, people: dict[str, Account]) -> None:
        page = auth_service.list_users(page=0, limit=500)
        assert (page.page, page.limit, page.total, page.pages) == (1, 100, 4, 1)

        page = auth_service.list_users(page=2, limit=3)
        assert len(page.accounts) == 1
        assert page.pages == 2

    def test_stats(self, auth_service: AuthService, people: dict[str, Account], password: str) -> None:
        auth_service.login("user@example.com", password)
        stats = auth_service.get_user_stats()
        assert stats["totalUsers"] == 4
        assert stats["byRole"] == {"user": 1, "broker": 0, "admin": 2, "owner": 1}
        assert stats["newLast7Days"] == 4
        assert stats["newLast30Days"] == 4
        assert stats["activeSessionUsers"] == 1


class TestStoreFailures:
    def test_store_error_becomes_internal(
        self, auth_service: AuthService, store: AccountStore, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def broken(*args, **kwargs):
            raise SQLAlchemyError("database is locked")

        monkeypatch.setattr(store, "find_by_id", broken)
        with pytest.raises(Internal) as exc_info:
            auth_service.get_profile(1)
        assert exc_info.value.status_code == 500
        assert "locked" not in exc_info.value.message


class TestDeviceLabels:
    @pytest.mark.parametrize(
        ("user_agent", "label"),
        [
            ("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Mobile/15E148", "Mobile Device"),
            ("Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X)", "Tablet"),
            ("Mozilla/5.0 (Windows NT 10.0; Win64; x64)", "Windows PC"),
            ("Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0)", "Mac"),
            ("Mozilla/5.0 (X11; Linux x86_64)", "Linux PC"),
            ("curl/8.4.0", "Unknown Device"),
            (None, "Unknown Device"),
        ],
    )
    def test_extract_device_label(self, user_agent: str | None, label: str) -> None:
        assert extract_device_label(user_agent) == label

    def test_device_meta_truncates_user_agent(self) -> None:
        meta = device_meta_from_user_agent("x" * 1000)
        assert len(meta.user_agent) == 500
        assert meta.device == "Unknown Device"
