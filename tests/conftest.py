"""
tests/conftest.py -- Shared test fixtures for EstateGate.

This module provides:
  - store / token_service / reset_service / auth_service: unit-level fixtures
    on a fresh in-memory AccountStore per test
  - RecordingMailer: stands in for the outbound mailer and keeps every call
  - make_account / auth_headers / password: account factory (precomputed
    bcrypt hash) and Bearer header builder
  - api: ApiHarness wrapping a TestClient on the real FastAPI app with a
    patched lifespan, plus the store and mailer behind it

Design: the API fixture uses a named shared-memory SQLite URI (not plain
:memory:) because TestClient runs route handlers in a thread pool. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any auth module import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import functools
import itertools
import os
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.testclient import TestClient

from api.limiter import limiter
from api.main import app
from auth.mailer import ContactNotification, MailDeliveryError
from auth.models import Account, Role
from auth.reset import PasswordResetService
from auth.service import AuthService
from auth.sessions import TokenService
from auth.store import AccountStore
from auth.tokens import create_access_token, hash_password

# Rate limits are exercised by slowapi itself; tests would trip them.
limiter.enabled = False

PASSWORD = "Passw0rd123"
# bcrypt at 12 rounds is slow; hash the shared test password once.
PASSWORD_HASH = hash_password(PASSWORD)

_db_ids = itertools.count()


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class RecordingMailer:
    """Mailer double that records calls and can be told to fail."""

    def __init__(self) -> None:
        self.resets: list[tuple[Account, str, str]] = []
        self.contacts: list[ContactNotification] = []
        self.fail = False

    def send_password_reset(self, account: Account, token: str, reset_link: str) -> None:
        if self.fail:
            raise MailDeliveryError("provider unavailable")
        self.resets.append((account, token, reset_link))

    def send_contact_notification(self, data: ContactNotification) -> None:
        if self.fail:
            raise MailDeliveryError("provider unavailable")
        self.contacts.append(data)

    @property
    def last_token(self) -> str:
        return self.resets[-1][1]


def _create_account(
    store: AccountStore,
    username: str = "alice",
    email: str = "alice@example.com",
    role: Role = Role.user,
    password_hash: str | None = PASSWORD_HASH,
) -> Account:
    account_id = store.create_account(
        Account(username=username, email=email, role=role, hashed_password=password_hash)
    )
    return store.find_by_id(account_id)


def _bearer(account: Account) -> dict[str, str]:
    token, _ = create_access_token(account.id, account.role)
    return {"Authorization": f"Bearer {token}"}


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def password() -> str:
    """Plaintext of the hash every make_account() account is created with."""
    return PASSWORD


@pytest.fixture
def auth_headers() -> Callable[[Account], dict[str, str]]:
    """Return a function that builds a Bearer header for an account."""
    return _bearer


@pytest.fixture
def store() -> Generator[AccountStore, None, None]:
    s = AccountStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def make_account(store: AccountStore) -> Callable[..., Account]:
    """Return a factory that inserts an account directly into the store fixture."""
    return functools.partial(_create_account, store)


@pytest.fixture
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture
def token_service(store: AccountStore) -> TokenService:
    return TokenService(store)


@pytest.fixture
def reset_service(store: AccountStore, token_service: TokenService, mailer: RecordingMailer) -> PasswordResetService:
    return PasswordResetService(store, token_service, mailer)


@pytest.fixture
def auth_service(
    store: AccountStore, token_service: TokenService, reset_service: PasswordResetService
) -> AuthService:
    return AuthService(store, token_service, reset_service)


# ---------------------------------------------------------------------------
# API fixture
# ---------------------------------------------------------------------------


@dataclass
class ApiHarness:
    client: TestClient
    store: AccountStore
    mailer: RecordingMailer
    auth_service: AuthService

    def make_account(self, *args, **kwargs) -> Account:
        return _create_account(self.store, *args, **kwargs)

    def headers(self, account: Account) -> dict[str, str]:
        return _bearer(account)


def _patch_lifespan(store: AccountStore, mailer: RecordingMailer):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and the recording mailer into app.state so
    TestClient routes see an isolated DB and never send mail.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        tokens = TokenService(store)
        resets = PasswordResetService(store, tokens, mailer)
        app.state.store = store
        app.state.token_service = tokens
        app.state.mailer = mailer
        app.state.reset_service = resets
        app.state.auth_service = AuthService(store, tokens, resets)
        yield

    return test_lifespan


@pytest.fixture
def api() -> Generator[ApiHarness, None, None]:
    """Yield an ApiHarness around a TestClient with a fresh database."""
    store = AccountStore(db_url=f"sqlite:///file:test_api_{next(_db_ids)}?mode=memory&cache=shared&uri=true")
    mailer = RecordingMailer()
    app.router.lifespan_context = _patch_lifespan(store, mailer)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield ApiHarness(client=client, store=store, mailer=mailer, auth_service=app.state.auth_service)

    store.close()
