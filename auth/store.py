"""
auth/store.py -- SQLAlchemy Core persistence layer for accounts and refresh sessions.

Pattern: Repository + Data Mapper.
AccountStore is the repository; _row_to_account / _row_to_session are the
mappers. Services and route code never touch SQL directly.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Only HMAC hashes of refresh and reset tokens are stored, never raw values.

Atomicity:
  Every mutation that must not race runs as ONE conditional statement (or
  one engine.begin() transaction) so concurrent callers cannot both win:
    rotate_session()       UPDATE ... WHERE token_hash = :old AND expires_at > :now,
                           then records :old in retired_refresh_tokens
    consume_reset_token()  UPDATE ... WHERE reset_token_hash = :h AND reset_token_expires_at > :now
  rowcount == 1 identifies the single winner.

Session cap:
  add_session() drops the account's expired rows, inserts the new row, then
  evicts the oldest rows beyond max_sessions -- all in one transaction.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    or_,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.errors import Conflict
from auth.models import Account, RefreshSession, Role

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_accounts = Table(
    "accounts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(30), nullable=False, unique=True),
    Column("email", String(255), nullable=False, unique=True),  # always lowercase
    Column("hashed_password", Text),  # NULL until an owner-created admin sets one
    Column("role", String(20), nullable=False, server_default="user", index=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Column("last_login_at", DateTime(timezone=True)),
    Column("reset_token_hash", String(64), unique=True),  # HMAC-SHA256 hex
    Column("reset_token_expires_at", DateTime(timezone=True)),
    Column("reset_token_created_at", DateTime(timezone=True)),
)

_sessions = Table(
    "refresh_sessions",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, nullable=False, index=True),
    Column("token_hash", String(64), nullable=False, unique=True),  # HMAC-SHA256 hex
    Column("previous_token_hash", String(64), index=True),
    Column("device", String(100), nullable=False, server_default=""),
    Column("user_agent", Text, nullable=False, server_default=""),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False, index=True),
)

# Every hash a session has rotated away from. Rows live exactly as long as
# their session; _drop_orphaned_retired() runs wherever sessions are deleted.
_retired = Table(
    "retired_refresh_tokens",
    _metadata,
    Column("token_hash", String(64), primary_key=True),
    Column("session_id", Integer, nullable=False, index=True),
    Column("retired_at", DateTime(timezone=True), nullable=False),
)

# Columns accepted by update_account(). Anything else is a programming error.
_UPDATABLE_FIELDS = frozenset(
    {
        "username",
        "hashed_password",
        "role",
        "last_login_at",
        "reset_token_hash",
        "reset_token_expires_at",
        "reset_token_created_at",
    }
)

_SORTABLE_FIELDS = {
    "createdAt": _accounts.c.created_at,
    "created_at": _accounts.c.created_at,
    "username": _accounts.c.username,
    "email": _accounts.c.email,
    "role": _accounts.c.role,
    "lastLoginAt": _accounts.c.last_login_at,
    "last_login_at": _accounts.c.last_login_at,
}


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite returns naive datetimes; every stored value is UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _drop_orphaned_retired(conn) -> None:
    conn.execute(_retired.delete().where(_retired.c.session_id.not_in(select(_sessions.c.id))))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AccountStore:
    """Repository for Account and RefreshSession records.

    Usage:
        store = AccountStore("sqlite:///:memory:")
        account_id = store.create_account(Account(username="alice", email="a@example.com"))
        account = store.find_by_email("a@example.com")
        store.close()
    """

    def __init__(self, db_url: str = "sqlite:///estategate.db") -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Account queries
    # ------------------------------------------------------------------

    def create_account(self, account: Account) -> int:
        """Insert a new account and return its ID.

        Raises Conflict if the email or username already exists. Services check
        first for a friendlier message; this catches the concurrent-insert race.
        """
        now = utcnow()
        try:
            with self.engine.begin() as conn:
                result = conn.execute(
                    _accounts.insert().values(
                        username=account.username,
                        email=account.email.strip().lower(),
                        hashed_password=account.hashed_password,
                        role=Role(account.role).value,
                        created_at=now,
                        updated_at=now,
                        last_login_at=account.last_login_at,
                    )
                )
                return result.inserted_primary_key[0]
        except IntegrityError as exc:
            raise Conflict("An account with that email or username already exists.") from exc

    def find_by_email(self, email: str) -> Account | None:
        """Look up an account by email (case-insensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.email == email.strip().lower())).fetchone()
        return _row_to_account(row) if row is not None else None

    def find_by_username(self, username: str) -> Account | None:
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.username == username)).fetchone()
        return _row_to_account(row) if row is not None else None

    def find_by_id(self, account_id: int) -> Account | None:
        """Look up an account by primary key. Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_accounts.select().where(_accounts.c.id == account_id)).fetchone()
        return _row_to_account(row) if row is not None else None

    def find_by_live_reset_token(self, token_hash: str, now: datetime | None = None) -> Account | None:
        """Return the account holding this reset token if it has not expired."""
        now = now or utcnow()
        with self.engine.connect() as conn:
            row = conn.execute(
                _accounts.select().where(
                    (_accounts.c.reset_token_hash == token_hash) & (_accounts.c.reset_token_expires_at > now)
                )
            ).fetchone()
        return _row_to_account(row) if row is not None else None

    def list_accounts(
        self,
        role: str | None = None,
        search: str | None = None,
        offset: int = 0,
        limit: int = 10,
        sort_by: str = "createdAt",
        sort_order: str = "desc",
    ) -> tuple[list[Account], int]:
        """Return one page of accounts and the total matching count.

        sort_by is resolved through a whitelist; unknown values fall back to
        created_at so user input never reaches ORDER BY.
        """
        conditions = []
        if role:
            conditions.append(_accounts.c.role == role)
        if search:
            # Search text is literal: % and _ typed by the caller are not wildcards.
            pattern = f"%{_escape_like(search.lower())}%"
            conditions.append(
                or_(
                    func.lower(_accounts.c.username).like(pattern, escape="\\"),
                    _accounts.c.email.like(pattern, escape="\\"),
                )
            )

        column = _SORTABLE_FIELDS.get(sort_by, _accounts.c.created_at)
        order = column.asc() if sort_order == "asc" else column.desc()

        query = _accounts.select()
        count_query = select(func.count()).select_from(_accounts)
        for condition in conditions:
            query = query.where(condition)
            count_query = count_query.where(condition)

        with self.engine.connect() as conn:
            total = conn.execute(count_query).scalar() or 0
            rows = conn.execute(query.order_by(order, _accounts.c.id).offset(offset).limit(limit)).fetchall()
        return [_row_to_account(r) for r in rows], total

    def update_account(self, account_id: int, **fields) -> bool:
        """Update mutable fields on an existing account.

        Returns True if a row was updated, False if account_id was not found.
        Raises ValueError for fields outside _UPDATABLE_FIELDS and Conflict
        when a username change collides with another account.
        """
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown account fields: {unknown!r}")
        if "role" in fields:
            fields["role"] = Role(fields["role"]).value
        fields["updated_at"] = utcnow()
        try:
            with self.engine.begin() as conn:
                result = conn.execute(_accounts.update().where(_accounts.c.id == account_id).values(**fields))
        except IntegrityError as exc:
            raise Conflict("An account with that username already exists.") from exc
        return result.rowcount > 0

    def delete_account(self, account_id: int) -> bool:
        """Delete an account and every session it owns in one transaction."""
        with self.engine.begin() as conn:
            conn.execute(_sessions.delete().where(_sessions.c.account_id == account_id))
            _drop_orphaned_retired(conn)
            result = conn.execute(_accounts.delete().where(_accounts.c.id == account_id))
        return result.rowcount > 0

    def count_by_role(self) -> dict[str, int]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(_accounts.c.role, func.count()).group_by(_accounts.c.role)).fetchall()
        counts = {role.value: 0 for role in Role}
        for role, count in rows:
            counts[role] = count
        return counts

    def count_created_since(self, since: datetime) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_accounts).where(_accounts.c.created_at >= since)
            ).scalar()
        return result or 0

    def has_role(self, role: Role) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_accounts).where(_accounts.c.role == Role(role).value)
            ).scalar()
        return (result or 0) > 0

    # ------------------------------------------------------------------
    # Reset tokens
    # ------------------------------------------------------------------

    def set_reset_token(self, account_id: int, token_hash: str, expires_at: datetime) -> None:
        """Store a new reset token hash, replacing any previous one for the account."""
        now = utcnow()
        with self.engine.begin() as conn:
            conn.execute(
                _accounts.update()
                .where(_accounts.c.id == account_id)
                .values(
                    reset_token_hash=token_hash,
                    reset_token_expires_at=expires_at,
                    reset_token_created_at=now,
                    updated_at=now,
                )
            )

    def consume_reset_token(self, token_hash: str, hashed_password: str, now: datetime | None = None) -> int | None:
        """Atomically set a new password and clear the reset token.

        Returns the account ID on success, or None if no account holds a live
        token with this hash (unknown, expired, or already consumed). The
        WHERE clause repeats the liveness check, so of two concurrent resets
        with the same token exactly one updates a row.
        """
        now = now or utcnow()
        live = (_accounts.c.reset_token_hash == token_hash) & (_accounts.c.reset_token_expires_at > now)
        with self.engine.begin() as conn:
            account_id = conn.execute(select(_accounts.c.id).where(live)).scalar()
            if account_id is None:
                return None
            result = conn.execute(
                _accounts.update()
                .where(live & (_accounts.c.id == account_id))
                .values(
                    hashed_password=hashed_password,
                    reset_token_hash=None,
                    reset_token_expires_at=None,
                    reset_token_created_at=None,
                    updated_at=now,
                )
            )
        return account_id if result.rowcount == 1 else None

    def purge_expired_reset_tokens(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        with self.engine.begin() as conn:
            result = conn.execute(
                _accounts.update()
                .where(_accounts.c.reset_token_expires_at <= now)
                .values(reset_token_hash=None, reset_token_expires_at=None, reset_token_created_at=None)
            )
        return result.rowcount

    # ------------------------------------------------------------------
    # Refresh sessions
    # ------------------------------------------------------------------

    def add_session(self, session: RefreshSession, max_sessions: int, now: datetime | None = None) -> int:
        """Insert a refresh session, enforcing the per-account cap.

        Expired sessions for the account are deleted first, then the oldest
        live sessions beyond max_sessions are evicted.
        """
        now = now or utcnow()
        with self.engine.begin() as conn:
            conn.execute(
                _sessions.delete().where(
                    (_sessions.c.account_id == session.account_id) & (_sessions.c.expires_at <= now)
                )
            )
            result = conn.execute(
                _sessions.insert().values(
                    account_id=session.account_id,
                    token_hash=session.token_hash,
                    device=session.device,
                    user_agent=session.user_agent,
                    created_at=session.created_at,
                    expires_at=session.expires_at,
                )
            )
            session_id = result.inserted_primary_key[0]
            keep = (
                select(_sessions.c.id)
                .where(_sessions.c.account_id == session.account_id)
                .order_by(_sessions.c.created_at.desc(), _sessions.c.id.desc())
                .limit(max_sessions)
            )
            conn.execute(
                _sessions.delete().where(
                    (_sessions.c.account_id == session.account_id) & _sessions.c.id.not_in(keep)
                )
            )
            _drop_orphaned_retired(conn)
        return session_id

    def rotate_session(
        self,
        old_hash: str,
        new_hash: str,
        created_at: datetime,
        expires_at: datetime,
        now: datetime | None = None,
    ) -> RefreshSession | None:
        """Swap a live session's token hash for a new one (compare-and-swap).

        Returns the updated session, or None if no live session held old_hash
        at the moment of the UPDATE. On success old_hash joins the session's
        retired-token history in the same transaction.
        """
        now = now or utcnow()
        with self.engine.begin() as conn:
            result = conn.execute(
                _sessions.update()
                .where((_sessions.c.token_hash == old_hash) & (_sessions.c.expires_at > now))
                .values(
                    token_hash=new_hash,
                    previous_token_hash=old_hash,
                    created_at=created_at,
                    expires_at=expires_at,
                )
            )
            if result.rowcount != 1:
                return None
            row = conn.execute(_sessions.select().where(_sessions.c.token_hash == new_hash)).fetchone()
            conn.execute(_retired.insert().values(token_hash=old_hash, session_id=row.id, retired_at=now))
        return _row_to_session(row)

    def find_session(self, token_hash: str) -> RefreshSession | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.token_hash == token_hash)).fetchone()
        return _row_to_session(row) if row is not None else None

    def find_session_by_retired_hash(self, token_hash: str) -> RefreshSession | None:
        """Return the session that once held token_hash and has since rotated past it."""
        retired = select(_retired.c.session_id).where(_retired.c.token_hash == token_hash)
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id.in_(retired))).fetchone()
        return _row_to_session(row) if row is not None else None

    def delete_session(self, token_hash: str, account_id: int | None = None) -> bool:
        """Delete one session. When account_id is given it must own the session."""
        condition = _sessions.c.token_hash == token_hash
        if account_id is not None:
            condition = condition & (_sessions.c.account_id == account_id)
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(condition))
            _drop_orphaned_retired(conn)
        return result.rowcount > 0

    def delete_all_sessions(self, account_id: int) -> int:
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.account_id == account_id))
            _drop_orphaned_retired(conn)
        return result.rowcount

    def list_sessions(self, account_id: int, now: datetime | None = None) -> list[RefreshSession]:
        """Return the account's sessions whose expiry is in the future, newest first."""
        now = now or utcnow()
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where((_sessions.c.account_id == account_id) & (_sessions.c.expires_at > now))
                .order_by(_sessions.c.created_at.desc(), _sessions.c.id.desc())
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def count_sessions(self, account_id: int) -> int:
        """Count every stored session for the account, expired ones included."""
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_sessions).where(_sessions.c.account_id == account_id)
            ).scalar()
        return result or 0

    def count_accounts_with_live_sessions(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count(func.distinct(_sessions.c.account_id))).where(_sessions.c.expires_at > now)
            ).scalar()
        return result or 0

    def purge_expired_sessions(self, now: datetime | None = None) -> int:
        now = now or utcnow()
        with self.engine.begin() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= now))
            _drop_orphaned_retired(conn)
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_account(row) -> Account:
    return Account(
        id=row.id,
        username=row.username,
        email=row.email,
        hashed_password=row.hashed_password,
        role=Role(row.role),
        created_at=_as_utc(row.created_at),
        updated_at=_as_utc(row.updated_at),
        last_login_at=_as_utc(row.last_login_at),
        reset_token_hash=row.reset_token_hash,
        reset_token_expires_at=_as_utc(row.reset_token_expires_at),
        reset_token_created_at=_as_utc(row.reset_token_created_at),
    )


def _row_to_session(row) -> RefreshSession:
    return RefreshSession(
        id=row.id,
        account_id=row.account_id,
        token_hash=row.token_hash,
        previous_token_hash=row.previous_token_hash,
        device=row.device,
        user_agent=row.user_agent,
        created_at=_as_utc(row.created_at),
        expires_at=_as_utc(row.expires_at),
    )
