"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. UserStore is the repository for users,
sessions, and the process-wide signing secret; _row_to_user / _row_to_session
are the mappers. The session manager, policy, and routes never touch SQL
directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  sessions.token is the PRIMARY KEY. Tokens are 256-bit random values, so
  uniqueness at the storage layer is the only serialization concurrent
  logins need.

Store methods raise sqlalchemy.exc.SQLAlchemyError on failure. Translating
those into user-facing outcomes is the caller's job (auth/session.py,
auth/policy.py).

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timezone

from sqlalchemy import Column, Float, Integer, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from auth.models import AuthSource, Role, Session, User

logger = logging.getLogger("dnsdesk.auth")

_SECRET_KEY_NAME = "session_secret"
_SECRET_BYTES = 64

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(255), nullable=False, unique=True),
    Column("hashed_password", Text, nullable=False, server_default=""),  # "" = directory-managed
    Column("role", String(30), nullable=False, server_default="editor"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("auth_source", String(10), nullable=False, server_default="local"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("token", String(64), primary_key=True),  # HMAC-SHA256 hex of the raw token
    Column("csrf_token", String(64), nullable=False),
    Column("username", String(255), nullable=False, index=True),
    Column("expires_at", Float, nullable=False),  # UTC epoch seconds
)

_settings = Table(
    "settings",
    _metadata,
    Column("key", String(64), primary_key=True),
    Column("value", Text, nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so session reads never block on writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_epoch(dt: datetime) -> float:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.timestamp()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for users, sessions, and the signing secret.

    Usage:
        store = UserStore("sqlite:///dnsdesk.db")
        secret = store.ensure_signing_secret()
        store.create_user(User(username="admin", role=Role.admin, hashed_password=hash_password("secret")))
        user = store.get_by_username("admin")
        store.close()
    """

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Signing secret
    # ------------------------------------------------------------------

    def ensure_signing_secret(self) -> str:
        """Return the session signing secret, generating it on first call.

        Idempotent. If two processes race on an empty store, the loser's
        insert hits the primary key and it re-reads the winner's value, so
        every process ends up signing with the same secret.
        """
        with self.engine.connect() as conn:
            value = conn.execute(select(_settings.c.value).where(_settings.c.key == _SECRET_KEY_NAME)).scalar()
        if value:
            return value

        candidate = secrets.token_hex(_SECRET_BYTES)
        try:
            with self.engine.connect() as conn:
                conn.execute(_settings.insert().values(key=_SECRET_KEY_NAME, value=candidate))
                conn.commit()
        except IntegrityError:
            with self.engine.connect() as conn:
                return conn.execute(select(_settings.c.value).where(_settings.c.key == _SECRET_KEY_NAME)).scalar_one()
        logger.info("Generated new session signing secret")
        return candidate

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(self, signed_token: str, csrf_token: str, username: str, expires_at: datetime) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _sessions.insert().values(
                    token=signed_token,
                    csrf_token=csrf_token,
                    username=username,
                    expires_at=_to_epoch(expires_at),
                )
            )
            conn.commit()

    def get_session(self, signed_token: str) -> Session | None:
        """Look up a session by its signed token. Expiry is NOT checked here."""
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.token == signed_token)).fetchone()
        return _row_to_session(row) if row is not None else None

    def delete_session(self, signed_token: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_sessions.delete().where(_sessions.c.token == signed_token))
            conn.commit()

    def delete_user_sessions(self, username: str) -> int:
        """Revoke every session owned by username. Returns the number removed."""
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.username == username))
            conn.commit()
        return result.rowcount

    def purge_expired_sessions(self, now: datetime | None = None) -> int:
        """Delete sessions whose expiry has passed. Returns the number removed."""
        cutoff = _to_epoch(now or datetime.now(timezone.utc))
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at <= cutoff))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        """Return True if at least one user record exists (first-run detection)."""
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username already exists.
        """
        now = _now_iso()
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    hashed_password=user.hashed_password,
                    role=Role(user.role).value,
                    is_active=1 if user.is_active else 0,
                    auth_source=AuthSource(user.auth_source).value,
                    created_at=now,
                    updated_at=now,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all users ordered by id. Admin-only operation."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().order_by(_users.c.id)).fetchall()
        return [_row_to_user(r) for r in rows]

    def set_active(self, username: str, active: bool) -> bool:
        """Activate or deactivate a user. Returns False if the user was not found."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.username == username)
                .values(is_active=1 if active else 0, updated_at=_now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    def update_password(self, username: str, hashed_password: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where(_users.c.username == username)
                .values(hashed_password=hashed_password, updated_at=_now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    def delete_user(self, username: str) -> bool:
        """Permanently delete a user record. Returns True if deleted.

        Callers must check self-deletion rules before calling this method.
        Sessions are not touched here -- see delete_user_sessions().
        """
        with self.engine.connect() as conn:
            result = conn.execute(_users.delete().where(_users.c.username == username))
            conn.commit()
        return result.rowcount > 0

    def upsert_directory_user(self, username: str, role: Role) -> None:
        """Provision or resync a directory-authenticated user.

        Inserts with an empty password hash and auth_source='ldap'. If the
        username already exists, role and auth_source are overwritten
        unconditionally: the directory is the source of truth on every login.
        The local password hash and active flag are left as they are.
        """
        now = _now_iso()
        values = {"role": Role(role).value, "auth_source": AuthSource.ldap.value, "updated_at": now}
        update = _users.update().where(_users.c.username == username).values(**values)
        with self.engine.connect() as conn:
            result = conn.execute(update)
            conn.commit()
        if result.rowcount > 0:
            return
        try:
            with self.engine.connect() as conn:
                conn.execute(_users.insert().values(username=username, hashed_password="", created_at=now, **values))
                conn.commit()
        except IntegrityError:
            # A concurrent login inserted the row between our UPDATE and INSERT
            with self.engine.connect() as conn:
                conn.execute(update)
                conn.commit()

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        hashed_password=row.hashed_password or "",
        role=Role(row.role),
        is_active=bool(row.is_active),
        auth_source=AuthSource(row.auth_source),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_session(row) -> Session:
    return Session(
        token=row.token,
        csrf_token=row.csrf_token,
        username=row.username,
        expires_at=datetime.fromtimestamp(row.expires_at, tz=timezone.utc),
    )
