"""
auth/store.py -- User accounts on SQLAlchemy Core.

UserStore is the only code that knows the users table. Routes and
authenticate_user() receive User dataclasses and never see rows.

Security:
  All queries use bound parameters. No f-strings in SQL.
  Emails are normalized (trimmed, lowercased) before every write and lookup,
  so "Alice@Example.com" and "alice@example.com" cannot become two accounts.
  The unique constraint on email is the final arbiter for concurrent
  registrations: the loser gets IntegrityError.

User ids are uuid4 hex strings. They are embedded in tokens and in session
keys, so they must not be guessable or sequential.

Refresh sessions do not live here -- see auth/sessions.py and kv/store.py.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, MetaData, String, Table, Text, create_engine, event, func, select
from sqlalchemy.engine import Engine, Row

from auth.models import User

_metadata = MetaData()

users_table = Table(
    "users",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("password_hash", Text),  # "<salt>:<key>", see auth/hashing.py
    Column("is_admin", Boolean, nullable=False, default=False),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("created_at", String(40), nullable=False),  # ISO-8601 UTC
    Column("last_login", String(40)),
)


def _enable_wal(dbapi_conn, connection_record) -> None:
    # Per connection: SQLite PRAGMAs are not inherited from the pool.
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def _engine_for(db_url: str) -> Engine:
    """Create an engine; SQLite connections may be shared across threads."""
    is_sqlite = db_url.startswith("sqlite")
    engine = create_engine(db_url, connect_args={"check_same_thread": False} if is_sqlite else {})
    if is_sqlite and ":memory:" not in db_url and "mode=memory" not in db_url:
        event.listen(engine, "connect", _enable_wal)
    return engine


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_email(email: str) -> str:
    return email.strip().lower()


class UserStore:
    """Repository for User entities.

    Usage:
        users = UserStore("sqlite:///gruff_auth.db")
        uid = users.create_user(User(email="admin@example.com", password_hash=hash_password("secret")))
        users.get_by_email("Admin@Example.com")   # -> User(id=uid, ...)
        users.close()
    """

    def __init__(self, db_url: str) -> None:
        self.engine = _engine_for(db_url)
        _metadata.create_all(self.engine)

    def _fetch_one(self, where) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(select(users_table).where(where)).first()
        return _to_user(row) if row is not None else None

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            count = conn.execute(select(func.count()).select_from(users_table)).scalar_one()
        return count > 0

    def create_user(self, user: User) -> str:
        """Insert a new user and return its id.

        Raises sqlalchemy.exc.IntegrityError if the email is taken; the
        register route turns that into 409.
        """
        user_id = user.id or uuid.uuid4().hex
        with self.engine.begin() as conn:
            conn.execute(
                users_table.insert().values(
                    id=user_id,
                    email=normalize_email(user.email),
                    password_hash=user.password_hash,
                    is_admin=user.is_admin,
                    is_active=user.is_active,
                    created_at=_utcnow(),
                )
            )
        return user_id

    def get_by_email(self, email: str) -> User | None:
        return self._fetch_one(users_table.c.email == normalize_email(email))

    def get_by_id(self, user_id: str) -> User | None:
        return self._fetch_one(users_table.c.id == user_id)

    def list_users(self) -> list[User]:
        """All users ordered by email. Admin-only at the HTTP layer."""
        with self.engine.connect() as conn:
            rows = conn.execute(select(users_table).order_by(users_table.c.email)).all()
        return [_to_user(r) for r in rows]

    def update_last_login(self, user_id: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(users_table.update().where(users_table.c.id == user_id).values(last_login=_utcnow()))

    def close(self) -> None:
        self.engine.dispose()


def _to_user(row: Row) -> User:
    return User(
        id=row.id,
        email=row.email,
        password_hash=row.password_hash,
        is_admin=bool(row.is_admin),
        is_active=bool(row.is_active),
        created_at=row.created_at,
        last_login=row.last_login,
    )
