"""
kv/store.py -- Key-value collaborators with per-key time-to-live.

The session store needs exactly three operations: get, put with a TTL, and
delete. KeyValueStore is that interface; three backends implement it:

  MemoryKV -- dict guarded by a lock. Default for local dev and tests.
              Accepts a clock so tests can advance time deterministically.
  SqlKV    -- SQLAlchemy Core table (kv_entries). Expired rows are hidden on
              read and removed by purge_expired(), which api/main.py calls
              from a background task.
  RedisKV  -- SET with EX; Redis evicts on its own.

Eviction timing differs per backend, so callers must not rely on it: the
session store re-checks its own absolute expiry on every read.

open_kv(url) picks a backend from a URL:
    memory://                -> MemoryKV
    redis://host:6379/0      -> RedisKV
    sqlite:///path.db, ...   -> SqlKV (any SQLAlchemy URL)

Layer rule: no imports from api/ or auth/.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Protocol

from redis import Redis
from sqlalchemy import Column, Float, MetaData, String, Table, Text, create_engine, event
from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

logger = logging.getLogger("gruff.kv")


class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...

    def put(self, key: str, value: str, ttl: int | None = None) -> None: ...

    def delete(self, key: str) -> None: ...

    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class MemoryKV:
    """Thread-safe in-process store.

    Usage:
        kv = MemoryKV()
        kv.put("session:u1", "{...}", ttl=3600)
        kv.get("session:u1")
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._data: dict[str, tuple[str, float | None]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> str | None:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            value, expires_at = item
            if expires_at is not None and expires_at <= self._clock():
                del self._data[key]
                return None
            return value

    def put(self, key: str, value: str, ttl: int | None = None) -> None:
        expires_at = self._clock() + ttl if ttl else None
        with self._lock:
            self._data[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [k for k, (_, exp) in self._data.items() if exp is not None and exp <= now]
            for key in stale:
                del self._data[key]
        return len(stale)

    def close(self) -> None:
        with self._lock:
            self._data.clear()


# ---------------------------------------------------------------------------
# SQL (SQLAlchemy Core)
# ---------------------------------------------------------------------------

_metadata = MetaData()

_kv_entries = Table(
    "kv_entries",
    _metadata,
    Column("key", String(255), primary_key=True),
    Column("value", Text, nullable=False),
    Column("expires_at", Float),  # epoch seconds; NULL = no expiry
)


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block during writes."""
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


def upsert_statement(dialect_name: str, key: str, value: str, expires_at: float | None):
    """Return a single-statement upsert for dialects that have one, else None.

    SQLite and PostgreSQL use INSERT ... ON CONFLICT DO UPDATE; MySQL and
    MariaDB use INSERT ... ON DUPLICATE KEY UPDATE. Either way the row is
    replaced atomically, so concurrent writers to one key end last-write-wins.
    """
    row = {"key": key, "value": value, "expires_at": expires_at}
    if dialect_name in ("sqlite", "postgresql"):
        insert = sqlite_insert if dialect_name == "sqlite" else pg_insert
        stmt = insert(_kv_entries).values(**row)
        return stmt.on_conflict_do_update(
            index_elements=[_kv_entries.c.key],
            set_={"value": stmt.excluded.value, "expires_at": stmt.excluded.expires_at},
        )
    if dialect_name in ("mysql", "mariadb"):
        stmt = mysql_insert(_kv_entries).values(**row)
        return stmt.on_duplicate_key_update(value=stmt.inserted.value, expires_at=stmt.inserted.expires_at)
    return None


class SqlKV:
    """KV table on any SQLAlchemy-supported database.

    put() is one atomic upsert on SQLite, PostgreSQL and MySQL. Other
    dialects fall back to UPDATE, then INSERT when no row matched; a
    duplicate-key error from a concurrent INSERT is retried as an UPDATE.
    """

    def __init__(self, db_url: str, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite") and ":memory:" not in db_url and "mode=memory" not in db_url:
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def get(self, key: str) -> str | None:
        with self.engine.connect() as conn:
            row = conn.execute(_kv_entries.select().where(_kv_entries.c.key == key)).fetchone()
        if row is None:
            return None
        if row.expires_at is not None and row.expires_at <= self._clock():
            self.delete(key)
            return None
        return row.value

    def put(self, key: str, value: str, ttl: int | None = None) -> None:
        expires_at = self._clock() + ttl if ttl else None
        stmt = upsert_statement(self.engine.dialect.name, key, value, expires_at)
        if stmt is not None:
            with self.engine.begin() as conn:
                conn.execute(stmt)
            return
        self._update_or_insert(key, value, expires_at)

    def _update_or_insert(self, key: str, value: str, expires_at: float | None) -> None:
        update = _kv_entries.update().where(_kv_entries.c.key == key).values(value=value, expires_at=expires_at)
        try:
            with self.engine.begin() as conn:
                if conn.execute(update).rowcount:
                    return
                conn.execute(_kv_entries.insert().values(key=key, value=value, expires_at=expires_at))
        except IntegrityError:
            # Another writer inserted the key between our UPDATE and INSERT.
            logger.debug("Concurrent insert on KV key; overwriting")
            with self.engine.begin() as conn:
                conn.execute(update)

    def delete(self, key: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(_kv_entries.delete().where(_kv_entries.c.key == key))

    def purge_expired(self) -> int:
        """Delete all expired rows. Returns number of rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(
                _kv_entries.delete().where(
                    (_kv_entries.c.expires_at.is_not(None)) & (_kv_entries.c.expires_at <= self._clock())
                )
            )
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Redis
# ---------------------------------------------------------------------------


class RedisKV:
    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0, client: Redis | None = None) -> None:
        self.client = client or Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )

    def get(self, key: str) -> str | None:
        return self.client.get(key)

    def put(self, key: str, value: str, ttl: int | None = None) -> None:
        # Redis rejects EX <= 0
        self.client.set(key, value, ex=max(1, ttl) if ttl is not None else None)

    def delete(self, key: str) -> None:
        self.client.delete(key)

    def close(self) -> None:
        self.client.close()


def open_kv(url: str) -> KeyValueStore:
    """Build a KeyValueStore from a URL (see module docstring)."""
    if url == "memory://" or not url:
        logger.info("Using in-memory KV store (not shared across processes)")
        return MemoryKV()
    if url.startswith(("redis://", "rediss://", "unix://")):
        return RedisKV(url)
    return SqlKV(url)
