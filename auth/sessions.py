"""
auth/sessions.py -- Refresh-token session store on top of a KV collaborator.

One record per user, stored as JSON under "<prefix><user_id>":

    {"userId": ..., "email": ..., "refreshTokenHash": ...,
     "createdAt": <ms>, "expiresAt": <ms>}

Security:
  The refresh token is never persisted. Only base64(SHA-256(token)) is
  written; validation hashes the candidate and compares in constant time.

  Single active session per user. store() overwrites, rotate() overwrites,
  so the record always reflects the latest issued refresh token. A thief and
  the legitimate holder racing to rotate cannot both keep a working token.
  Concurrent writes are last-write-wins; there is no lock.

  Absolute expiry is re-checked on every read even though the KV backend has
  its own TTL. Backends evict lazily or on a schedule, so a stale record may
  still be readable; it is deleted and reported as absent.

  Corrupt records (bad JSON, missing or ill-typed fields) are deleted and
  reported as absent. Parse errors never reach the caller.

Legacy format:
  Older releases stored {"refreshToken": <plaintext>, ...} without a
  refreshTokenHash. _parse_record() maps that shape to a SessionRecord with
  kind=LEGACY. validate() is the only code that treats the field as
  plaintext. No record carrying refreshTokenHash is ever parsed as legacy.
  rotate() rewrites the record in the hashed format, which is the only
  migration path; reads never upgrade a record.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable

from pydantic import BaseModel, ConfigDict, StrictInt, StrictStr, ValidationError

from auth.hashing import constant_time_equals, hash_token, verify_token_hash
from auth.models import SessionKind, SessionRecord
from kv.store import KeyValueStore

logger = logging.getLogger("gruff.sessions")

DEFAULT_REFRESH_TTL = 7 * 24 * 60 * 60
DEFAULT_KEY_PREFIX = "session:"


# ---------------------------------------------------------------------------
# Persisted shapes
# ---------------------------------------------------------------------------


class _StoredSession(BaseModel):
    model_config = ConfigDict(extra="ignore")

    userId: StrictStr
    email: StrictStr
    refreshTokenHash: StrictStr
    createdAt: StrictInt
    expiresAt: StrictInt


class _LegacyStoredSession(BaseModel):
    model_config = ConfigDict(extra="ignore")

    userId: StrictStr
    email: StrictStr
    refreshToken: StrictStr
    createdAt: StrictInt
    expiresAt: StrictInt


class CorruptSessionError(ValueError):
    """A stored session value that cannot be parsed into a SessionRecord."""


def _parse_record(raw: str) -> SessionRecord:
    """Parse a stored value into a SessionRecord, tagging its format.

    Raises CorruptSessionError for anything that is not one of the two
    known shapes.
    """
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError) as exc:
        raise CorruptSessionError("session value is not valid JSON") from exc
    if not isinstance(data, dict):
        raise CorruptSessionError("session value is not an object")

    try:
        if "refreshTokenHash" in data:
            current = _StoredSession.model_validate(data)
            return SessionRecord(
                user_id=current.userId,
                email=current.email,
                refresh_token_hash=current.refreshTokenHash,
                created_at=current.createdAt,
                expires_at=current.expiresAt,
                kind=SessionKind.CURRENT,
            )
        if "refreshToken" in data:
            legacy = _LegacyStoredSession.model_validate(data)
            return SessionRecord(
                user_id=legacy.userId,
                email=legacy.email,
                refresh_token_hash=legacy.refreshToken,
                created_at=legacy.createdAt,
                expires_at=legacy.expiresAt,
                kind=SessionKind.LEGACY,
            )
    except ValidationError as exc:
        raise CorruptSessionError(f"session value has invalid fields: {exc.error_count()} error(s)") from exc
    raise CorruptSessionError("session value has no refresh credential")


def _serialize(record: SessionRecord) -> str:
    return _StoredSession(
        userId=record.user_id,
        email=record.email,
        refreshTokenHash=record.refresh_token_hash,
        createdAt=record.created_at,
        expiresAt=record.expires_at,
    ).model_dump_json()


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class SessionStore:
    """Repository for the single active refresh session of each user.

    Usage:
        sessions = SessionStore(MemoryKV(), refresh_ttl=604800)
        sessions.store("u1", "alice@example.com", pair.refresh_token)
        sessions.validate("u1", presented_token)        # -> bool
        sessions.rotate("u1", new_pair.refresh_token)   # -> bool
        sessions.invalidate("u1")
    """

    def __init__(
        self,
        kv: KeyValueStore,
        refresh_ttl: int = DEFAULT_REFRESH_TTL,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.kv = kv
        self.refresh_ttl = refresh_ttl
        self.key_prefix = key_prefix
        self._clock = clock

    @classmethod
    def from_settings(cls, kv: KeyValueStore, settings) -> "SessionStore":
        return cls(kv, refresh_ttl=settings.refresh_token_ttl, key_prefix=settings.session_key_prefix)

    def _key(self, user_id: str) -> str:
        return f"{self.key_prefix}{user_id}"

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def store(self, user_id: str, email: str, refresh_token: str, ttl: int | None = None) -> None:
        """Persist the hashed refresh token, replacing any existing session."""
        duration = ttl if ttl is not None else self.refresh_ttl
        now = self._now_ms()
        record = SessionRecord(
            user_id=user_id,
            email=email,
            refresh_token_hash=hash_token(refresh_token),
            created_at=now,
            expires_at=now + duration * 1000,
        )
        self.kv.put(self._key(user_id), _serialize(record), ttl=duration)

    def rotate(self, user_id: str, new_refresh_token: str, ttl: int | None = None) -> bool:
        """Replace the stored token with new_refresh_token.

        Returns False when no live session exists -- rotation is not a
        substitute for login. The old token is unusable afterwards.
        """
        session = self.get(user_id)
        if session is None:
            return False
        if session.is_legacy:
            logger.info("Migrating legacy plaintext session for user %s to hashed format", user_id)
        self.store(session.user_id, session.email, new_refresh_token, ttl)
        return True

    def invalidate(self, user_id: str) -> None:
        """Delete the user's session unconditionally (logout)."""
        self.kv.delete(self._key(user_id))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, user_id: str) -> SessionRecord | None:
        """Return the live session for user_id, or None.

        Expired and corrupt records are deleted as a side effect.
        """
        raw = self.kv.get(self._key(user_id))
        if raw is None:
            return None
        try:
            record = _parse_record(raw)
        except CorruptSessionError as exc:
            logger.warning("Deleting corrupt session record for user %s: %s", user_id, exc)
            self.invalidate(user_id)
            return None
        if record.is_expired(self._now_ms()):
            logger.info("Deleting expired session record for user %s", user_id)
            self.invalidate(user_id)
            return None
        return record

    def validate(self, user_id: str, refresh_token: str) -> bool:
        """Return True if refresh_token is the user's current refresh token."""
        session = self.get(user_id)
        if session is None:
            return False
        if session.is_legacy:
            logger.warning("Validating against legacy plaintext session for user %s", user_id)
            return constant_time_equals(session.refresh_token_hash, refresh_token)
        return verify_token_hash(refresh_token, session.refresh_token_hash)

    def list_sessions(self, user_id: str) -> list[SessionRecord]:
        """Return the user's sessions: zero or one under the single-session model."""
        session = self.get(user_id)
        return [session] if session is not None else []

    def cleanup_expired(self, user_id: str) -> int:
        """Administrative sweep. Returns 1 if a stale or corrupt record was removed.

        Reads the raw value directly so the deletion is counted here rather
        than happening silently inside get().
        """
        raw = self.kv.get(self._key(user_id))
        if raw is None:
            return 0
        try:
            record = _parse_record(raw)
        except CorruptSessionError:
            self.invalidate(user_id)
            return 1
        if record.is_expired(self._now_ms()):
            self.invalidate(user_id)
            return 1
        return 0
