"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, minimal logic). Dataclasses own
domain shape; stores, token helpers, and routes do the work.

Layer rule: no imports from api/, core/, or kv/.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum


@dataclass
class User:
    """A local account.

    id is an opaque string (uuid4 hex) so it can be embedded in tokens and
    session keys without caring about the backing database's key type.
    """

    email: str
    password_hash: str | None = None
    is_admin: bool = False
    id: str | None = None
    created_at: str | None = None
    last_login: str | None = None
    is_active: bool = True


@dataclass(frozen=True)
class Claims:
    """Identity claims carried inside every signed token.

    Only the public fields live here. The refresh marker stays inside the
    signed envelope and is stripped by auth/tokens.py before a Claims is built.
    """

    user_id: str
    email: str
    iat: int
    exp: int
    is_admin: bool = False
    jti: str | None = None

    @classmethod
    def from_payload(cls, payload: dict) -> "Claims":
        """Build Claims from a decoded token payload.

        Raises ValueError when a required claim is missing or has the wrong
        type. Callers at the verification boundary turn that into a failure
        result -- it never reaches a route handler.
        """
        if not isinstance(payload, dict):
            raise ValueError("payload is not an object")
        user_id = payload.get("user_id")
        email = payload.get("email")
        iat = payload.get("iat")
        exp = payload.get("exp")
        jti = payload.get("jti")
        if not isinstance(user_id, str) or not isinstance(email, str):
            raise ValueError("user_id and email must be strings")
        # bool is an int subclass; a boolean exp is still garbage
        for name, value in (("iat", iat), ("exp", exp)):
            if not isinstance(value, int) or isinstance(value, bool):
                raise ValueError(f"{name} must be an integer")
        if jti is not None and not isinstance(jti, str):
            raise ValueError("jti must be a string")
        return cls(
            user_id=user_id,
            email=email,
            iat=iat,
            exp=exp,
            is_admin=payload.get("is_admin") is True,
            jti=jti,
        )

    def to_payload(self) -> dict:
        payload = asdict(self)
        if payload["jti"] is None:
            del payload["jti"]
        return payload


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int  # effective access-token TTL in seconds


class SessionKind(str, Enum):
    """Discriminant for persisted session formats.

    CURRENT records store a SHA-256 hash of the refresh token. LEGACY records
    were written by older releases with the plaintext token; they are still
    readable but never written.
    """

    CURRENT = "current"
    LEGACY = "legacy"


@dataclass(frozen=True)
class SessionRecord:
    """The single active refresh credential for a user.

    For kind=LEGACY, refresh_token_hash holds the plaintext token read from
    the old format. SessionStore.validate() is the only code that looks at it.
    Timestamps are epoch milliseconds.
    """

    user_id: str
    email: str
    refresh_token_hash: str
    created_at: int
    expires_at: int
    kind: SessionKind = SessionKind.CURRENT

    @property
    def is_legacy(self) -> bool:
        return self.kind is SessionKind.LEGACY

    def is_expired(self, now_ms: int) -> bool:
        return self.expires_at < now_ms
