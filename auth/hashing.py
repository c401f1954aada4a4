"""
auth/hashing.py -- Password hashing, token hashing, and constant-time compares.

Security design decisions:
  Passwords: PBKDF2-HMAC-SHA256, 100,000 iterations, 16-byte random salt,
       32-byte derived key. Stored as "<salt>:<key>", both standard base64.
       The format is shared with hashes written by earlier releases, so the
       parameters are fixed: the stored string carries no iteration count.
       A fresh salt per call means hashing the same password twice never
       yields the same stored value.

  Verification fails closed. A malformed stored hash, a bad base64 segment,
       or any error inside the KDF returns False -- nothing raises past
       verify_password(). Comparison uses hmac.compare_digest so the running
       time does not reveal how many leading bytes matched.

  Refresh tokens: plain SHA-256, base64. Tokens are 256+ bits of signed,
       random-bearing data, so a password-grade KDF buys nothing; the hash
       only exists so a leaked session store does not hand out live tokens.

  _DUMMY_HASH enables timing equalization in authenticate_user() so response
       time does not reveal whether an email is registered.

Layer rule: no imports from api/ or kv/.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import secrets
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("gruff.auth")

PBKDF2_ITERATIONS = 100_000
SALT_LENGTH = 16
KEY_LENGTH = 32

# ---------------------------------------------------------------------------
# Password hashing
# ---------------------------------------------------------------------------


def _derive(plain: str, salt: bytes) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", plain.encode("utf-8"), salt, PBKDF2_ITERATIONS, dklen=KEY_LENGTH)


def hash_password(plain: str) -> str:
    """Return "<salt>:<derived key>" for the given plaintext password."""
    salt = secrets.token_bytes(SALT_LENGTH)
    key = _derive(plain, salt)
    return f"{base64.b64encode(salt).decode('ascii')}:{base64.b64encode(key).decode('ascii')}"


def verify_password(plain: str, stored_hash: str) -> bool:
    """Return True if the plaintext password matches the stored hash.

    Any parse or computation failure returns False.
    """
    try:
        salt_b64, sep, key_b64 = stored_hash.partition(":")
        if not sep or not salt_b64 or not key_b64:
            return False
        salt = base64.b64decode(salt_b64, validate=True)
        expected = base64.b64decode(key_b64, validate=True)
        return hmac.compare_digest(_derive(plain, salt), expected)
    except (binascii.Error, ValueError, TypeError, AttributeError):
        return False
    except Exception:
        logger.exception("Unexpected error during password verification")
        return False


# Timing equalization dummy hash.
# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("gruff_timing_dummy")


# ---------------------------------------------------------------------------
# Token hashing
# ---------------------------------------------------------------------------


def hash_token(token: str) -> str:
    """Return base64(SHA-256(token)) -- 44 characters."""
    return base64.b64encode(hashlib.sha256(token.encode("utf-8")).digest()).decode("ascii")


def constant_time_equals(a: str, b: str) -> bool:
    """Compare two strings without short-circuiting on the first difference.

    Strings are compared as UTF-8 bytes; hmac.compare_digest only accepts
    ASCII str arguments directly.
    """
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def verify_token_hash(token: str, stored_hash: str) -> bool:
    return constant_time_equals(hash_token(token), stored_hash)


# ---------------------------------------------------------------------------
# User authentication (constant-time)
# ---------------------------------------------------------------------------


def authenticate_user(store: UserStore, email: str, password: str) -> User | None:
    """Authenticate an email/password login with timing equalization.

    Always runs PBKDF2 whether or not the user exists:
    - Unknown email: PBKDF2 runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: PBKDF2 runs against the real hash (same cost)

    Returns the User on success, None on any failure.
    """
    user = store.get_by_email(email)
    if user is None or user.password_hash is None:
        # Equalize timing -- do NOT return early before running the KDF
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.password_hash):
        return None
    if not user.is_active:
        return None
    return user
