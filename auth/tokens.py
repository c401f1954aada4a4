"""
auth/tokens.py -- Signed bearer tokens (access and refresh) and cookie helpers.

Security design decisions:
  JWT: python-jose with HS256. Header is always {"alg":"HS256","typ":"JWT"};
       claims carry user_id, email, is_admin, iat, exp and a random jti so two
       tokens minted in the same second still differ.

  Token classes: refresh tokens carry an internal "refresh": true claim inside
       the signed envelope. Access verification rejects tokens that have it,
       refresh verification rejects tokens that lack it. A leaked access
       token cannot be replayed at /refresh, and a long-lived refresh token
       cannot be presented as an access token. The marker is stripped before
       claims leave this module.

  Verification never raises. Every failure -- wrong segment count, bad
       base64, bad signature, expiry, wrong class -- becomes a VerifyResult
       with a TokenFailure reason; the verify_* wrappers collapse that to
       None. Route and dependency code turns None into 401.

  Signature encoding is checked for canonical form before the HMAC check.
       An unpadded base64url segment has spare low bits in its last character;
       without this check a tampered final character can decode to the same
       signature bytes and still verify.

  Expiry is checked here against an integer "now" (seconds) rather than by
       python-jose, so callers and tests can pass an explicit clock value.

  TTLs come from TokenConfig, built once from Settings at startup and passed
       in. Nothing here reads configuration globally.

Layer rule: no imports from api/ or kv/.
"""

from __future__ import annotations

import binascii
import logging
import secrets
import time
from dataclasses import dataclass
from enum import Enum

from jose import jwt
from jose.exceptions import JOSEError
from jose.utils import base64url_decode, base64url_encode

from auth.models import Claims, TokenPair

logger = logging.getLogger("gruff.auth")

_ALGORITHM = "HS256"

# Claims that exist only inside the signed envelope.
_REFRESH_CLAIM = "refresh"
_INTERNAL_CLAIMS = frozenset({_REFRESH_CLAIM})

DEFAULT_ACCESS_TTL = 15 * 60
DEFAULT_REFRESH_TTL = 7 * 24 * 60 * 60


@dataclass(frozen=True)
class TokenConfig:
    access_ttl: int = DEFAULT_ACCESS_TTL
    refresh_ttl: int = DEFAULT_REFRESH_TTL

    @classmethod
    def from_settings(cls, settings) -> "TokenConfig":
        return cls(access_ttl=settings.access_token_ttl, refresh_ttl=settings.refresh_token_ttl)


_DEFAULT_CONFIG = TokenConfig()


class TokenFailure(str, Enum):
    MALFORMED = "malformed"
    BAD_SIGNATURE = "bad_signature"
    EXPIRED = "expired"
    WRONG_TYPE = "wrong_type"


@dataclass(frozen=True)
class VerifyResult:
    """Outcome of a verification attempt: claims on success, a reason otherwise."""

    claims: Claims | None = None
    failure: TokenFailure | None = None

    @property
    def ok(self) -> bool:
        return self.claims is not None


def _now() -> int:
    return int(time.time())


# ---------------------------------------------------------------------------
# Encode
# ---------------------------------------------------------------------------


def _sign(payload: dict, secret: str) -> str:
    if not secret:
        raise ValueError("A signing secret is required to issue tokens.")
    return jwt.encode(payload, secret, algorithm=_ALGORITHM)


def create_access_token(
    user_id: str,
    email: str,
    secret: str,
    expire_seconds: int = 0,
    is_admin: bool = False,
    *,
    config: TokenConfig | None = None,
    now: int | None = None,
) -> str:
    """Encode a signed access token.

    Args:
        user_id:        Opaque user identifier.
        email:          User email, carried for display and auditing.
        secret:         Shared HMAC signing secret.
        expire_seconds: TTL override in seconds. If 0 (default), uses
                        config.access_ttl.
        is_admin:       Administrator flag.
        config:         TTL configuration; defaults to 900s / 604800s.
        now:            Issue time in epoch seconds; defaults to the clock.
    """
    config = config or _DEFAULT_CONFIG
    issued = _now() if now is None else now
    duration = expire_seconds if expire_seconds > 0 else config.access_ttl
    payload = Claims(
        user_id=user_id,
        email=email,
        is_admin=is_admin,
        iat=issued,
        exp=issued + duration,
        jti=secrets.token_urlsafe(16),
    ).to_payload()
    return _sign(payload, secret)


def create_refresh_token(
    user_id: str,
    email: str,
    secret: str,
    expire_seconds: int = 0,
    is_admin: bool = False,
    *,
    config: TokenConfig | None = None,
    now: int | None = None,
) -> str:
    """Encode a signed refresh token. Same arguments as create_access_token()."""
    config = config or _DEFAULT_CONFIG
    issued = _now() if now is None else now
    duration = expire_seconds if expire_seconds > 0 else config.refresh_ttl
    payload = Claims(
        user_id=user_id,
        email=email,
        is_admin=is_admin,
        iat=issued,
        exp=issued + duration,
        jti=secrets.token_urlsafe(16),
    ).to_payload()
    payload[_REFRESH_CLAIM] = True
    return _sign(payload, secret)


def create_token_pair(
    user_id: str,
    email: str,
    secret: str,
    is_admin: bool = False,
    *,
    config: TokenConfig | None = None,
    now: int | None = None,
) -> TokenPair:
    """Issue an access token and a refresh token sharing one issue time."""
    config = config or _DEFAULT_CONFIG
    issued = _now() if now is None else now
    return TokenPair(
        access_token=create_access_token(user_id, email, secret, is_admin=is_admin, config=config, now=issued),
        refresh_token=create_refresh_token(user_id, email, secret, is_admin=is_admin, config=config, now=issued),
        expires_in=config.access_ttl,
    )


# ---------------------------------------------------------------------------
# Decode / verify
# ---------------------------------------------------------------------------


def _canonical_segment(segment: str) -> bool:
    try:
        raw = segment.encode("ascii")
        return base64url_encode(base64url_decode(raw)) == raw
    except (binascii.Error, ValueError, TypeError, UnicodeError):
        return False


def _split_payload(payload: dict) -> tuple[Claims, bool]:
    """Return (public claims, is_refresh). Raises ValueError on bad claims."""
    is_refresh = payload.get(_REFRESH_CLAIM) is True
    public = {k: v for k, v in payload.items() if k not in _INTERNAL_CLAIMS}
    return Claims.from_payload(public), is_refresh


def _check(token: str, secret: str, *, refresh: bool, now: int | None) -> VerifyResult:
    if not isinstance(token, str):
        return VerifyResult(failure=TokenFailure.MALFORMED)
    parts = token.split(".")
    if len(parts) != 3 or not all(parts):
        return VerifyResult(failure=TokenFailure.MALFORMED)
    if not _canonical_segment(parts[2]):
        return VerifyResult(failure=TokenFailure.BAD_SIGNATURE)

    try:
        jwt.get_unverified_header(token)
        jwt.get_unverified_claims(token)
    except JOSEError:
        return VerifyResult(failure=TokenFailure.MALFORMED)

    if not secret:
        logger.error("Token verification attempted without a signing secret")
        return VerifyResult(failure=TokenFailure.BAD_SIGNATURE)

    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=[_ALGORITHM],
            options={"verify_exp": False, "verify_aud": False},
        )
    except JOSEError:
        return VerifyResult(failure=TokenFailure.BAD_SIGNATURE)

    try:
        claims, is_refresh = _split_payload(payload)
    except ValueError:
        return VerifyResult(failure=TokenFailure.MALFORMED)

    current = _now() if now is None else now
    if claims.exp < current:
        return VerifyResult(failure=TokenFailure.EXPIRED)
    if is_refresh is not refresh:
        return VerifyResult(failure=TokenFailure.WRONG_TYPE)
    return VerifyResult(claims=claims)


def check_access_token(token: str, secret: str, now: int | None = None) -> VerifyResult:
    return _check(token, secret, refresh=False, now=now)


def check_refresh_token(token: str, secret: str, now: int | None = None) -> VerifyResult:
    return _check(token, secret, refresh=True, now=now)


def verify_access_token(token: str, secret: str, now: int | None = None) -> Claims | None:
    """Verify an access token. Returns its public claims or None on any failure.

    Returning None (rather than raising) keeps the caller simple: any invalid
    token is treated as unauthenticated.
    """
    return check_access_token(token, secret, now).claims


def verify_refresh_token(token: str, secret: str, now: int | None = None) -> Claims | None:
    """Verify a refresh token. Returns its public claims or None on any failure."""
    return check_refresh_token(token, secret, now).claims


def decode_token(token: str) -> Claims | None:
    """Decode claims WITHOUT checking the signature or expiry.

    UNSAFE: for inspection and debugging only (see `main.py decode-token`).
    Never base an authorization decision on the result.
    """
    try:
        if len(token.split(".")) != 3:
            return None
        claims, _ = _split_payload(jwt.get_unverified_claims(token))
        return claims
    except (JOSEError, ValueError, AttributeError):
        return None


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, *, cookie_name: str, max_age: int, secure: bool = False) -> None:
    """Write the access token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": cookie sent on same-site navigations but not on
        cross-site POST -- CSRF mitigation for most cases.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the access-token TTL so both expire together.
    """
    response.set_cookie(
        cookie_name,
        value=token,
        httponly=True,
        samesite="lax",
        secure=secure,
        max_age=max_age,
    )


def clear_auth_cookie(response, *, cookie_name: str) -> None:
    response.delete_cookie(cookie_name)
