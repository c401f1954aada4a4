"""
core/redaction.py -- Keep credentials out of log output.

redact_sensitive_data() walks dicts, lists and strings and replaces anything
that looks like a secret with "[REDACTED]":
  - values under keys whose name contains a sensitive fragment (password,
    token, secret, authorization, ...), matched case-insensitively
  - strings shaped like a JWT (three non-empty base64url segments)
  - "Bearer <value>" strings

RedactingFilter applies the same rules to log records, so a stray
logger.info("payload %s", body) cannot leak a refresh token or password.
api/main.py installs it on the root handlers at startup.

Layer rule: core/ is the kernel. No imports from api/, auth/, or kv/.
"""

from __future__ import annotations

import logging
import re
from typing import Any

REDACTED = "[REDACTED]"

_SENSITIVE_KEYS = (
    "password",
    "secret",
    "token",
    "jwt",
    "apikey",
    "api_key",
    "authorization",
    "cookie",
    "credential",
    "private_key",
    "privatekey",
)

_SENSITIVE_HEADERS = frozenset({"authorization", "cookie", "set-cookie", "x-api-key", "x-auth-token"})

_B64URL_SEGMENT = re.compile(r"^[A-Za-z0-9_-]+$")

# Embedded tokens and bearer values inside free-form log messages.
_JWT_IN_TEXT = re.compile(r"[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}")
_BEARER_IN_TEXT = re.compile(r"(?i)\bbearer\s+\S+")


def is_jwt_like(value: str) -> bool:
    """Return True if value has the header.payload.signature shape."""
    parts = value.split(".")
    if len(parts) != 3:
        return False
    return all(part and _B64URL_SEGMENT.match(part) for part in parts)


def is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(fragment in lowered for fragment in _SENSITIVE_KEYS)


def redact_text(text: str) -> str:
    """Scrub JWT-shaped substrings and bearer values from free-form text."""
    text = _BEARER_IN_TEXT.sub(f"Bearer {REDACTED}", text)
    return _JWT_IN_TEXT.sub(REDACTED, text)


def redact_sensitive_data(data: Any, max_depth: int = 10) -> Any:
    """Return a copy of data with sensitive values replaced by REDACTED.

    Containers are rebuilt, never mutated in place. Recursion stops at
    max_depth and returns the remaining structure untouched.
    """
    if max_depth <= 0 or data is None:
        return data

    if isinstance(data, str):
        if is_jwt_like(data):
            return REDACTED
        if data.lower().startswith("bearer "):
            return f"Bearer {REDACTED}"
        return data

    if isinstance(data, dict):
        result: dict = {}
        for key, value in data.items():
            if isinstance(key, str) and is_sensitive_key(key) and value is not None:
                result[key] = REDACTED
            else:
                result[key] = redact_sensitive_data(value, max_depth - 1)
        return result

    if isinstance(data, (list, tuple)):
        items = [redact_sensitive_data(item, max_depth - 1) for item in data]
        return type(data)(items) if isinstance(data, tuple) else items

    return data


def redact_headers(headers) -> dict[str, str]:
    """Return headers as a plain dict with credential-bearing headers redacted."""
    return {
        key: (REDACTED if key.lower() in _SENSITIVE_HEADERS else value) for key, value in dict(headers).items()
    }


class RedactingFilter(logging.Filter):
    """logging.Filter that redacts record arguments and the message text.

    Always returns True -- the record is rewritten, never dropped.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact_text(record.msg)
        if record.args:
            if isinstance(record.args, dict):
                record.args = redact_sensitive_data(record.args)
            else:
                record.args = tuple(
                    redact_text(arg) if isinstance(arg, str) else redact_sensitive_data(arg) for arg in record.args
                )
        return True


def install_redaction(logger: logging.Logger | None = None) -> None:
    """Attach a RedactingFilter to every handler of logger (root by default).

    Idempotent: handlers that already carry a RedactingFilter are skipped.
    """
    target = logger or logging.getLogger()
    for handler in target.handlers:
        if not any(isinstance(f, RedactingFilter) for f in handler.filters):
            handler.addFilter(RedactingFilter())
