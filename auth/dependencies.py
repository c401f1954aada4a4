"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Credential sources, checked in priority order:
  1. Authorization: Bearer <token> header -- API clients.
  2. Access-token cookie (app.state.access_cookie_name) -- browser sessions.

The signing secret is read from app.state.jwt_secret, which the lifespan sets
from Settings. A missing secret is an operator error, not a caller error: it
yields 500 config_error rather than 401.

require_auth() verifies the access token and attaches the Claims to
request.state.user. require_admin() and require_admin_or_self() read that
attached identity, so they must run after require_auth(). Declare
require_auth in the route's (or router's) dependencies list ahead of them;
FastAPI solves decorator dependencies before endpoint parameters.

optional_auth() is the soft variant: it never fails the request and only
attaches claims when verification succeeds.

Error bodies are {"code": ..., "message": ...} dicts in HTTPException.detail;
api/main.py wraps them in the {"error": ...} envelope.

Layer rule: auth/dependencies.py may import from fastapi because it is part
of the FastAPI dependency injection system. No imports from api/ or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from fastapi import HTTPException, Request

from auth.models import Claims
from auth.tokens import check_access_token

logger = logging.getLogger("gruff.auth")

DEFAULT_ACCESS_COOKIE = "gruff_access_token"


def _unauthorized(code: str, message: str) -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"code": code, "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden(message: str) -> HTTPException:
    return HTTPException(status_code=403, detail={"code": "forbidden", "message": message})


def extract_bearer_token(auth_header: str | None) -> str | None:
    """Return the token from "Bearer <token>", or None for any other shape."""
    if not auth_header:
        return None
    parts = auth_header.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        return None
    return parts[1]


def _extract_token(request: Request) -> str | None:
    token = extract_bearer_token(request.headers.get("Authorization"))
    if token:
        return token
    cookie_name = getattr(request.app.state, "access_cookie_name", DEFAULT_ACCESS_COOKIE)
    return request.cookies.get(cookie_name) or None


def _signing_secret(request: Request) -> str | None:
    return getattr(request.app.state, "jwt_secret", None) or None


def current_identity(request: Request) -> Claims | None:
    """Return the claims attached by require_auth()/optional_auth(), if any."""
    return getattr(request.state, "user", None)


def require_auth(request: Request) -> Claims:
    """Require a valid access token. Raises 401, or 500 if the secret is missing.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(claims: Claims = Depends(require_auth)): ...
    """
    token = _extract_token(request)
    if not token:
        logger.warning("Missing or invalid Authorization header on %s", request.url.path)
        raise _unauthorized("unauthorized", "Missing or invalid Authorization header")

    secret = _signing_secret(request)
    if not secret:
        logger.error("JWT secret not configured")
        raise HTTPException(
            status_code=500,
            detail={"code": "config_error", "message": "Server configuration error"},
        )

    result = check_access_token(token, secret)
    if result.claims is None:
        logger.warning("Rejected access token on %s: %s", request.url.path, result.failure.value)
        raise _unauthorized("invalid_token", "Invalid or expired token")

    request.state.user = result.claims
    logger.debug("User authenticated: %s", result.claims.user_id)
    return result.claims


def require_admin(request: Request) -> Claims:
    """Require an attached admin identity. Raises 401 if none, 403 if not admin.

    Use after require_auth:
        @router.get("/users", dependencies=[Depends(require_auth)])
        def route(claims: Claims = Depends(require_admin)): ...
    """
    claims = current_identity(request)
    if claims is None:
        logger.warning("require_admin called without user context")
        raise _unauthorized("unauthorized", "Authentication required")
    if not claims.is_admin:
        logger.warning("Non-admin user %s attempted admin action", claims.user_id)
        raise _forbidden("Admin access required")
    logger.debug("Admin access granted: %s", claims.user_id)
    return claims


def require_admin_or_self(param_name: str = "id") -> Callable[[Request], Claims]:
    """Build a dependency allowing admins, or the user named by a request parameter.

    The target id is read from the path parameter param_name, falling back to
    the query string. Must run after require_auth.
    """

    def dependency(request: Request) -> Claims:
        claims = current_identity(request)
        target = request.path_params.get(param_name) or request.query_params.get(param_name)
        if claims is None:
            logger.warning("require_admin_or_self called without user context")
            raise _unauthorized("unauthorized", "Authentication required")
        if claims.is_admin or (target is not None and claims.user_id == target):
            logger.debug("Access granted: user=%s target=%s admin=%s", claims.user_id, target, claims.is_admin)
            return claims
        logger.warning("Unauthorized access attempt: user=%s target=%s", claims.user_id, target)
        raise _forbidden("Access denied")

    return dependency


def optional_auth(request: Request) -> Claims | None:
    """Attach claims when a valid access token is present; never raise."""
    token = _extract_token(request)
    if not token:
        return None
    secret = _signing_secret(request)
    if not secret:
        logger.error("JWT secret not configured; continuing without authentication")
        return None
    claims = check_access_token(token, secret).claims
    if claims is None:
        logger.debug("Invalid token provided for optional auth")
        return None
    request.state.user = claims
    logger.debug("User authenticated (optional): %s", claims.user_id)
    return claims
