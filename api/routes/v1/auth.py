"""
api/routes/v1/auth.py -- Authentication and session REST endpoints.

Routes:
  POST   /api/v1/auth/register                       -- create account; returns token pair
  POST   /api/v1/auth/login                          -- password login; token pair + cookie
  POST   /api/v1/auth/refresh                        -- exchange refresh token; rotates it
  POST   /api/v1/auth/logout                         -- invalidate session; clear cookie
  GET    /api/v1/auth/me                             -- current identity (requires auth)
  GET    /api/v1/auth/users                          -- list users (admin only)
  GET    /api/v1/auth/users/{id}                     -- one user (admin or self)
  GET    /api/v1/auth/users/{id}/sessions            -- active session (admin or self)
  DELETE /api/v1/auth/users/{id}/sessions            -- force logout (admin or self)
  POST   /api/v1/auth/users/{id}/sessions/cleanup    -- purge stale session (admin only)

Security:
  POST /login is rate-limited per IP (LOGIN_RATE_LIMIT, default 10/minute).
  authenticate_user() provides timing equalization -- use it, never inline.
  Cache-Control: no-store on every response that carries tokens.
  /refresh checks the token signature AND the session store. A refresh token
  that verifies but no longer matches the stored hash (rotated, logged out)
  is rejected. Every successful refresh rotates the refresh token.

The first account ever registered becomes the administrator, so a fresh
install can be bootstrapped without direct database access.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError

from api.limiter import limiter
from api.models import (
    CleanupResponse,
    LoginRequest,
    MeResponse,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    SessionResponse,
    TokenResponse,
    UserResponse,
)
from auth.dependencies import require_admin, require_admin_or_self, require_auth
from auth.hashing import authenticate_user, hash_password
from auth.models import Claims, User
from auth.sessions import SessionStore
from auth.store import UserStore
from auth.tokens import (
    TokenConfig,
    check_refresh_token,
    clear_auth_cookie,
    create_token_pair,
    set_auth_cookie,
)
from core.config import get_settings

logger = logging.getLogger("gruff.api")

# Auth policy:
# - POST   /auth/register, /login, /refresh, /logout: public (credentials in body)
# - GET    /auth/me:                                  require_auth
# - GET    /auth/users:                               require_auth + require_admin
# - GET    /auth/users/{id}:                          require_auth + admin or self
# - GET    /auth/users/{id}/sessions:                 require_auth + admin or self
# - DELETE /auth/users/{id}/sessions:                 require_auth + admin or self
# - POST   /auth/users/{id}/sessions/cleanup:         require_auth + require_admin
router = APIRouter()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _login_rate_limit() -> str:
    return get_settings().login_rate_limit


def _secret(request: Request) -> str:
    secret = getattr(request.app.state, "jwt_secret", None)
    if not secret:
        logger.error("JWT secret not configured")
        raise HTTPException(
            status_code=500,
            detail={"code": "config_error", "message": "Server configuration error"},
        )
    return secret


def _invalid_refresh() -> HTTPException:
    return HTTPException(
        status_code=401,
        detail={"code": "invalid_token", "message": "Invalid or expired refresh token"},
    )


def _issue(request: Request, user: User) -> JSONResponse:
    """Issue a token pair for user, persist the session, and build the response."""
    state = request.app.state
    token_config: TokenConfig = state.token_config
    sessions: SessionStore = state.session_store

    pair = create_token_pair(user.id, user.email, _secret(request), is_admin=user.is_admin, config=token_config)
    sessions.store(user.id, user.email, pair.refresh_token)

    resp = JSONResponse(
        status_code=200,
        content=TokenResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
            user_id=user.id,
            email=user.email,
            is_admin=user.is_admin,
        ).model_dump(),
    )
    set_auth_cookie(
        resp,
        pair.access_token,
        cookie_name=state.access_cookie_name,
        max_age=pair.expires_in,
        secure=get_settings().secure_cookies,
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=TokenResponse, status_code=200)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create a local account and log it in.

    The first account becomes admin. Duplicate emails return 409.
    """
    user_store: UserStore = request.app.state.user_store
    _secret(request)

    is_first = not user_store.has_users()
    new_user = User(email=body.email, password_hash=hash_password(body.password), is_admin=is_first)
    try:
        user_id = user_store.create_user(new_user)
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "An account with that email already exists."},
        ) from exc

    created = user_store.get_by_id(user_id)
    if created is None:
        raise HTTPException(
            status_code=500,
            detail={"code": "internal_error", "message": "User not found after write."},
        )
    logger.info("User registered: %s (admin=%s)", created.id, created.is_admin)
    return _issue(request, created)


@limiter.limit(_login_rate_limit)  # brute-force mitigation -- must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=TokenResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; return a token pair and set the cookie.

    Returns the same generic error for unknown email and wrong password
    ("bad_credentials") to avoid leaking account existence.
    """
    user_store: UserStore = request.app.state.user_store
    _secret(request)

    user = authenticate_user(user_store, body.email, body.password)
    if user is None:
        logger.warning("Failed login attempt")
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid email or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    user_store.update_last_login(user.id)
    logger.info("User login successful: %s", user.id)
    return _issue(request, user)


@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, body: RefreshRequest) -> JSONResponse:
    """Exchange a valid refresh token for a new pair, rotating the stored token."""
    secret = _secret(request)
    sessions: SessionStore = request.app.state.session_store
    user_store: UserStore = request.app.state.user_store
    token_config: TokenConfig = request.app.state.token_config

    result = check_refresh_token(body.refresh_token, secret)
    if result.claims is None:
        logger.warning("Invalid refresh token: %s", result.failure.value)
        raise _invalid_refresh()
    user_id = result.claims.user_id

    if not sessions.validate(user_id, body.refresh_token):
        logger.warning("Refresh token not found in session store for user %s", user_id)
        raise _invalid_refresh()

    user = user_store.get_by_id(user_id)
    if user is None or not user.is_active:
        sessions.invalidate(user_id)
        raise _invalid_refresh()

    pair = create_token_pair(user.id, user.email, secret, is_admin=user.is_admin, config=token_config)
    if not sessions.rotate(user.id, pair.refresh_token):
        # Session vanished between validate() and rotate(): logout or expiry won the race.
        raise _invalid_refresh()

    logger.info("Refresh token rotated for user %s", user.id)
    resp = JSONResponse(
        content=TokenResponse(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.expires_in,
            user_id=user.id,
            email=user.email,
            is_admin=user.is_admin,
        ).model_dump(),
    )
    set_auth_cookie(
        resp,
        pair.access_token,
        cookie_name=request.app.state.access_cookie_name,
        max_age=pair.expires_in,
        secure=get_settings().secure_cookies,
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, body: RefreshRequest) -> JSONResponse:
    """Invalidate the session named by the refresh token and clear the cookie."""
    secret = _secret(request)
    sessions: SessionStore = request.app.state.session_store

    result = check_refresh_token(body.refresh_token, secret)
    if result.claims is None:
        logger.warning("Logout attempt with invalid refresh token: %s", result.failure.value)
        raise _invalid_refresh()

    sessions.invalidate(result.claims.user_id)
    logger.info("User logged out: %s", result.claims.user_id)
    resp = JSONResponse(content=MessageResponse(message="Logged out.").model_dump())
    clear_auth_cookie(resp, cookie_name=request.app.state.access_cookie_name)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(claims: Claims = Depends(require_auth)) -> MeResponse:
    """Return identity information carried by the presented access token."""
    return MeResponse.from_claims(claims)


@router.get("/auth/users", response_model=list[UserResponse], dependencies=[Depends(require_auth)])
def list_users(request: Request, claims: Claims = Depends(require_admin)) -> list[UserResponse]:
    """List all accounts. Admin only."""
    user_store: UserStore = request.app.state.user_store
    return [UserResponse.from_user(u) for u in user_store.list_users()]


@router.get("/auth/users/{id}", response_model=UserResponse, dependencies=[Depends(require_auth)])
def get_user(request: Request, id: str, claims: Claims = Depends(require_admin_or_self("id"))) -> UserResponse:
    user_store: UserStore = request.app.state.user_store
    user = user_store.get_by_id(id)
    if user is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "User not found."})
    return UserResponse.from_user(user)


@router.get("/auth/users/{id}/sessions", response_model=list[SessionResponse], dependencies=[Depends(require_auth)])
def list_user_sessions(
    request: Request, id: str, claims: Claims = Depends(require_admin_or_self("id"))
) -> list[SessionResponse]:
    """Return the user's active session (zero or one)."""
    sessions: SessionStore = request.app.state.session_store
    return [SessionResponse.from_record(s) for s in sessions.list_sessions(id)]


@router.delete("/auth/users/{id}/sessions", status_code=204, dependencies=[Depends(require_auth)])
def revoke_user_sessions(request: Request, id: str, claims: Claims = Depends(require_admin_or_self("id"))) -> Response:
    """Force logout: the user's refresh token stops working immediately.

    Access tokens already issued stay valid until they expire.
    """
    sessions: SessionStore = request.app.state.session_store
    sessions.invalidate(id)
    logger.info("Session revoked for user %s by %s", id, claims.user_id)
    return Response(status_code=204)


@router.post(
    "/auth/users/{id}/sessions/cleanup",
    response_model=CleanupResponse,
    dependencies=[Depends(require_auth)],
)
def cleanup_user_session(request: Request, id: str, claims: Claims = Depends(require_admin)) -> CleanupResponse:
    """Purge the user's session if it is expired or corrupt. Admin only."""
    sessions: SessionStore = request.app.state.session_store
    return CleanupResponse(purged=sessions.cleanup_expired(id))
