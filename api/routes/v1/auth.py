"""
api/routes/v1/auth.py -- Session lifecycle REST endpoints.

Routes:
  POST /api/v1/auth/register   -- create account; returns access token, sets refresh cookie
  POST /api/v1/auth/login      -- password login; returns access token, sets refresh cookie
  POST /api/v1/auth/refresh    -- rotate the refresh cookie; returns a new access token
  POST /api/v1/auth/logout     -- revoke the refresh cookie's token and clear it
  GET  /api/v1/auth/me         -- current user (requires bearer access token)

Security:
  [H1] register, login and refresh are rate-limited per IP (LOGIN_RATE_LIMIT).
  [H2] The refresh token is never in a response body. It lives only in an
       httpOnly cookie scoped to /api/v1/auth.
  [M1] Cache-Control: no-store on every response carrying a token.

Handlers are plain `def` so bcrypt work runs in FastAPI's thread pool
instead of blocking the event loop.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import credential_rate_limit, limiter
from api.models import (
    LoginRequest,
    OkResponse,
    RegisterRequest,
    SessionResponse,
    TokenResponse,
    UserResponse,
)
from auth.dependencies import get_current_user
from auth.errors import Unauthorized
from auth.models import AuthResult, User
from auth.sessions import INVALID_REFRESH, SessionManager
from auth.tokens import clear_refresh_cookie, set_refresh_cookie
from core.config import Settings

# Auth policy:
# - POST /api/v1/auth/register: public
# - POST /api/v1/auth/login:    public
# - POST /api/v1/auth/refresh:  public -- authenticated by the refresh cookie
# - POST /api/v1/auth/logout:   public -- clearing a cookie needs no access token
# - GET  /api/v1/auth/me:       requires auth (get_current_user)
router = APIRouter()


def _session_response(request: Request, result: AuthResult, status_code: int) -> JSONResponse:
    settings: Settings = request.app.state.settings
    resp = JSONResponse(
        status_code=status_code,
        content=SessionResponse(
            user=UserResponse.from_user(result.user),
            access_token=result.access_token,
            expires_in=settings.jwt_access_ttl_seconds,
        ).model_dump(),
    )
    set_refresh_cookie(resp, result.refresh_token, settings)
    resp.headers["Cache-Control"] = "no-store"  # [M1]
    return resp


# ---------------------------------------------------------------------------
# Credential endpoints
# ---------------------------------------------------------------------------


@limiter.limit(credential_rate_limit)  # [H1] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", response_model=SessionResponse, status_code=201)
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an account and start a session for it.

    409 if the email is already registered (compared case-insensitively).
    """
    sessions: SessionManager = request.app.state.sessions
    result = sessions.register(body.email, body.password)
    return _session_response(request, result, status_code=201)


@limiter.limit(credential_rate_limit)  # [H1]
@router.post("/auth/login", response_model=SessionResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password.

    Unknown email and wrong password produce the same 401 body, and the
    manager burns a bcrypt check on the unknown-email path so the two take
    comparable time.
    """
    sessions: SessionManager = request.app.state.sessions
    result = sessions.login(body.email, body.password)
    return _session_response(request, result, status_code=200)


@limiter.limit(credential_rate_limit)  # [H1]
@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request) -> JSONResponse:
    """Exchange the refresh cookie for a new access token and a rotated cookie.

    The presented token is revoked in the same transaction that stores its
    replacement. Replaying it afterwards returns 401.
    """
    settings: Settings = request.app.state.settings
    raw_token = request.cookies.get(settings.refresh_cookie_name)
    if not raw_token:
        raise Unauthorized(INVALID_REFRESH)

    sessions: SessionManager = request.app.state.sessions
    tokens = sessions.refresh(raw_token)

    resp = JSONResponse(
        content=TokenResponse(
            access_token=tokens.access_token,
            expires_in=settings.jwt_access_ttl_seconds,
        ).model_dump(),
    )
    set_refresh_cookie(resp, tokens.refresh_token, settings)
    resp.headers["Cache-Control"] = "no-store"  # [M1]
    return resp


@router.post("/auth/logout", response_model=OkResponse)
def logout(request: Request) -> JSONResponse:
    """Revoke the refresh cookie's token (if it matches one) and clear the cookie.

    Always 200: logout never reveals whether the token was known.
    """
    settings: Settings = request.app.state.settings
    raw_token = request.cookies.get(settings.refresh_cookie_name)
    if raw_token:
        sessions: SessionManager = request.app.state.sessions
        sessions.logout(raw_token)

    resp = JSONResponse(content=OkResponse().model_dump())
    clear_refresh_cookie(resp, settings)
    resp.headers["Cache-Control"] = "no-store"
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserResponse)
def me(current_user: User = Depends(get_current_user)) -> UserResponse:
    """Return the account behind the bearer access token."""
    return UserResponse.from_user(current_user)
