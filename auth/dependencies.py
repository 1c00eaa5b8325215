"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Two token carriers are checked in priority order:
  1. Authorization: Bearer <token> header -- API clients.
  2. Session cookie (Settings.session_cookie_name) -- browser storefronts.

Both resolve through AuthService.validate_session(), once per request. The
result is memoised on request.state so several dependencies in the same
request do not re-query the store.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises HTTP 401 if unauthenticated.
require_admin() wraps get_current_user() and raises HTTP 403 if not admin.

Layer rule: may import fastapi; no imports from tenancy/ or enforcement/.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.models import AuthenticatedUser, Role
from auth.service import AuthService

_UNSET = object()


def extract_token(request: Request) -> str | None:
    """Bearer header first, then the session cookie."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        if token:
            return token
    cookie_name = getattr(request.app.state, "session_cookie_name", "session_token")
    return request.cookies.get(cookie_name) or None


def try_get_current_user(request: Request) -> AuthenticatedUser | None:
    """Authenticate the request. Returns None on any failure, never raises."""
    cached = getattr(request.state, "user", _UNSET)
    if cached is not _UNSET:
        return cached
    user: AuthenticatedUser | None = None
    token = extract_token(request)
    if token:
        auth_service: AuthService = request.app.state.auth_service
        user = auth_service.validate_session(token)
    request.state.user = user
    return user


def get_current_user(request: Request) -> AuthenticatedUser:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: AuthenticatedUser = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def require_admin(request: Request) -> AuthenticatedUser:
    """Require the admin role. Raises HTTP 401 if unauthenticated, HTTP 403 if not admin."""
    user = get_current_user(request)
    if user.role is not Role.admin:
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "Admin access required."},
        )
    return user
