"""
api/routes/v1/auth.py -- Authentication and account administration REST endpoints.

Routes:
  POST  /api/v1/auth/signup                  -- create account; sets session cookie
  POST  /api/v1/auth/login                   -- password login; sets session cookie
  POST  /api/v1/auth/logout                  -- revokes the session; clears cookie
  GET   /api/v1/auth/me                      -- current user (requires auth)
  POST  /api/v1/auth/password                -- change own password (requires auth)
  PATCH /api/v1/auth/users/{id}/role         -- change role (admin only)
  PATCH /api/v1/auth/users/{id}/status       -- suspend / reactivate / delete (admin only)
  POST  /api/v1/auth/users/{id}/unlock       -- clear a lockout (admin only)
  GET   /api/v1/auth/audit                   -- read the audit log (admin only)

Security:
  POST /login and /signup are rate-limited per IP (Settings.login_rate_limit,
  Settings.signup_rate_limit).
  Login returns the same error for an unknown email and a wrong password.
  Cache-Control: no-store on every response that carries a session token.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter, login_limit, signup_limit
from api.models import (
    AuditEventResponse,
    AuthResponse,
    LoginRequest,
    PasswordChangeRequest,
    RoleChangeRequest,
    SignupRequest,
    StatusChangeRequest,
    UserResponse,
)
from auth.dependencies import extract_token, get_current_user, require_admin
from auth.errors import EmailAlreadyRegistered, InvalidSignupError
from auth.models import AuditEventType, AuthenticatedUser, LoginFailure, Session
from auth.service import AuthService
from core.config import get_settings
from core.db import parse_iso, utcnow

# Auth policy:
# - POST  /auth/signup, /auth/login, /auth/logout:  public
# - GET   /auth/me, POST /auth/password:            requires auth (get_current_user)
# - /auth/users/*, /auth/audit:                      requires admin (require_admin)
router = APIRouter()


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(signup_limit)
@router.post("/auth/signup", response_model=AuthResponse, status_code=201)
def signup(request: Request, body: SignupRequest) -> JSONResponse:
    """Create an account with the default retail role and start a session."""
    auth_service: AuthService = request.app.state.auth_service
    try:
        result = auth_service.signup(
            body.email,
            body.password,
            full_name=body.full_name,
            ip_address=_client_ip(request),
            user_agent=request.headers.get("user-agent"),
        )
    except EmailAlreadyRegistered as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "email_registered", "message": "An account with this email already exists."},
        ) from exc
    except InvalidSignupError as exc:
        raise HTTPException(status_code=400, detail={"code": "invalid_signup", "message": str(exc)}) from exc

    return _session_response(request, result.user, result.session, status_code=201)


@limiter.limit(login_limit)
@router.post("/auth/login", response_model=AuthResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password and start a session.

    An unknown email and a wrong password produce the same 401 body.
    """
    auth_service: AuthService = request.app.state.auth_service
    result = auth_service.login(
        body.email,
        body.password,
        ip_address=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    if not result.ok:
        if result.failure is LoginFailure.account_locked:
            status_code, code, message = 403, "account_locked", "Account is temporarily locked."
        else:
            status_code, code, message = 401, "invalid_credentials", "Invalid email or password."
        resp = JSONResponse(status_code=status_code, content={"error": {"code": code, "message": message}})
        resp.headers["Cache-Control"] = "no-store"
        return resp

    return _session_response(request, result.user, result.session)


@router.post("/auth/logout")
def logout(request: Request) -> JSONResponse:
    """Revoke the presented session (if any) and clear the cookie. Always 200."""
    token = extract_token(request)
    if token:
        auth_service: AuthService = request.app.state.auth_service
        auth_service.logout(token)
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie(request.app.state.session_cookie_name)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=UserResponse)
def me(current_user: AuthenticatedUser = Depends(get_current_user)) -> UserResponse:
    return UserResponse.from_user(current_user)


@router.post("/auth/password", status_code=204)
def change_password(
    request: Request,
    body: PasswordChangeRequest,
    current_user: AuthenticatedUser = Depends(get_current_user),
) -> Response:
    """Change the caller's password. Every session, including this one, is revoked."""
    auth_service: AuthService = request.app.state.auth_service
    try:
        changed = auth_service.change_password(current_user.id, body.current_password, body.new_password)
    except InvalidSignupError as exc:
        raise HTTPException(status_code=400, detail={"code": "invalid_password", "message": str(exc)}) from exc
    if not changed:
        raise HTTPException(
            status_code=400,
            detail={"code": "bad_credentials", "message": "Current password is incorrect."},
        )
    resp = Response(status_code=204)
    resp.delete_cookie(request.app.state.session_cookie_name)
    return resp


# ---------------------------------------------------------------------------
# Administration (admin only)
# ---------------------------------------------------------------------------


@router.patch("/auth/users/{identity_id}/role", response_model=UserResponse)
def change_role(
    request: Request,
    identity_id: str,
    body: RoleChangeRequest,
    current_user: AuthenticatedUser = Depends(require_admin),
) -> UserResponse:
    auth_service: AuthService = request.app.state.auth_service
    if not auth_service.change_role(identity_id, body.role, actor=current_user.id, reason=body.reason):
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "User not found."})
    return _user_or_404(auth_service, identity_id)


@router.patch("/auth/users/{identity_id}/status", response_model=UserResponse)
def change_status(
    request: Request,
    identity_id: str,
    body: StatusChangeRequest,
    current_user: AuthenticatedUser = Depends(require_admin),
) -> UserResponse:
    """Suspend, reactivate or delete an account. Admins cannot change their own status."""
    if identity_id == current_user.id:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_status_change", "message": "You cannot change the status of your own account."},
        )
    auth_service: AuthService = request.app.state.auth_service
    if not auth_service.set_status(identity_id, body.status, actor=current_user.id, reason=body.reason):
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "User not found."})
    return _user_or_404(auth_service, identity_id)


@router.post("/auth/users/{identity_id}/unlock", status_code=204)
def unlock(
    request: Request,
    identity_id: str,
    current_user: AuthenticatedUser = Depends(require_admin),
) -> Response:
    auth_service: AuthService = request.app.state.auth_service
    if not auth_service.unlock(identity_id, actor=current_user.id):
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "User not found."})
    return Response(status_code=204)


@router.get("/auth/audit", response_model=list[AuditEventResponse])
def list_audit_events(
    request: Request,
    identity_id: Optional[str] = None,
    event_type: Optional[AuditEventType] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    current_user: AuthenticatedUser = Depends(require_admin),
) -> list[AuditEventResponse]:
    """Newest-first audit events, optionally filtered by identity and event type."""
    events = request.app.state.audit.list_events(identity_id=identity_id, event_type=event_type, limit=limit)
    return [AuditEventResponse.from_event(e) for e in events]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


def _session_response(
    request: Request,
    user: AuthenticatedUser,
    session: Session,
    status_code: int = 200,
) -> JSONResponse:
    """JSON body with the token, plus the same token as an HttpOnly cookie."""
    settings = get_settings()
    resp = JSONResponse(
        status_code=status_code,
        content=AuthResponse(
            user=UserResponse.from_user(user),
            token=session.token,
            expires_at=session.expires_at,
        ).model_dump(),
    )
    expires_at = parse_iso(session.expires_at)
    max_age = int((expires_at - utcnow()).total_seconds()) if expires_at else settings.session_duration_hours * 3600
    resp.set_cookie(
        key=request.app.state.session_cookie_name,
        value=session.token,
        max_age=max(0, max_age),
        httponly=True,
        secure=settings.secure_cookies,
        samesite="lax",
        path="/",
    )
    resp.headers["Cache-Control"] = "no-store"
    return resp


def _user_or_404(auth_service: AuthService, identity_id: str) -> UserResponse:
    user = auth_service.get_user(identity_id)
    if user is None:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "User not found."})
    return UserResponse.from_user(user)
