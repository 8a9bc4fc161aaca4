"""
api/routes/v1/auth.py -- Authentication session REST endpoints.

Routes:
  POST /api/v1/auth/signup             -- register; sets refresh cookie; 201
  POST /api/v1/auth/login              -- password login; sets refresh cookie
  POST /api/v1/auth/oauth              -- resolve a provider-verified identity
  POST /api/v1/auth/refresh            -- rotate the refresh cookie
  POST /api/v1/auth/logout             -- revoke the refresh cookie's session; always 200
  POST /api/v1/auth/logout-all         -- revoke every session (requires auth)
  POST /api/v1/auth/change-password    -- new password + revoke all (requires auth)
  GET  /api/v1/auth/me                 -- live identity (requires auth)
  GET  /api/v1/auth/sessions/{user_id} -- active session count (SUPER_ADMIN)

Transport:
  The access token is returned in the JSON body and sent back by clients as
  "Authorization: Bearer <token>". The refresh token is only ever sent as an
  http-only, samesite=strict cookie scoped to the auth routes; it never
  appears in a response body.

Security:
  Credential-accepting routes are rate-limited (AUTH_RATE_LIMIT per IP).
  Cache-Control: no-store on every response that carries a token.

Errors raised by the session manager (auth.errors.AuthError) propagate to the
exception handler in api/main.py, which renders the ErrorResponse envelope.
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import AUTH_RATE_LIMIT, limiter
from api.models import (
    AuthResponse,
    ChangePasswordRequest,
    LoginRequest,
    LogoutAllResponse,
    MeResponse,
    MessageResponse,
    OAuthRequest,
    SessionCountResponse,
    SignupRequest,
    TokenResponse,
    UserResponse,
)
from auth.dependencies import get_current_user, require_role
from auth.errors import NotFound
from auth.models import AuthResult, AuthTokens, Role, UserSnapshot
from auth.sessions import SessionManager
from core.config import get_settings

# Auth policy:
# - POST /auth/signup, /auth/login, /auth/oauth:   public, rate-limited
# - POST /auth/refresh:                            refresh cookie, rate-limited
# - POST /auth/logout:                             public -- best-effort revoke
# - POST /auth/logout-all, /auth/change-password:  requires auth (get_current_user)
# - GET  /auth/me:                                 requires auth (get_current_user)
# - GET  /auth/sessions/{user_id}:                 requires SUPER_ADMIN
router = APIRouter()

_COOKIE_PATH = "/api/v1/auth"


# ---------------------------------------------------------------------------
# Cookie helpers
# ---------------------------------------------------------------------------


def set_refresh_cookie(response: Response, token: str, expires_at: datetime) -> None:
    """Write the refresh token as an http-only cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="strict": never sent on cross-site requests.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    expires: the session row's absolute expiry, so cookie and session die together.
    """
    settings = get_settings()
    response.set_cookie(
        settings.refresh_cookie_name,
        value=token,
        httponly=True,
        samesite="strict",
        secure=settings.secure_cookies,
        expires=expires_at,
        path=_COOKIE_PATH,
    )


def clear_refresh_cookie(response: Response) -> None:
    settings = get_settings()
    response.delete_cookie(
        settings.refresh_cookie_name,
        path=_COOKIE_PATH,
        httponly=True,
        samesite="strict",
        secure=settings.secure_cookies,
    )


def _refresh_cookie(request: Request) -> str | None:
    return request.cookies.get(get_settings().refresh_cookie_name)


def _manager(request: Request) -> SessionManager:
    return request.app.state.session_manager


def _access_ttl(request: Request) -> int:
    return int(_manager(request).codec.access_ttl.total_seconds())


def _issue_response(response: Response, tokens: AuthTokens) -> None:
    set_refresh_cookie(response, tokens.refresh_token, tokens.refresh_token_expires_at)
    response.headers["Cache-Control"] = "no-store"


def _auth_response(request: Request, response: Response, result: AuthResult) -> AuthResponse:
    _issue_response(response, result.tokens)
    return AuthResponse(
        user=UserResponse.from_public(result.user),
        access_token=result.tokens.access_token,
        expires_in=_access_ttl(request),
    )


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(AUTH_RATE_LIMIT)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/signup", response_model=AuthResponse, status_code=201)
def signup(request: Request, response: Response, body: SignupRequest) -> AuthResponse:
    """Register a new account and start its first session."""
    result = _manager(request).register(body.email, body.username, body.password, body.name)
    return _auth_response(request, response, result)


@limiter.limit(AUTH_RATE_LIMIT)
@router.post("/auth/login", response_model=AuthResponse)
def login(request: Request, response: Response, body: LoginRequest) -> AuthResponse:
    """Authenticate with email and password. Revokes every earlier session."""
    result = _manager(request).login(body.email, body.password)
    return _auth_response(request, response, result)


@limiter.limit(AUTH_RATE_LIMIT)
@router.post("/auth/oauth", response_model=AuthResponse)
def oauth(request: Request, response: Response, body: OAuthRequest) -> AuthResponse:
    """Find or create the account for a provider-verified email and start a session."""
    result = _manager(request).resolve_oauth_identity(body.email, body.name, body.image)
    return _auth_response(request, response, result)


@limiter.limit(AUTH_RATE_LIMIT)
@router.post("/auth/refresh", response_model=TokenResponse)
def refresh(request: Request, response: Response) -> TokenResponse:
    """Exchange the refresh cookie for a new access token and a rotated cookie."""
    rotated = _manager(request).rotate_refresh(_refresh_cookie(request))
    _issue_response(response, rotated.tokens)
    return TokenResponse(access_token=rotated.tokens.access_token, expires_in=_access_ttl(request))


@router.post("/auth/logout", response_model=MessageResponse)
def logout(request: Request, response: Response) -> MessageResponse:
    """Revoke the current refresh session (if any) and clear the cookie. Never fails."""
    _manager(request).logout(_refresh_cookie(request))
    clear_refresh_cookie(response)
    return MessageResponse(message="Logged out successfully.")


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.post("/auth/logout-all", response_model=LogoutAllResponse)
def logout_all(
    request: Request,
    response: Response,
    current_user: UserSnapshot = Depends(get_current_user),
) -> LogoutAllResponse:
    """Revoke every active session for the caller ("sign out everywhere")."""
    count = _manager(request).logout_all(current_user.id)
    clear_refresh_cookie(response)
    return LogoutAllResponse(message="Successfully logged out of all devices.", revoked=count)


@router.post("/auth/change-password", response_model=MessageResponse)
def change_password(
    request: Request,
    response: Response,
    body: ChangePasswordRequest,
    current_user: UserSnapshot = Depends(get_current_user),
) -> MessageResponse:
    """Change the caller's password. Every session is revoked; the client must log in again."""
    _manager(request).change_password(current_user.id, body.current_password, body.new_password)
    clear_refresh_cookie(response)
    return MessageResponse(message="Password changed successfully. Please log in again.")


@router.get("/auth/me", response_model=MeResponse)
def me(current_user: UserSnapshot = Depends(get_current_user)) -> MeResponse:
    """Return the live identity attached to this request."""
    return MeResponse.from_snapshot(current_user)


@router.get("/auth/sessions/{user_id}", response_model=SessionCountResponse)
def active_sessions(
    request: Request,
    user_id: str,
    current_user: UserSnapshot = Depends(require_role(Role.SUPER_ADMIN)),
) -> SessionCountResponse:
    """Report how many active refresh sessions a user holds. SUPER_ADMIN only."""
    store = _manager(request).store
    if store.find_user_by_id(user_id) is None:
        raise NotFound("User not found.")
    return SessionCountResponse(user_id=user_id, active_sessions=store.count_active_sessions(user_id))
