from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Path, Request, Response

from tutorgate.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    SessionListResponse,
    SessionResponse,
    SignupRequest,
    TokenRefreshRequest,
    UpdateUserRoleRequest,
    UserResponse,
)
from tutorgate.logging import bind_principal, get_logger
from tutorgate.service.auth import AuthContext
from tutorgate.service.runtime import get_runtime
from tutorgate.service.tokens import IssuedTokens
from tutorgate.storage.models import Session, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

ACCESS_COOKIE = "access_token"
REFRESH_COOKIE = "refresh_token"
REFRESH_COOKIE_PATH = "/v1/auth"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def get_user(
    request: Request,
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None),
) -> AuthContext:
    """Authenticate the caller and expose the context on ``request.state.auth``.

    Raises:
        401: no_token, invalid_token or token_expired
    """
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization, cookie_token=access_token)
    request.state.auth = ctx
    bind_principal(ctx.user_id, ctx.session_id)
    return ctx


async def get_admin_user(
    request: Request,
    authorization: Optional[str] = Header(None),
    access_token: Optional[str] = Cookie(None),
) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(
        authorization, cookie_token=access_token, required_role="admin"
    )
    request.state.auth = ctx
    bind_principal(ctx.user_id, ctx.session_id)
    return ctx


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        role=user.role,
        is_active=user.is_active,
        email_verified=user.email_verified,
        created_at=user.created_at,
    )


def _auth_response(user: Optional[User], session: Session, tokens: IssuedTokens, role: str) -> AuthResponse:
    return AuthResponse(
        user_id=session.user_id,
        session_id=session.id,
        session_expires_at=session.expires_at,
        access_token=tokens.access_token,
        access_token_expires_at=tokens.access_expires_at,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        role=role,
        user=_user_response(user) if user else None,
    )


def _apply_session_cookies(response: Response, tokens: IssuedTokens) -> None:
    settings = get_runtime().settings
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.access_token_ttl_minutes * 60,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.refresh_token_ttl_minutes * 60,
        path=REFRESH_COOKIE_PATH,
    )


def _clear_session_cookies(response: Response) -> None:
    secure = get_runtime().settings.cookie_secure
    response.delete_cookie(ACCESS_COOKIE, path="/", secure=secure, samesite="lax")
    response.delete_cookie(
        REFRESH_COOKIE, path=REFRESH_COOKIE_PATH, secure=secure, samesite="lax"
    )


def _session_response(session: Session, current_session_id: Optional[str]) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        created_at=session.created_at,
        last_used_at=session.last_used_at,
        expires_at=session.expires_at,
        user_agent=session.user_agent,
        ip_addr=session.ip_addr,
        current=session.id == current_session_id,
    )


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(
    body: SignupRequest,
    request: Request,
    response: Response,
    user_agent: Optional[str] = Header(None),
):
    """Create a student or teacher account and sign it in.

    Raises:
        403: If signup is disabled in settings
        409: If the email is already registered
    """
    runtime = get_runtime()
    user, session, tokens = await runtime.auth.signup(
        body.email,
        body.password,
        name=body.name,
        role=body.role,
        user_agent=user_agent,
        ip_addr=_client_ip(request),
    )
    _apply_session_cookies(response, tokens)
    return Envelope(status="ok", data=_auth_response(user, session, tokens, user.role))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    user_agent: Optional[str] = Header(None),
):
    """Authenticate with email and password and open a new device session.

    Raises:
        401: invalid_credentials, identical for unknown email and wrong password
    """
    runtime = get_runtime()
    user, session, tokens = await runtime.auth.login(
        body.email,
        body.password,
        user_agent=user_agent,
        ip_addr=_client_ip(request),
    )
    _apply_session_cookies(response, tokens)
    return Envelope(status="ok", data=_auth_response(user, session, tokens, user.role))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_token: Optional[str] = Cookie(None),
    user_agent: Optional[str] = Header(None),
):
    """Exchange a refresh token for a new access/refresh pair.

    The presented token is single-use. Replaying it after rotation revokes
    every session of the account.

    Raises:
        401: invalid_token, token_expired, revoked or security_alert
    """
    runtime = get_runtime()
    presented = (body.refresh_token if body else None) or refresh_token
    session, tokens = await runtime.auth.refresh(presented, user_agent=user_agent)
    user = runtime.auth.get_user(session.user_id)
    _apply_session_cookies(response, tokens)
    role = user.role if user else "student"
    return Envelope(status="ok", data=_auth_response(user, session, tokens, role))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    response: Response,
    body: Optional[TokenRefreshRequest] = None,
    refresh_token: Optional[str] = Cookie(None),
):
    """Revoke the session behind the refresh token. Always succeeds."""
    runtime = get_runtime()
    presented = (body.refresh_token if body else None) or refresh_token
    await runtime.auth.logout(presented)
    _clear_session_cookies(response)
    return Envelope(status="ok", data={"message": "logged out"})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(response: Response, principal: AuthContext = Depends(get_user)):
    """Revoke every session of the current user, including this one."""
    runtime = get_runtime()
    count = await runtime.auth.logout_all(principal.user_id)
    _clear_session_cookies(response)
    return Envelope(status="ok", data={"revoked": count})


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    """List the current user's active sessions, newest first."""
    runtime = get_runtime()
    sessions = runtime.auth.list_sessions(principal.user_id)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[_session_response(s, principal.session_id) for s in sessions]
        ),
    )


@router.delete("/auth/sessions/{session_id}", response_model=Envelope, tags=["auth"])
async def revoke_session(
    session_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_user),
):
    """Sign out one device.

    Raises:
        404: If the session does not exist or is not owned by the caller
    """
    runtime = get_runtime()
    await runtime.auth.revoke_session(principal.user_id, session_id)
    return Envelope(status="ok", data={"id": session_id, "revoked": True})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    """Get the current user's profile."""
    runtime = get_runtime()
    user = runtime.auth.get_user(principal.user_id)
    if not user:
        raise _http_error("not_found", "user not found", status_code=404)
    return Envelope(status="ok", data=_user_response(user))


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    principal: AuthContext = Depends(get_user),
):
    """Change the current user's password and sign out all other devices.

    Raises:
        401: invalid_credentials if the current password is wrong
        400: If the new password is too weak
    """
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        principal.user_id,
        body.current_password,
        body.new_password,
        current_session_id=principal.session_id,
    )
    return Envelope(status="ok", data={"status": "changed", "sessions_revoked": revoked})


@router.post("/auth/password/forgot", response_model=Envelope, tags=["auth"])
async def forgot_password(body: PasswordResetRequest):
    """Start a password reset. The answer is the same whether or not the account exists."""
    runtime = get_runtime()
    await runtime.auth.request_password_reset(body.email)
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/password/reset", response_model=Envelope, tags=["auth"])
async def reset_password(
    body: PasswordResetConfirm,
    request: Request,
    response: Response,
    user_agent: Optional[str] = Header(None),
):
    """Set a new password with a reset token and sign in on this device.

    Every other session of the account is revoked.

    Raises:
        400: If the token is unknown, used or expired, or the password is too weak
    """
    runtime = get_runtime()
    user, session, tokens = await runtime.auth.reset_password(
        body.token,
        body.new_password,
        user_agent=user_agent,
        ip_addr=_client_ip(request),
    )
    _apply_session_cookies(response, tokens)
    return Envelope(status="ok", data=_auth_response(user, session, tokens, user.role))


@router.post("/admin/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def admin_set_role(
    body: UpdateUserRoleRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    """Change a user's role. Their sessions are revoked so the new role applies at next login."""
    runtime = get_runtime()
    user = await runtime.auth.set_user_role(user_id, body.role)
    if not user:
        raise _http_error("not_found", "user not found", status_code=404)
    logger.info("admin_role_change", admin_id=principal.user_id, user_id=user_id, role=body.role)
    return Envelope(status="ok", data=_user_response(user))
