from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Header, Query, Request

from authsession.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    RegisterRequest,
    SecurityAlertInfo,
    SecurityAlertListResponse,
    SecurityStats,
    SessionInfo,
    SessionListResponse,
    SessionStats,
    TokenRefreshRequest,
    UserResponse,
)
from authsession.logging import bind_principal
from authsession.service.auth import AuthResult
from authsession.service.errors import UnauthorizedError
from authsession.service.runtime import get_runtime
from authsession.service.sessions import extract_device_info
from authsession.storage.models import Principal

router = APIRouter(prefix="/v1")


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else ""


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        token_type=result.token_type,
        expires_in=result.expires_in,
        session_id=result.session_id,
        user_id=result.user_id,
        new_device=result.new_device,
    )


async def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    """Request gate: blacklist lookup, then signature and expiry, then user lookup."""
    runtime = get_runtime()
    principal = await runtime.auth.authenticate(authorization)
    bind_principal(principal.user_id, principal.session_id)
    return principal


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request):
    """Create an account.

    Raises:
        409: If the email is already registered
        429: If too many registrations came from this address
    """
    runtime = get_runtime()
    user = await runtime.auth.register(body.email, body.password, ip=_client_ip(request))
    return Envelope(
        status="ok", data=UserResponse(user_id=user.id, email=user.email, role=user.role)
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    user_agent: Optional[str] = Header(None),
):
    """Authenticate with email and password and open a session for this device.

    Raises:
        401: If credentials are invalid
        429: If this address has too many recent failures
    """
    runtime = get_runtime()
    device = extract_device_info(user_agent, _client_ip(request))
    result = await runtime.auth.login(
        body.email, body.password, device, remember_me=body.remember_me
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    body: TokenRefreshRequest,
    authorization: Optional[str] = Header(None),
):
    """Exchange a refresh token for a new pair; the presented access token is revoked."""
    runtime = get_runtime()
    old_access = runtime.auth.extract_bearer(authorization)
    result = await runtime.auth.refresh(body.refresh_token, old_access_token=old_access)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = Body(None),
    authorization: Optional[str] = Header(None),
):
    """Revoke the presented tokens. Repeating a logout is not an error."""
    runtime = get_runtime()
    if not authorization:
        raise UnauthorizedError("authentication required", reason="missing_token")
    refresh_token = body.refresh_token if body else None
    ack = await runtime.auth.logout(authorization, refresh_token)
    return Envelope(status="ok", data={"message": ack.message})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    ack = await runtime.auth.logout_all(principal.user_id)
    return Envelope(status="ok", data={"message": ack.message})


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    view = await runtime.auth.get_sessions(principal.user_id)
    sessions = [
        SessionInfo(
            session_id=s.session_id,
            device_id=s.device_id,
            browser=s.browser,
            os=s.os,
            ip=s.ip,
            created_at=s.created_at,
            last_activity=s.last_activity,
            expires_at=s.expires_at,
            current=s.session_id == principal.session_id,
        )
        for s in view.sessions
    ]
    return Envelope(
        status="ok",
        data=SessionListResponse(sessions=sessions, stats=SessionStats(**view.stats)),
    )


@router.get("/auth/security-alerts", response_model=Envelope, tags=["auth"])
async def security_alerts(
    limit: int = Query(10, ge=1, le=100),
    principal: Principal = Depends(get_principal),
):
    runtime = get_runtime()
    report = runtime.auth.security_alerts(principal.user_id, limit=limit)
    alerts = [
        SecurityAlertInfo(
            type=a.type,
            severity=a.severity,
            message=a.message,
            timestamp=a.timestamp,
            details=a.details,
        )
        for a in report["alerts"]
    ]
    return Envelope(
        status="ok",
        data=SecurityAlertListResponse(alerts=alerts, stats=SecurityStats(**report["stats"])),
    )


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: Principal = Depends(get_principal)):
    return Envelope(
        status="ok",
        data=UserResponse(
            user_id=principal.user_id,
            email=principal.email,
            role=principal.role,
            session_id=principal.session_id,
        ),
    )
