from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Request

from sessionguard.api.schemas import (
    DeviceInfoResponse,
    Envelope,
    HealthResponse,
    LogoutRequest,
    LogoutResponse,
    SessionListResponse,
    SessionResponse,
    TokenPairResponse,
    TokenRefreshRequest,
)
from sessionguard.service.errors import InvalidTokenError, NotFoundError
from sessionguard.service.runtime import get_runtime
from sessionguard.storage.memory import MemoryStore
from sessionguard.storage.models import AuthContext, DeviceInfo, RequestContext, Session

router = APIRouter(prefix="/v1")


def _bearer_token(authorization: Optional[str]) -> str:
    if not authorization:
        raise InvalidTokenError("missing bearer token")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise InvalidTokenError("missing bearer token")
    return token.strip()


def request_context(request: Request) -> RequestContext:
    return RequestContext(
        user_agent=request.headers.get("user-agent", ""),
        ip=request.client.host if request.client else "",
    )


async def get_auth(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.sessions.authenticate(_bearer_token(authorization))


def _device_response(device: Optional[DeviceInfo]) -> Optional[DeviceInfoResponse]:
    if device is None:
        return None
    return DeviceInfoResponse(
        browser=device.browser,
        os=device.os,
        device_class=device.device_class,
        ip=device.ip or None,
    )


def _session_response(session: Session, current_id: str) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        created_at=session.created_at,
        last_activity=session.last_activity,
        expires_at=session.expires_at,
        is_current=session.id == current_id,
        device=_device_response(session.device_info),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    """Rotate a refresh token.

    The presented refresh token is single-use; the response carries its
    replacement and a fresh access token for the same session.
    """
    runtime = get_runtime()
    result = await runtime.tokens.refresh(
        body.refresh_token, body.session_id, request_context(request)
    )
    return Envelope(
        status="ok",
        data=TokenPairResponse(
            session_id=result.session_id,
            access_token=result.access_token,
            access_expires_at=result.access_expires_at,
            refresh_token=result.refresh_secret,
            refresh_expires_at=result.expires_at,
            device=_device_response(result.device_info),
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    authorization: Optional[str] = Header(None),
):
    runtime = get_runtime()
    token = _bearer_token(authorization)
    await runtime.sessions.authenticate(token)
    revoked = await runtime.sessions.logout(
        token, all_devices=bool(body and body.all_devices)
    )
    return Envelope(status="ok", data=LogoutResponse(sessions_revoked=revoked))


@router.get("/sessions", response_model=Envelope, tags=["sessions"])
async def list_sessions(auth: AuthContext = Depends(get_auth)):
    runtime = get_runtime()
    sessions = runtime.sessions.get_user_sessions(auth.user_id)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[_session_response(s, auth.session_id) for s in sessions]
        ),
    )


@router.delete("/sessions/{session_id}", response_model=Envelope, tags=["sessions"])
async def revoke_session(
    session_id: str = Path(..., max_length=128),
    auth: AuthContext = Depends(get_auth),
):
    runtime = get_runtime()
    session = runtime.sessions.get_session(session_id)
    # Other users' sessions look the same as missing ones
    if not session or session.user_id != auth.user_id:
        raise NotFoundError("session not found", detail={"session_id": session_id})
    await runtime.sessions.revoke_session(session_id)
    return Envelope(status="ok", data={"session_id": session_id, "revoked": True})


@router.get("/healthz", response_model=Envelope, tags=["ops"])
async def health():
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data=HealthResponse(
            status="ok",
            store="memory" if isinstance(runtime.store, MemoryStore) else "postgres",
            cache=runtime.cache is not None,
            cleanup=runtime.cleanup.get_status(),
        ),
    )
