from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

_VALID_ERROR_CODES = {
    "validation_error",
    "unauthorized",
    "invalid_token",
    "token_expired",
    "token_revoked",
    "token_inactive",
    "session_invalid",
    "forbidden",
    "not_found",
    "conflict",
    "server_error",
}


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=512)
    session_id: Optional[str] = Field(None, max_length=128)


class LogoutRequest(BaseModel):
    all_devices: bool = False


class DeviceInfoResponse(BaseModel):
    browser: str
    os: str
    device_class: str
    ip: Optional[str] = None


class TokenPairResponse(BaseModel):
    session_id: str
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    token_type: str = "bearer"
    device: Optional[DeviceInfoResponse] = None


class SessionResponse(BaseModel):
    id: str
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    is_current: bool = False
    device: Optional[DeviceInfoResponse] = None


class SessionListResponse(BaseModel):
    items: List[SessionResponse]


class LogoutResponse(BaseModel):
    sessions_revoked: int


class HealthResponse(BaseModel):
    status: str
    store: str
    cache: bool
    cleanup: Dict[str, Any]
