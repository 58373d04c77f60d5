from __future__ import annotations

import secrets
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional


def _now() -> datetime:
    return datetime.now(timezone.utc)


class TokenType(str, Enum):
    ACCESS = "access"
    REFRESH = "refresh"


class RevocationReason(str, Enum):
    """Why a token ended up on the blacklist."""

    LOGOUT = "logout"
    TOKEN_REFRESH = "token_refresh"
    SESSION_REVOKED = "session_revoked"
    USER_LOGOUT_ALL = "user_logout_all"
    ADMIN_ACTION = "admin_action"


@dataclass(frozen=True)
class RequestContext:
    """Request-level signals handed in by the HTTP layer."""

    user_agent: str = ""
    ip: str = ""


@dataclass
class DeviceInfo:
    fingerprint: str
    user_agent: str = ""
    ip: str = ""
    browser: str = "Unknown"
    os: str = "Unknown"
    device_class: str = "Desktop"

    def to_dict(self) -> Dict[str, str]:
        return {
            "fingerprint": self.fingerprint,
            "user_agent": self.user_agent,
            "ip": self.ip,
            "browser": self.browser,
            "os": self.os,
            "device_class": self.device_class,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["DeviceInfo"]:
        if not data:
            return None
        return cls(
            fingerprint=data.get("fingerprint", ""),
            user_agent=data.get("user_agent", ""),
            ip=data.get("ip", ""),
            browser=data.get("browser", "Unknown"),
            os=data.get("os", "Unknown"),
            device_class=data.get("device_class", "Desktop"),
        )


@dataclass
class Session:
    id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    last_activity: datetime
    device_info: Optional[DeviceInfo] = None
    ip_address: Optional[str] = None
    is_active: bool = True

    @classmethod
    def new(
        cls,
        user_id: str,
        ttl_seconds: int,
        device_info: Optional[DeviceInfo] = None,
        *,
        now: Optional[datetime] = None,
    ) -> "Session":
        now = now or _now()
        return cls(
            id=secrets.token_hex(32),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            last_activity=now,
            device_info=device_info,
            ip_address=device_info.ip if device_info and device_info.ip else None,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or _now()) >= self.expires_at

    def is_valid(self, now: Optional[datetime] = None) -> bool:
        return self.is_active and not self.is_expired(now)


@dataclass
class RefreshToken:
    id: str
    user_id: str
    token_hash: str
    session_id: str
    expires_at: datetime
    device_info: Optional[DeviceInfo] = None
    ip_address: Optional[str] = None
    is_active: bool = True
    last_used_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)

    @classmethod
    def new(
        cls,
        user_id: str,
        token_hash: str,
        session_id: str,
        ttl_seconds: int,
        device_info: Optional[DeviceInfo] = None,
        *,
        now: Optional[datetime] = None,
    ) -> "RefreshToken":
        now = now or _now()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token_hash=token_hash,
            session_id=session_id,
            expires_at=now + timedelta(seconds=ttl_seconds),
            device_info=device_info,
            ip_address=device_info.ip if device_info and device_info.ip else None,
            created_at=now,
            updated_at=now,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or _now()) >= self.expires_at


@dataclass
class BlacklistEntry:
    token_hash: str
    token_type: TokenType
    reason: RevocationReason
    user_id: str
    token_expiry: datetime
    session_id: Optional[str] = None
    device_info: Optional[DeviceInfo] = None
    ip_address: Optional[str] = None
    blacklisted_at: datetime = field(default_factory=_now)

    def to_cache_payload(self) -> Dict[str, Any]:
        return {
            "token_type": self.token_type.value,
            "reason": self.reason.value,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "blacklisted_at": self.blacklisted_at.isoformat(),
            "token_expiry": self.token_expiry.isoformat(),
        }


@dataclass
class IssuedToken:
    """Result of a login: the refresh secret is only ever returned here."""

    refresh_secret: str
    expires_at: datetime
    session_id: str
    device_info: DeviceInfo
    access_token: Optional[str] = None
    access_expires_at: Optional[datetime] = None


@dataclass
class ValidatedToken:
    user_id: str
    token: RefreshToken
    session: Session
    device_info: Optional[DeviceInfo] = None


@dataclass
class RotationResult:
    access_token: str
    access_expires_at: datetime
    refresh_secret: str
    expires_at: datetime
    session_id: str
    device_info: Optional[DeviceInfo] = None


@dataclass
class AuthContext:
    """Resolved identity for an authenticated request."""

    user_id: str
    session_id: str
    token_id: Optional[str] = None
    expires_at: Optional[datetime] = None
