from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Protocol

from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.access_tokens import AccessTokenSigner
from sessionguard.service.blacklist import BlacklistCache
from sessionguard.service.errors import (
    InvalidTokenError,
    NotFoundError,
    SessionInvalidError,
    TokenRevokedError,
)
from sessionguard.service.fingerprint import DeviceFingerprinter
from sessionguard.storage.models import (
    AuthContext,
    DeviceInfo,
    RequestContext,
    RevocationReason,
    Session,
)

logger = get_logger(__name__)


class SessionStore(Protocol):
    def create_session_capped(
        self, session: Session, max_sessions: int, *, now: datetime
    ) -> List[Session]: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def list_user_sessions(
        self, user_id: str, *, active_only: bool = True, now: Optional[datetime] = None
    ) -> List[Session]: ...

    def touch_session(self, session_id: str, at: datetime) -> bool: ...

    def update_session_device(self, session_id: str, device_info: DeviceInfo) -> bool: ...

    def deactivate_session(self, session_id: str) -> bool: ...

    def deactivate_user_sessions(
        self, user_id: str, *, exclude_session_id: Optional[str] = None
    ) -> List[str]: ...

    def delete_expired_sessions(self, cutoff: datetime) -> int: ...

    def delete_inactive_sessions(self, cutoff: datetime) -> int: ...

    def session_stats(self, user_id: str, now: datetime) -> Dict[str, int]: ...

    def count_active_session_tokens(self, session_id: str, now: datetime) -> int: ...


class SessionService:
    """Logical device logins and the per-user concurrent session cap."""

    def __init__(
        self,
        store: SessionStore,
        blacklist: BlacklistCache,
        fingerprinter: DeviceFingerprinter,
        signer: AccessTokenSigner,
        settings: Settings,
    ) -> None:
        self.store = store
        self.blacklist = blacklist
        self.fingerprinter = fingerprinter
        self.signer = signer
        self.settings = settings

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    async def create_session(self, user_id: str, context: RequestContext) -> Session:
        """Open a session, signing out the user's oldest devices when at the cap.

        Hitting the cap is never an error: the oldest active sessions (by
        creation time) are deactivated and their refresh tokens revoked.
        """
        now = self._now()
        device_info = self.fingerprinter.fingerprint(context)
        session = Session.new(
            user_id, self.settings.session_expires_in, device_info, now=now
        )
        evicted = self.store.create_session_capped(
            session, self.settings.max_sessions_per_user, now=now
        )
        for old in evicted:
            revoked = await self.blacklist.revoke_all_for_session(
                old.id, RevocationReason.SESSION_REVOKED
            )
            logger.info(
                "session_evicted",
                user_id=user_id,
                session_id=old.id,
                created_at=old.created_at.isoformat(),
                tokens_revoked=revoked,
            )
        logger.info(
            "session_created",
            user_id=user_id,
            session_id=session.id,
            browser=device_info.browser,
            os=device_info.os,
            device_class=device_info.device_class,
        )
        return session

    def is_valid(self, session: Optional[Session]) -> bool:
        return bool(session) and session.is_valid(self._now())

    def get_session(self, session_id: str) -> Optional[Session]:
        return self.store.get_session(session_id)

    def get_user_sessions(self, user_id: str, *, active_only: bool = True) -> List[Session]:
        return self.store.list_user_sessions(
            user_id, active_only=active_only, now=self._now()
        )

    def get_session_details(self, session_id: str) -> Dict[str, Any]:
        session = self.store.get_session(session_id)
        if not session:
            raise NotFoundError("session not found", detail={"session_id": session_id})
        now = self._now()
        return {
            "session": session,
            "is_valid": session.is_valid(now),
            "active_tokens": self.store.count_active_session_tokens(session_id, now),
        }

    def update_activity(self, session_id: str) -> bool:
        return self.store.touch_session(session_id, self._now())

    def update_session_device_info(self, session_id: str, context: RequestContext) -> DeviceInfo:
        device_info = self.fingerprinter.fingerprint(context)
        if not self.store.update_session_device(session_id, device_info):
            raise SessionInvalidError("session is not active", detail={"session_id": session_id})
        return device_info

    def get_user_session_stats(self, user_id: str) -> Dict[str, int]:
        return self.store.session_stats(user_id, self._now())

    async def revoke_session(
        self,
        session_id: str,
        reason: RevocationReason = RevocationReason.SESSION_REVOKED,
    ) -> bool:
        """Deactivate a session and cascade to its refresh tokens.

        Idempotent: revoking an already revoked session succeeds. Returns
        False only when the session id is unknown.
        """
        if not self.store.get_session(session_id):
            return False
        changed = self.store.deactivate_session(session_id)
        revoked = await self.blacklist.revoke_all_for_session(session_id, reason)
        if changed:
            logger.info(
                "session_revoked",
                session_id=session_id,
                reason=RevocationReason(reason).value,
                tokens_revoked=revoked,
            )
        return True

    async def revoke_all_user_sessions(
        self,
        user_id: str,
        exclude_session_id: Optional[str] = None,
        reason: RevocationReason = RevocationReason.USER_LOGOUT_ALL,
    ) -> int:
        """Revoke every active session of ``user_id`` except ``exclude_session_id``."""
        session_ids = self.store.deactivate_user_sessions(
            user_id, exclude_session_id=exclude_session_id
        )
        if exclude_session_id is None:
            await self.blacklist.revoke_all_for_user(user_id, reason)
        else:
            for session_id in session_ids:
                await self.blacklist.revoke_all_for_session(session_id, reason)
        logger.info(
            "user_sessions_revoked",
            user_id=user_id,
            kept_session_id=exclude_session_id,
            count=len(session_ids),
        )
        return len(session_ids)

    async def authenticate(self, access_token: str) -> AuthContext:
        """Resolve a bearer access token to a live session.

        Runs on every authenticated request: signature and expiry, the
        blacklist, then the owning session, then bumps session activity.
        """
        claims = self.signer.decode(access_token)
        if not claims:
            raise InvalidTokenError("invalid access token")
        if await self.blacklist.is_revoked(access_token):
            raise TokenRevokedError("access token has been revoked")
        session = self.store.get_session(str(claims.get("sid")))
        if not self.is_valid(session) or session.user_id != claims.get("sub"):
            raise SessionInvalidError("session is no longer valid")
        self.update_activity(session.id)
        return AuthContext(
            user_id=session.user_id,
            session_id=session.id,
            token_id=claims.get("jti"),
            expires_at=datetime.fromtimestamp(float(claims["exp"]), tz=timezone.utc),
        )

    async def logout(self, access_token: str, *, all_devices: bool = False) -> int:
        """Blacklist the presented access token and end its session (or all of them).

        Returns the number of sessions revoked.
        """
        claims = self.signer.decode(access_token)
        if not claims:
            raise InvalidTokenError("invalid access token")
        user_id = str(claims["sub"])
        session_id = str(claims.get("sid"))
        reason = RevocationReason.USER_LOGOUT_ALL if all_devices else RevocationReason.LOGOUT
        await self.blacklist.revoke_access_token(
            access_token, reason=reason, user_id=user_id, session_id=session_id
        )
        if all_devices:
            return await self.revoke_all_user_sessions(user_id, reason=reason)
        return 1 if await self.revoke_session(session_id, reason) else 0

    def cleanup_expired_sessions(self, grace_minutes: Optional[int] = None) -> int:
        if grace_minutes is None:
            grace_minutes = self.settings.cleanup_grace_minutes
        cutoff = self._now() - timedelta(minutes=grace_minutes)
        removed = self.store.delete_expired_sessions(cutoff)
        logger.info("expired_sessions_cleaned", removed=removed)
        return removed

    def cleanup_inactive_sessions(self, days: int) -> int:
        cutoff = self._now() - timedelta(days=days)
        removed = self.store.delete_inactive_sessions(cutoff)
        logger.info("inactive_sessions_cleaned", removed=removed, days=days)
        return removed
