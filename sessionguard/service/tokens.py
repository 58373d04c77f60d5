from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Protocol

from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.access_tokens import AccessTokenSigner
from sessionguard.service.blacklist import BlacklistCache
from sessionguard.service.errors import (
    InvalidTokenError,
    SessionInvalidError,
    TokenExpiredError,
    TokenInactiveError,
    TokenRevokedError,
)
from sessionguard.service.fingerprint import DeviceFingerprinter
from sessionguard.service.sessions import SessionService
from sessionguard.storage.models import (
    DeviceInfo,
    IssuedToken,
    RefreshToken,
    RequestContext,
    RevocationReason,
    RotationResult,
    Session,
    ValidatedToken,
)

logger = get_logger(__name__)

# 64 random bytes, hex encoded
REFRESH_SECRET_BYTES = 64


class RefreshTokenStore(Protocol):
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken: ...

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]: ...

    def deactivate_refresh_token(self, token_hash: str, *, at: datetime) -> bool: ...

    def mark_refresh_token_used(self, token_id: str, at: datetime) -> None: ...

    def delete_refresh_token(self, token_id: str) -> bool: ...

    def delete_expired_tokens(self, cutoff: datetime) -> int: ...

    def delete_inactive_tokens(self, cutoff: datetime) -> int: ...

    def token_stats(self, user_id: str, now: datetime) -> Dict[str, int]: ...

    def list_user_refresh_tokens(
        self, user_id: str, *, active_only: bool = True, now: Optional[datetime] = None
    ) -> List[RefreshToken]: ...


class TokenService:
    """Issue, validate and rotate single-use refresh tokens.

    Every refresh token belongs to exactly one session. Rotation keeps the
    session and swaps the secret; the previous secret is deactivated with a
    conditional update so only one of several concurrent refreshes can win.
    """

    def __init__(
        self,
        store: RefreshTokenStore,
        sessions: SessionService,
        blacklist: BlacklistCache,
        fingerprinter: DeviceFingerprinter,
        signer: AccessTokenSigner,
        settings: Settings,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.blacklist = blacklist
        self.fingerprinter = fingerprinter
        self.signer = signer
        self.settings = settings

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def _persist_new_token(
        self, session: Session, device_info: Optional[DeviceInfo]
    ) -> tuple[str, RefreshToken]:
        secret = secrets.token_hex(REFRESH_SECRET_BYTES)
        token = RefreshToken.new(
            session.user_id,
            self.blacklist.hash(secret),
            session.id,
            self.settings.refresh_token_expires_in,
            device_info,
            now=self._now(),
        )
        # A refresh token never outlives its session
        if token.expires_at > session.expires_at:
            token.expires_at = session.expires_at
        self.store.create_refresh_token(token)
        return secret, token

    async def create_refresh_token(self, user_id: str, context: RequestContext) -> IssuedToken:
        """Login entry point: open a session and issue its first refresh token.

        If the token cannot be stored the new session is deactivated again,
        so a failed login never holds a slot under the session cap.
        """
        session = await self.sessions.create_session(user_id, context)
        try:
            secret, token = self._persist_new_token(session, session.device_info)
        except Exception as exc:
            logger.error(
                "refresh_token_issue_failed",
                user_id=user_id,
                session_id=session.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self.sessions.store.deactivate_session(session.id)
            raise
        access_token, access_expires_at = self.signer.issue(user_id, session.id)
        logger.info(
            "refresh_token_issued",
            user_id=user_id,
            session_id=session.id,
            token_id=token.id,
        )
        return IssuedToken(
            refresh_secret=secret,
            expires_at=token.expires_at,
            session_id=session.id,
            device_info=session.device_info,
            access_token=access_token,
            access_expires_at=access_expires_at,
        )

    async def validate_refresh_token(
        self, secret: str, session_id: Optional[str]
    ) -> ValidatedToken:
        token_hash = self.blacklist.hash(secret)
        if await self.blacklist.is_hash_revoked(token_hash):
            raise TokenRevokedError("refresh token has been revoked")
        token = self.store.get_refresh_token_by_hash(token_hash)
        if not token:
            raise InvalidTokenError("refresh token not recognized")
        if session_id is not None and token.session_id != session_id:
            logger.warning(
                "refresh_token_session_mismatch",
                token_id=token.id,
                presented_session_id=session_id,
            )
            raise InvalidTokenError("refresh token not recognized")
        now = self._now()
        if token.is_expired(now):
            self.store.delete_refresh_token(token.id)
            raise TokenExpiredError("refresh token has expired")
        if not token.is_active:
            raise TokenInactiveError("refresh token is no longer active")
        session = self.sessions.get_session(token.session_id)
        if not session or not session.is_valid(now):
            raise SessionInvalidError("session is no longer valid")
        self.store.mark_refresh_token_used(token.id, now)
        self.sessions.update_activity(session.id)
        return ValidatedToken(
            user_id=token.user_id,
            token=token,
            session=session,
            device_info=token.device_info,
        )

    async def refresh(
        self,
        secret: str,
        session_id: Optional[str],
        context: Optional[RequestContext] = None,
    ) -> RotationResult:
        """Exchange a refresh secret for a new access token and a new secret."""
        validated = await self.validate_refresh_token(secret, session_id)
        old = validated.token
        if not self.store.deactivate_refresh_token(old.token_hash, at=self._now()):
            logger.warning(
                "refresh_token_rotation_lost",
                token_id=old.id,
                session_id=old.session_id,
                user_id=old.user_id,
            )
            raise TokenRevokedError("refresh token has already been used")
        await self.blacklist.blacklist_refresh_tokens([old], RevocationReason.TOKEN_REFRESH)

        device_info = (
            self.fingerprinter.fingerprint(context) if context else old.device_info
        )
        new_secret, new_token = self._persist_new_token(validated.session, device_info)
        access_token, access_expires_at = self.signer.issue(old.user_id, old.session_id)
        logger.info(
            "refresh_token_rotated",
            user_id=old.user_id,
            session_id=old.session_id,
            old_token_id=old.id,
            new_token_id=new_token.id,
        )
        return RotationResult(
            access_token=access_token,
            access_expires_at=access_expires_at,
            refresh_secret=new_secret,
            expires_at=new_token.expires_at,
            session_id=old.session_id,
            device_info=device_info,
        )

    async def revoke_refresh_token(
        self, secret: str, reason: RevocationReason = RevocationReason.LOGOUT
    ) -> bool:
        token = self.store.get_refresh_token_by_hash(self.blacklist.hash(secret))
        if not token:
            return False
        self.store.deactivate_refresh_token(token.token_hash, at=self._now())
        await self.blacklist.blacklist_refresh_tokens([token], reason)
        return True

    async def revoke_all_user_refresh_tokens(
        self, user_id: str, reason: RevocationReason = RevocationReason.USER_LOGOUT_ALL
    ) -> int:
        return await self.blacklist.revoke_all_for_user(user_id, reason)

    async def revoke_session_tokens(
        self, session_id: str, reason: RevocationReason = RevocationReason.SESSION_REVOKED
    ) -> int:
        return await self.blacklist.revoke_all_for_session(session_id, reason)

    def verify_token_ownership(self, secret: str, user_id: str) -> bool:
        token = self.store.get_refresh_token_by_hash(self.blacklist.hash(secret))
        if not token:
            return False
        return token.user_id == user_id

    def get_user_token_stats(self, user_id: str) -> Dict[str, int]:
        return self.store.token_stats(user_id, self._now())

    def get_user_refresh_tokens(self, user_id: str) -> List[RefreshToken]:
        """Live refresh tokens of ``user_id``, most recently used first."""
        return self.store.list_user_refresh_tokens(user_id, active_only=True, now=self._now())

    def cleanup_expired_tokens(self, grace_minutes: Optional[int] = None) -> int:
        if grace_minutes is None:
            grace_minutes = self.settings.cleanup_grace_minutes
        cutoff = self._now() - timedelta(minutes=grace_minutes)
        removed = self.store.delete_expired_tokens(cutoff)
        logger.info("expired_tokens_cleaned", removed=removed)
        return removed

    def cleanup_inactive_tokens(self, days: int) -> int:
        cutoff = self._now() - timedelta(days=days)
        removed = self.store.delete_inactive_tokens(cutoff)
        logger.info("inactive_tokens_cleaned", removed=removed, days=days)
        return removed
