from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Protocol, Sequence

from sessionguard.config import Settings
from sessionguard.logging import get_logger
from sessionguard.service.access_tokens import AccessTokenSigner
from sessionguard.storage.models import (
    BlacklistEntry,
    DeviceInfo,
    RefreshToken,
    RevocationReason,
    TokenType,
)
from sessionguard.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def hash_token(secret: str, server_secret: str) -> str:
    """Keyed one-way hash used for both stored refresh tokens and blacklist keys."""
    return hmac.new(server_secret.encode(), secret.encode(), hashlib.sha256).hexdigest()


class BlacklistStore(Protocol):
    def add_blacklist_entries(self, entries: Sequence[BlacklistEntry]) -> int: ...

    def is_blacklisted(self, token_hash: str, now: datetime) -> bool: ...

    def get_blacklist_entry(self, token_hash: str) -> Optional[BlacklistEntry]: ...

    def delete_expired_blacklist(self, now: datetime) -> int: ...

    def list_blacklist(
        self,
        *,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[BlacklistEntry]: ...

    def blacklist_stats(self, now: datetime) -> Dict[str, object]: ...

    def deactivate_session_tokens(self, session_id: str, *, at: datetime) -> List[RefreshToken]: ...

    def deactivate_user_tokens(self, user_id: str, *, at: datetime) -> List[RefreshToken]: ...


class BlacklistCache:
    """Two-tier revocation list.

    The durable store is the source of truth and every revocation is written
    there first; a failure there propagates to the caller. Redis, when
    configured, holds a copy of each entry that expires with the token itself
    and answers the hot ``is_revoked`` check. Redis failures are logged and
    the durable store answers instead.
    """

    def __init__(
        self,
        store: BlacklistStore,
        cache: Optional[RedisCache],
        settings: Settings,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    def hash(self, token_secret: str) -> str:
        return hash_token(token_secret, self.settings.jwt_secret)

    async def revoke(
        self,
        token_secret: str,
        token_type: TokenType,
        *,
        reason: RevocationReason,
        expires_at: datetime,
        user_id: str,
        session_id: Optional[str] = None,
        device_info: Optional[DeviceInfo] = None,
    ) -> BlacklistEntry:
        entry = BlacklistEntry(
            token_hash=self.hash(token_secret),
            token_type=TokenType(token_type),
            reason=RevocationReason(reason),
            user_id=user_id,
            token_expiry=expires_at,
            session_id=session_id,
            device_info=device_info,
            ip_address=device_info.ip if device_info and device_info.ip else None,
            blacklisted_at=self._now(),
        )
        await self._record([entry])
        logger.info(
            "token_blacklisted",
            token_type=entry.token_type.value,
            reason=entry.reason.value,
            user_id=user_id,
            session_id=session_id,
        )
        return entry

    async def revoke_access_token(
        self,
        access_token: str,
        *,
        reason: RevocationReason,
        user_id: str,
        session_id: Optional[str] = None,
    ) -> BlacklistEntry:
        """Blacklist an access token until its ``exp`` claim passes."""
        expires_at = AccessTokenSigner.expiry_of(access_token)
        if expires_at is None:
            expires_at = self._now() + timedelta(
                seconds=self.settings.access_token_expires_in
            )
        return await self.revoke(
            access_token,
            TokenType.ACCESS,
            reason=reason,
            expires_at=expires_at,
            user_id=user_id,
            session_id=session_id,
        )

    async def blacklist_refresh_tokens(
        self, tokens: Sequence[RefreshToken], reason: RevocationReason
    ) -> int:
        """Record already-deactivated refresh token rows on the blacklist."""
        if not tokens:
            return 0
        now = self._now()
        entries = [
            BlacklistEntry(
                token_hash=token.token_hash,
                token_type=TokenType.REFRESH,
                reason=RevocationReason(reason),
                user_id=token.user_id,
                token_expiry=token.expires_at,
                session_id=token.session_id,
                device_info=token.device_info,
                ip_address=token.ip_address,
                blacklisted_at=now,
            )
            for token in tokens
        ]
        await self._record(entries)
        return len(entries)

    async def revoke_all_for_user(self, user_id: str, reason: RevocationReason) -> int:
        reason = RevocationReason(reason)
        tokens = self.store.deactivate_user_tokens(user_id, at=self._now())
        count = await self.blacklist_refresh_tokens(tokens, reason)
        logger.info("user_tokens_revoked", user_id=user_id, reason=reason.value, count=count)
        return count

    async def revoke_all_for_session(self, session_id: str, reason: RevocationReason) -> int:
        reason = RevocationReason(reason)
        tokens = self.store.deactivate_session_tokens(session_id, at=self._now())
        count = await self.blacklist_refresh_tokens(tokens, reason)
        logger.info(
            "session_tokens_revoked", session_id=session_id, reason=reason.value, count=count
        )
        return count

    async def _record(self, entries: Sequence[BlacklistEntry]) -> None:
        try:
            self.store.add_blacklist_entries(entries)
        except Exception as exc:
            logger.error(
                "blacklist_durable_write_failed",
                count=len(entries),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        if not self.cache:
            return
        try:
            await self.cache.blacklist_many(
                (entry.token_hash, entry.to_cache_payload(), entry.token_expiry)
                for entry in entries
            )
        except Exception as exc:
            logger.warning(
                "blacklist_cache_write_failed", count=len(entries), error=str(exc)
            )

    async def is_revoked(self, token_secret: str) -> bool:
        return await self.is_hash_revoked(self.hash(token_secret))

    async def is_hash_revoked(self, token_hash: str) -> bool:
        if self.cache:
            try:
                if await self.cache.is_blacklisted(token_hash):
                    return True
            except Exception as exc:
                logger.warning("blacklist_cache_read_failed", error=str(exc))
        return self.store.is_blacklisted(token_hash, self._now())

    def cleanup(self) -> int:
        """Delete durable entries whose tokens have expired naturally."""
        removed = self.store.delete_expired_blacklist(self._now())
        if removed:
            logger.info("blacklist_cleanup_complete", removed=removed)
        return removed

    def get_stats(self) -> Dict[str, object]:
        return self.store.blacklist_stats(self._now())

    def get_blacklist_details(self, token_hash: str) -> Optional[BlacklistEntry]:
        """Durable record for one hash, whether or not the token has expired since."""
        return self.store.get_blacklist_entry(token_hash)

    def get_user_blacklist(self, user_id: str, limit: int = 100) -> List[BlacklistEntry]:
        return self.store.list_blacklist(user_id=user_id, limit=limit)

    def get_session_blacklist(self, session_id: str, limit: int = 100) -> List[BlacklistEntry]:
        return self.store.list_blacklist(session_id=session_id, limit=limit)
