from __future__ import annotations

import json
import threading
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from sessionguard.logging import get_logger
from sessionguard.storage.common import (
    ensure_utc,
    parse_device_info,
    usage_stats,
)
from sessionguard.storage.errors import ConstraintViolation, StoreUnavailableError
from sessionguard.storage.models import (
    BlacklistEntry,
    DeviceInfo,
    RefreshToken,
    RevocationReason,
    Session,
    TokenType,
)


class MemoryStore:
    """In-process store for sessions, refresh tokens and the durable blacklist.

    State is kept in dicts guarded by a single re-entrant lock and flushed to
    ``<fs_root>/state/memory_store.json`` after every mutation so that a
    restarted process picks up where it left off.
    """

    def __init__(self, fs_root: str = "/tmp/sessionguard") -> None:
        self.logger = get_logger(__name__)
        self.sessions: Dict[str, Session] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        # token_hash -> token id, kept in step with refresh_tokens
        self._token_index: Dict[str, str] = {}
        self.blacklist: Dict[str, BlacklistEntry] = {}
        # RLock so capped session creation can call the single-row helpers
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    # sessions
    def create_session_capped(
        self, session: Session, max_sessions: int, *, now: datetime
    ) -> List[Session]:
        """Insert ``session`` after deactivating the user's oldest overflow sessions.

        Returns the sessions that were evicted to make room.
        """
        with self._data_lock:
            if session.id in self.sessions:
                raise ConstraintViolation("session already exists", {"session_id": session.id})
            active = sorted(
                (
                    s
                    for s in self.sessions.values()
                    if s.user_id == session.user_id and s.is_valid(now)
                ),
                key=lambda s: s.created_at,
            )
            overflow = len(active) - max_sessions + 1
            evicted = active[:overflow] if overflow > 0 else []
            for old in evicted:
                old.is_active = False
            self.sessions[session.id] = session
            self._persist_state()
            return evicted

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def list_user_sessions(
        self, user_id: str, *, active_only: bool = True, now: Optional[datetime] = None
    ) -> List[Session]:
        with self._data_lock:
            sessions = [s for s in self.sessions.values() if s.user_id == user_id]
        if active_only:
            sessions = [s for s in sessions if s.is_valid(now)]
        return sorted(sessions, key=lambda s: s.created_at)

    def touch_session(self, session_id: str, at: datetime) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return False
            sess.last_activity = at
            self._persist_state()
            return True

    def update_session_device(self, session_id: str, device_info: DeviceInfo) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return False
            sess.device_info = device_info
            sess.ip_address = device_info.ip or sess.ip_address
            self._persist_state()
            return True

    def deactivate_session(self, session_id: str) -> bool:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or not sess.is_active:
                return False
            sess.is_active = False
            self._persist_state()
            return True

    def deactivate_user_sessions(
        self, user_id: str, *, exclude_session_id: Optional[str] = None
    ) -> List[str]:
        with self._data_lock:
            revoked = [
                s
                for s in self.sessions.values()
                if s.user_id == user_id and s.is_active and s.id != exclude_session_id
            ]
            for sess in revoked:
                sess.is_active = False
            if revoked:
                self._persist_state()
            return [s.id for s in revoked]

    def delete_expired_sessions(self, cutoff: datetime) -> int:
        with self._data_lock:
            stale = [sid for sid, s in self.sessions.items() if s.expires_at < cutoff]
            return self._delete_sessions(stale)

    def delete_inactive_sessions(self, cutoff: datetime) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, s in self.sessions.items()
                if not s.is_active and s.last_activity < cutoff
            ]
            return self._delete_sessions(stale)

    def _delete_sessions(self, session_ids: Sequence[str]) -> int:
        if not session_ids:
            return 0
        doomed = set(session_ids)
        for sid in doomed:
            self.sessions.pop(sid, None)
        # Tokens cannot outlive their session
        orphaned = [t for t in self.refresh_tokens.values() if t.session_id in doomed]
        for token in orphaned:
            self._drop_token(token)
        self._persist_state()
        return len(doomed)

    def session_stats(self, user_id: str, now: datetime) -> Dict[str, int]:
        with self._data_lock:
            rows = [s for s in self.sessions.values() if s.user_id == user_id]
        return usage_stats(rows, now)

    # refresh tokens
    def create_refresh_token(self, token: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if token.session_id not in self.sessions:
                raise ConstraintViolation(
                    "refresh token session missing", {"session_id": token.session_id}
                )
            if token.token_hash in self._token_index:
                raise ConstraintViolation("refresh token hash already exists")
            self.refresh_tokens[token.id] = token
            self._token_index[token.token_hash] = token.id
            self._persist_state()
            return token

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token_id = self._token_index.get(token_hash)
            return self.refresh_tokens.get(token_id) if token_id else None

    def deactivate_refresh_token(self, token_hash: str, *, at: datetime) -> bool:
        """Flip an active token to inactive; False when another caller got there first."""
        with self._data_lock:
            token = self.get_refresh_token_by_hash(token_hash)
            if not token or not token.is_active:
                return False
            token.is_active = False
            token.updated_at = at
            self._persist_state()
            return True

    def deactivate_session_tokens(self, session_id: str, *, at: datetime) -> List[RefreshToken]:
        with self._data_lock:
            tokens = [
                t
                for t in self.refresh_tokens.values()
                if t.session_id == session_id and t.is_active
            ]
            return self._deactivate_tokens(tokens, at)

    def deactivate_user_tokens(self, user_id: str, *, at: datetime) -> List[RefreshToken]:
        with self._data_lock:
            tokens = [
                t for t in self.refresh_tokens.values() if t.user_id == user_id and t.is_active
            ]
            return self._deactivate_tokens(tokens, at)

    def _deactivate_tokens(self, tokens: List[RefreshToken], at: datetime) -> List[RefreshToken]:
        for token in tokens:
            token.is_active = False
            token.updated_at = at
        if tokens:
            self._persist_state()
        return tokens

    def mark_refresh_token_used(self, token_id: str, at: datetime) -> None:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if not token:
                return
            token.last_used_at = at
            token.updated_at = at
            self._persist_state()

    def delete_refresh_token(self, token_id: str) -> bool:
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if not token:
                return False
            self._drop_token(token)
            self._persist_state()
            return True

    def _drop_token(self, token: RefreshToken) -> None:
        self.refresh_tokens.pop(token.id, None)
        self._token_index.pop(token.token_hash, None)

    def delete_expired_tokens(self, cutoff: datetime) -> int:
        with self._data_lock:
            stale = [t for t in self.refresh_tokens.values() if t.expires_at < cutoff]
            return self._delete_tokens(stale)

    def delete_inactive_tokens(self, cutoff: datetime) -> int:
        with self._data_lock:
            stale = [
                t
                for t in self.refresh_tokens.values()
                if not t.is_active and t.updated_at < cutoff
            ]
            return self._delete_tokens(stale)

    def _delete_tokens(self, tokens: List[RefreshToken]) -> int:
        for token in tokens:
            self._drop_token(token)
        if tokens:
            self._persist_state()
        return len(tokens)

    def count_active_session_tokens(self, session_id: str, now: datetime) -> int:
        with self._data_lock:
            return sum(
                1
                for t in self.refresh_tokens.values()
                if t.session_id == session_id and t.is_active and not t.is_expired(now)
            )

    def token_stats(self, user_id: str, now: datetime) -> Dict[str, int]:
        with self._data_lock:
            rows = [t for t in self.refresh_tokens.values() if t.user_id == user_id]
        return usage_stats(rows, now)

    def list_user_refresh_tokens(
        self, user_id: str, *, active_only: bool = True, now: Optional[datetime] = None
    ) -> List[RefreshToken]:
        with self._data_lock:
            tokens = [t for t in self.refresh_tokens.values() if t.user_id == user_id]
        if active_only:
            tokens = [t for t in tokens if t.is_active and not t.is_expired(now)]
        return sorted(tokens, key=lambda t: t.last_used_at or t.created_at, reverse=True)

    # blacklist
    def add_blacklist_entries(self, entries: Sequence[BlacklistEntry]) -> int:
        """Record entries; re-revoking an already listed hash keeps the first record."""
        with self._data_lock:
            added = 0
            for entry in entries:
                if entry.token_hash in self.blacklist:
                    continue
                self.blacklist[entry.token_hash] = entry
                added += 1
            if added:
                self._persist_state()
            return added

    def is_blacklisted(self, token_hash: str, now: datetime) -> bool:
        with self._data_lock:
            entry = self.blacklist.get(token_hash)
            return bool(entry and entry.token_expiry > now)

    def get_blacklist_entry(self, token_hash: str) -> Optional[BlacklistEntry]:
        with self._data_lock:
            return self.blacklist.get(token_hash)

    def delete_expired_blacklist(self, now: datetime) -> int:
        with self._data_lock:
            stale = [h for h, e in self.blacklist.items() if e.token_expiry < now]
            for token_hash in stale:
                self.blacklist.pop(token_hash, None)
            if stale:
                self._persist_state()
            return len(stale)

    def list_blacklist(
        self,
        *,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[BlacklistEntry]:
        with self._data_lock:
            entries = [
                e
                for e in self.blacklist.values()
                if (user_id is None or e.user_id == user_id)
                and (session_id is None or e.session_id == session_id)
            ]
        entries.sort(key=lambda e: e.blacklisted_at, reverse=True)
        return entries[:limit]

    def blacklist_stats(self, now: datetime) -> Dict[str, object]:
        with self._data_lock:
            live = [e for e in self.blacklist.values() if e.token_expiry > now]
        return {
            "total": len(live),
            "by_type": dict(Counter(e.token_type.value for e in live)),
            "by_reason": dict(Counter(e.reason.value for e in live)),
        }

    def pending_cleanup_counts(
        self, *, expired_before: datetime, inactive_before: datetime, now: datetime
    ) -> Dict[str, int]:
        with self._data_lock:
            tokens = list(self.refresh_tokens.values())
            sessions = list(self.sessions.values())
            entries = list(self.blacklist.values())
        return {
            "expired_tokens": sum(1 for t in tokens if t.expires_at < expired_before),
            "expired_sessions": sum(1 for s in sessions if s.expires_at < expired_before),
            "expired_blacklist": sum(1 for e in entries if e.token_expiry < now),
            "inactive_tokens": sum(
                1 for t in tokens if not t.is_active and t.updated_at < inactive_before
            ),
            "inactive_sessions": sum(
                1 for s in sessions if not s.is_active and s.last_activity < inactive_before
            ),
        }

    # persistence
    def _persist_state(self) -> None:
        state = {
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "refresh_tokens": [
                self._serialize_token(t) for t in self.refresh_tokens.values()
            ],
            "blacklist": [self._serialize_entry(e) for e in self.blacklist.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            self.logger.error("memory_store_persist_failed", path=str(path), error=str(exc))
            raise StoreUnavailableError("persist", exc) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.refresh_tokens = {
            t["id"]: self._deserialize_token(t) for t in data.get("refresh_tokens", [])
        }
        self._token_index = {t.token_hash: t.id for t in self.refresh_tokens.values()}
        self.blacklist = {
            e["token_hash"]: self._deserialize_entry(e) for e in data.get("blacklist", [])
        }
        self.logger.info(
            "memory_store_loaded",
            sessions=len(self.sessions),
            refresh_tokens=len(self.refresh_tokens),
            blacklist=len(self.blacklist),
        )
        return True

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return ensure_utc(datetime.fromisoformat(raw)) if raw else None

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "device_info": session.device_info.to_dict() if session.device_info else None,
            "ip_address": session.ip_address,
            "is_active": session.is_active,
            "last_activity": self._serialize_datetime(session.last_activity),
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            last_activity=self._deserialize_datetime(
                data.get("last_activity") or data["created_at"]
            ),
            device_info=parse_device_info(data.get("device_info")),
            ip_address=data.get("ip_address"),
            is_active=data.get("is_active", True),
        )

    def _serialize_token(self, token: RefreshToken) -> dict:
        return {
            "id": token.id,
            "user_id": token.user_id,
            "token_hash": token.token_hash,
            "session_id": token.session_id,
            "device_info": token.device_info.to_dict() if token.device_info else None,
            "ip_address": token.ip_address,
            "is_active": token.is_active,
            "last_used_at": self._serialize_datetime(token.last_used_at),
            "expires_at": self._serialize_datetime(token.expires_at),
            "created_at": self._serialize_datetime(token.created_at),
            "updated_at": self._serialize_datetime(token.updated_at),
        }

    def _deserialize_token(self, data: dict) -> RefreshToken:
        created_at = self._deserialize_datetime(data["created_at"])
        return RefreshToken(
            id=data["id"],
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            session_id=data["session_id"],
            expires_at=self._deserialize_datetime(data["expires_at"]),
            device_info=parse_device_info(data.get("device_info")),
            ip_address=data.get("ip_address"),
            is_active=data.get("is_active", True),
            last_used_at=self._deserialize_datetime(data.get("last_used_at")),
            created_at=created_at,
            updated_at=self._deserialize_datetime(data.get("updated_at")) or created_at,
        )

    def _serialize_entry(self, entry: BlacklistEntry) -> dict:
        return {
            "token_hash": entry.token_hash,
            "token_type": entry.token_type.value,
            "reason": entry.reason.value,
            "user_id": entry.user_id,
            "session_id": entry.session_id,
            "device_info": entry.device_info.to_dict() if entry.device_info else None,
            "ip_address": entry.ip_address,
            "blacklisted_at": self._serialize_datetime(entry.blacklisted_at),
            "token_expiry": self._serialize_datetime(entry.token_expiry),
        }

    def _deserialize_entry(self, data: dict) -> BlacklistEntry:
        return BlacklistEntry(
            token_hash=data["token_hash"],
            token_type=TokenType(data["token_type"]),
            reason=RevocationReason(data["reason"]),
            user_id=data["user_id"],
            token_expiry=self._deserialize_datetime(data["token_expiry"]),
            session_id=data.get("session_id"),
            device_info=parse_device_info(data.get("device_info")),
            ip_address=data.get("ip_address"),
            blacklisted_at=self._deserialize_datetime(data["blacklisted_at"]),
        )
