"""Tests for the in-memory store: persistence, constraints and cascades."""

from datetime import datetime, timedelta, timezone

import pytest

from sessionguard.storage.errors import ConstraintViolation
from sessionguard.storage.memory import MemoryStore
from sessionguard.storage.models import (
    BlacklistEntry,
    DeviceInfo,
    RefreshToken,
    RevocationReason,
    Session,
    TokenType,
)

DAY = 86400


def _device():
    return DeviceInfo(fingerprint="f" * 64, user_agent="pytest", ip="203.0.113.7")


def _session(store, user_id="user-1", now=None, ttl=DAY, cap=5):
    session = Session.new(user_id, ttl, _device(), now=now)
    store.create_session_capped(session, cap, now=now or datetime.now(timezone.utc))
    return session


def _token(store, session, token_hash, ttl=DAY, now=None):
    token = RefreshToken.new(session.user_id, token_hash, session.id, ttl, _device(), now=now)
    return store.create_refresh_token(token)


class TestMemoryStorePersistence:
    def test_state_survives_reload(self, tmp_path):
        """Test that a new store over the same root sees sessions, tokens and blacklist."""
        store = MemoryStore(fs_root=str(tmp_path))
        session = _session(store)
        token = _token(store, session, "hash-1")
        store.add_blacklist_entries(
            [
                BlacklistEntry(
                    token_hash="hash-0",
                    token_type=TokenType.ACCESS,
                    reason=RevocationReason.LOGOUT,
                    user_id="user-1",
                    token_expiry=datetime.now(timezone.utc) + timedelta(minutes=15),
                    session_id=session.id,
                )
            ]
        )

        reloaded = MemoryStore(fs_root=str(tmp_path))

        restored = reloaded.get_session(session.id)
        assert restored.user_id == "user-1"
        assert restored.device_info.fingerprint == "f" * 64
        assert reloaded.get_refresh_token_by_hash("hash-1").id == token.id
        assert reloaded.is_blacklisted("hash-0", datetime.now(timezone.utc))
        assert (tmp_path / "state" / "memory_store.json").exists()


class TestMemoryStoreTokens:
    def test_token_requires_existing_session(self, memory_store):
        orphan = RefreshToken.new("user-1", "hash-x", "missing-session", DAY)

        with pytest.raises(ConstraintViolation):
            memory_store.create_refresh_token(orphan)

    def test_token_hash_is_unique(self, memory_store):
        session = _session(memory_store)
        _token(memory_store, session, "hash-1")

        with pytest.raises(ConstraintViolation):
            _token(memory_store, session, "hash-1")

    def test_deactivate_has_single_winner(self, memory_store):
        """Test that only the first conditional deactivate reports success."""
        session = _session(memory_store)
        _token(memory_store, session, "hash-1")
        now = datetime.now(timezone.utc)

        assert memory_store.deactivate_refresh_token("hash-1", at=now) is True
        assert memory_store.deactivate_refresh_token("hash-1", at=now) is False
        assert memory_store.deactivate_refresh_token("unknown", at=now) is False

    def test_deactivate_session_tokens_returns_only_active(self, memory_store):
        session = _session(memory_store)
        _token(memory_store, session, "hash-1")
        _token(memory_store, session, "hash-2")
        now = datetime.now(timezone.utc)
        memory_store.deactivate_refresh_token("hash-1", at=now)

        revoked = memory_store.deactivate_session_tokens(session.id, at=now)

        assert [t.token_hash for t in revoked] == ["hash-2"]
        assert memory_store.count_active_session_tokens(session.id, now) == 0


class TestMemoryStoreSessions:
    def test_cap_evicts_oldest(self, memory_store):
        base = datetime.now(timezone.utc)
        first = _session(memory_store, now=base, cap=2)
        second = _session(memory_store, now=base + timedelta(seconds=1), cap=2)

        third = Session.new("user-1", DAY, _device(), now=base + timedelta(seconds=2))
        evicted = memory_store.create_session_capped(third, 2, now=base + timedelta(seconds=2))

        assert [s.id for s in evicted] == [first.id]
        assert not memory_store.get_session(first.id).is_active
        assert memory_store.get_session(second.id).is_active

    def test_cap_is_per_user(self, memory_store):
        _session(memory_store, user_id="alice", cap=1)
        other = Session.new("bob", DAY, _device())

        evicted = memory_store.create_session_capped(other, 1, now=datetime.now(timezone.utc))

        assert evicted == []

    def test_deleting_session_drops_its_tokens(self, memory_store):
        """Test that removing an expired session also removes its refresh tokens."""
        past = datetime.now(timezone.utc) - timedelta(days=3)
        session = _session(memory_store, now=past, ttl=60)
        _token(memory_store, session, "hash-1", ttl=DAY * 30, now=past)

        removed = memory_store.delete_expired_sessions(datetime.now(timezone.utc))

        assert removed == 1
        assert memory_store.get_session(session.id) is None
        assert memory_store.get_refresh_token_by_hash("hash-1") is None

    def test_deactivate_user_sessions_honors_exclusion(self, memory_store):
        keep = _session(memory_store)
        drop = _session(memory_store)

        revoked = memory_store.deactivate_user_sessions("user-1", exclude_session_id=keep.id)

        assert revoked == [drop.id]
        assert memory_store.get_session(keep.id).is_active

    def test_inactive_cleanup_only_touches_inactive_rows(self, memory_store):
        old = datetime.now(timezone.utc) - timedelta(days=40)
        active = _session(memory_store, now=old, ttl=DAY * 90)
        inactive = _session(memory_store, now=old, ttl=DAY * 90)
        memory_store.deactivate_session(inactive.id)

        removed = memory_store.delete_inactive_sessions(
            datetime.now(timezone.utc) - timedelta(days=30)
        )

        assert removed == 1
        assert memory_store.get_session(active.id) is not None
        assert memory_store.get_session(inactive.id) is None


class TestMemoryStoreBlacklist:
    def _entry(self, token_hash, expiry, reason=RevocationReason.LOGOUT):
        return BlacklistEntry(
            token_hash=token_hash,
            token_type=TokenType.REFRESH,
            reason=reason,
            user_id="user-1",
            token_expiry=expiry,
        )

    def test_first_record_wins(self, memory_store):
        expiry = datetime.now(timezone.utc) + timedelta(hours=1)
        assert memory_store.add_blacklist_entries([self._entry("h", expiry)]) == 1
        assert (
            memory_store.add_blacklist_entries(
                [self._entry("h", expiry, RevocationReason.ADMIN_ACTION)]
            )
            == 0
        )
        assert memory_store.list_blacklist(user_id="user-1")[0].reason is RevocationReason.LOGOUT

    def test_expired_entries_do_not_count(self, memory_store):
        now = datetime.now(timezone.utc)
        memory_store.add_blacklist_entries(
            [
                self._entry("live", now + timedelta(hours=1)),
                self._entry("dead", now - timedelta(hours=1)),
            ]
        )

        assert memory_store.is_blacklisted("live", now)
        assert not memory_store.is_blacklisted("dead", now)
        assert memory_store.blacklist_stats(now)["total"] == 1
        assert memory_store.delete_expired_blacklist(now) == 1
        assert memory_store.delete_expired_blacklist(now) == 0
