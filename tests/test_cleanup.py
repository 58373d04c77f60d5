"""Tests for the cleanup scheduler and its jobs."""

import asyncio
from datetime import datetime, timedelta, timezone

from sessionguard.service.cleanup import DAILY_JOB_ID, HOURLY_JOB_ID


def _expire_token(services, secret, minutes=10):
    stored = services.store.get_refresh_token_by_hash(services.blacklist.hash(secret))
    stored.expires_at = datetime.now(timezone.utc) - timedelta(minutes=minutes)


class TestExpiredCleanup:
    async def test_run_cleanup_reports_and_is_idempotent(self, services, ctx):
        """Test that a second pass over the same data removes nothing."""
        issued = await services.tokens.create_refresh_token("user-1", ctx)
        _expire_token(services, issued.refresh_secret)
        await services.blacklist.revoke_access_token(
            services.signer.issue("user-1", issued.session_id)[0],
            reason="logout",
            user_id="user-1",
        )
        stale = services.blacklist.get_user_blacklist("user-1")[0]
        stale.token_expiry = datetime.now(timezone.utc) - timedelta(minutes=1)

        first = await services.cleanup.run_cleanup()
        second = await services.cleanup.run_cleanup()

        assert first == {
            "expired_tokens": 1,
            "expired_sessions": 0,
            "expired_blacklist": 1,
            "total": 2,
        }
        assert second["total"] == 0

    async def test_grace_period_delays_deletion(self, services, ctx):
        services.settings.cleanup_grace_minutes = 60
        issued = await services.tokens.create_refresh_token("user-1", ctx)
        _expire_token(services, issued.refresh_secret, minutes=10)

        result = await services.cleanup.run_cleanup()

        assert result["expired_tokens"] == 0

    async def test_overlapping_run_is_skipped(self, services):
        first, second = await asyncio.gather(
            services.cleanup.run_cleanup(), services.cleanup.run_cleanup()
        )

        assert first is not None
        assert second is None
        assert services.cleanup.get_status()["jobs"][HOURLY_JOB_ID]["runs"] == 1

    async def test_failure_is_recorded_and_next_run_proceeds(self, services, monkeypatch):
        def boom(grace_minutes=None):
            raise RuntimeError("store offline")

        monkeypatch.setattr(services.tokens, "cleanup_expired_tokens", boom)

        assert await services.cleanup.run_cleanup() is None
        state = services.cleanup.get_status()["jobs"][HOURLY_JOB_ID]
        assert state["last_error"] == "store offline"
        assert state["running"] is False

        monkeypatch.undo()
        assert await services.cleanup.run_cleanup() is not None
        state = services.cleanup.get_status()["jobs"][HOURLY_JOB_ID]
        assert state["last_error"] is None
        assert state["runs"] == 2


class TestComprehensiveCleanup:
    async def _inactive_rows(self, services, ctx):
        login_a = await services.tokens.create_refresh_token("user-1", ctx)
        await services.tokens.refresh(login_a.refresh_secret, login_a.session_id)
        login_b = await services.tokens.create_refresh_token("user-1", ctx)
        await services.sessions.revoke_session(login_b.session_id)

    async def test_recent_inactive_rows_are_kept(self, services, ctx):
        await self._inactive_rows(services, ctx)

        result = await services.cleanup.run_comprehensive_cleanup()

        assert result["inactive_tokens"] == 0
        assert result["inactive_sessions"] == 0

    async def test_emergency_cleanup_ignores_age(self, services, ctx):
        await self._inactive_rows(services, ctx)

        result = await services.cleanup.emergency_cleanup()

        assert result == {
            "expired_tokens": 0,
            "expired_sessions": 0,
            "expired_blacklist": 0,
            "inactive_tokens": 2,
            "inactive_sessions": 1,
            "total": 3,
        }
        assert services.tokens.get_user_token_stats("user-1") == {
            "total": 1,
            "active": 1,
            "expired": 0,
            "inactive": 0,
        }
        assert services.cleanup.get_status()["jobs"][DAILY_JOB_ID]["last_result"] == result

    async def test_emergency_cleanup_ignores_expiry_grace(self, services, ctx):
        services.settings.cleanup_grace_minutes = 60
        issued = await services.tokens.create_refresh_token("user-1", ctx)
        _expire_token(services, issued.refresh_secret, minutes=10)
        assert (await services.cleanup.run_cleanup())["expired_tokens"] == 0

        result = await services.cleanup.emergency_cleanup()

        assert result["expired_tokens"] == 1
        assert services.tokens.get_user_token_stats("user-1")["total"] == 0

    async def test_cleanup_stats_preview(self, services, ctx):
        await self._inactive_rows(services, ctx)
        issued = await services.tokens.create_refresh_token("user-2", ctx)
        _expire_token(services, issued.refresh_secret)

        stats = services.cleanup.get_cleanup_stats()

        assert stats["expired_tokens"] == 1
        assert stats["inactive_tokens"] == 0
        assert stats["inactive_sessions"] == 0
        result = await services.cleanup.run_cleanup()
        assert result["expired_tokens"] == stats["expired_tokens"]


class TestScheduler:
    async def test_start_registers_both_jobs(self, services):
        services.cleanup.start()
        try:
            status = services.cleanup.get_status()
            assert status["scheduler_running"] is True
            assert status["jobs"][HOURLY_JOB_ID]["schedule"] == "0 * * * *"
            assert status["jobs"][HOURLY_JOB_ID]["next_run_at"] is not None
            assert status["jobs"][DAILY_JOB_ID]["next_run_at"] is not None
        finally:
            services.cleanup.stop()

        assert services.cleanup.running is False
        assert services.cleanup.get_status()["jobs"][DAILY_JOB_ID]["next_run_at"] is None

    def test_status_before_start(self, services):
        status = services.cleanup.get_status()

        assert status["scheduler_running"] is False
        assert status["jobs"][DAILY_JOB_ID]["runs"] == 0
