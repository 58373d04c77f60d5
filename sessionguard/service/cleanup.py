from __future__ import annotations

import asyncio
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional, Protocol

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from sessionguard.config import Settings
from sessionguard.logging import get_logger, set_correlation_id
from sessionguard.service.blacklist import BlacklistCache
from sessionguard.service.sessions import SessionService
from sessionguard.service.tokens import TokenService

logger = get_logger(__name__)

HOURLY_JOB_ID = "expired_cleanup"
DAILY_JOB_ID = "comprehensive_cleanup"


class CleanupStatsSource(Protocol):
    def pending_cleanup_counts(
        self, *, expired_before: datetime, inactive_before: datetime, now: datetime
    ) -> Dict[str, int]: ...


@dataclass
class JobState:
    schedule: str
    running: bool = False
    runs: int = 0
    last_started_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    last_result: Optional[Dict[str, int]] = None
    last_error: Optional[str] = None


class CleanupScheduler:
    """Periodic reclamation of expired and inactive lifecycle rows.

    Two cron jobs run on the event loop: an hourly sweep of expired tokens,
    sessions and blacklist entries, and a daily sweep that also removes rows
    deactivated more than ``inactive_cleanup_days`` ago. The store work runs in
    a worker thread. Each job refuses to start while its previous run is still
    in flight; that guard is per process only.
    """

    def __init__(
        self,
        tokens: TokenService,
        sessions: SessionService,
        blacklist: BlacklistCache,
        stats_source: CleanupStatsSource,
        settings: Settings,
    ) -> None:
        self.tokens = tokens
        self.sessions = sessions
        self.blacklist = blacklist
        self.stats_source = stats_source
        self.settings = settings
        self._jobs: Dict[str, JobState] = {
            HOURLY_JOB_ID: JobState(schedule=settings.cleanup_hourly_cron),
            DAILY_JOB_ID: JobState(schedule=settings.cleanup_daily_cron),
        }
        self._scheduler: Optional[AsyncIOScheduler] = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> None:
        """Register both cron jobs; must be called with an event loop running."""
        if self.running:
            return
        scheduler = AsyncIOScheduler(timezone="UTC")
        scheduler.add_job(
            self.run_cleanup,
            CronTrigger.from_crontab(self.settings.cleanup_hourly_cron, timezone="UTC"),
            id=HOURLY_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.add_job(
            self.run_comprehensive_cleanup,
            CronTrigger.from_crontab(self.settings.cleanup_daily_cron, timezone="UTC"),
            id=DAILY_JOB_ID,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        scheduler.start()
        self._scheduler = scheduler
        logger.info(
            "cleanup_scheduler_started",
            hourly=self.settings.cleanup_hourly_cron,
            daily=self.settings.cleanup_daily_cron,
        )

    def stop(self) -> None:
        if self._scheduler is None:
            return
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        self._scheduler = None
        logger.info("cleanup_scheduler_stopped")

    async def run_cleanup(self) -> Optional[Dict[str, int]]:
        """Hourly job: expired tokens, expired sessions, expired blacklist rows."""
        return await self._run_guarded(HOURLY_JOB_ID, self._expired_cleanup)

    async def run_comprehensive_cleanup(
        self, days: Optional[int] = None, grace_minutes: Optional[int] = None
    ) -> Optional[Dict[str, int]]:
        """Daily job: everything the hourly job does plus inactive rows older than ``days``.

        ``grace_minutes`` overrides ``cleanup_grace_minutes`` for the expired sweep.
        """
        threshold = self.settings.inactive_cleanup_days if days is None else days
        return await self._run_guarded(
            DAILY_JOB_ID, lambda: self._comprehensive_cleanup(threshold, grace_minutes)
        )

    async def emergency_cleanup(self) -> Optional[Dict[str, int]]:
        """Comprehensive cleanup with neither grace period, for incident response.

        Rows expired or deactivated a moment ago are removed as well.
        """
        logger.warning("emergency_cleanup_requested")
        return await self.run_comprehensive_cleanup(days=0, grace_minutes=0)

    async def _run_guarded(
        self, job_id: str, work: Callable[[], Dict[str, int]]
    ) -> Optional[Dict[str, int]]:
        state = self._jobs[job_id]
        if state.running:
            logger.warning("cleanup_job_already_running", job=job_id)
            return None
        state.running = True
        state.last_started_at = datetime.now(timezone.utc)
        set_correlation_id()
        started = time.monotonic()
        try:
            result = await asyncio.to_thread(work)
        except Exception as exc:
            state.last_error = str(exc)
            logger.error(
                "cleanup_job_failed",
                job=job_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None
        finally:
            state.running = False
            state.runs += 1
            state.last_finished_at = datetime.now(timezone.utc)
        state.last_result = result
        state.last_error = None
        logger.info(
            "cleanup_job_complete",
            job=job_id,
            duration_ms=int((time.monotonic() - started) * 1000),
            **result,
        )
        return result

    def _expired_cleanup(self, grace_minutes: Optional[int] = None) -> Dict[str, int]:
        # Tokens first so their counts are not hidden by the session cascade
        expired_tokens = self.tokens.cleanup_expired_tokens(grace_minutes)
        expired_sessions = self.sessions.cleanup_expired_sessions(grace_minutes)
        expired_blacklist = self.blacklist.cleanup()
        return {
            "expired_tokens": expired_tokens,
            "expired_sessions": expired_sessions,
            "expired_blacklist": expired_blacklist,
            "total": expired_tokens + expired_sessions + expired_blacklist,
        }

    def _comprehensive_cleanup(
        self, days: int, grace_minutes: Optional[int] = None
    ) -> Dict[str, int]:
        result = self._expired_cleanup(grace_minutes)
        inactive_tokens = self.tokens.cleanup_inactive_tokens(days)
        inactive_sessions = self.sessions.cleanup_inactive_sessions(days)
        result["inactive_tokens"] = inactive_tokens
        result["inactive_sessions"] = inactive_sessions
        result["total"] += inactive_tokens + inactive_sessions
        return result

    def get_cleanup_stats(self) -> Dict[str, int]:
        """Rows the next comprehensive run would remove."""
        now = datetime.now(timezone.utc)
        return self.stats_source.pending_cleanup_counts(
            expired_before=now - timedelta(minutes=self.settings.cleanup_grace_minutes),
            inactive_before=now - timedelta(days=self.settings.inactive_cleanup_days),
            now=now,
        )

    def get_status(self) -> Dict[str, Any]:
        jobs: Dict[str, Any] = {}
        for job_id, state in self._jobs.items():
            info = asdict(state)
            next_run = None
            if self._scheduler is not None:
                job = self._scheduler.get_job(job_id)
                next_run = getattr(job, "next_run_time", None) if job else None
            info["next_run_at"] = next_run
            jobs[job_id] = info
        return {"scheduler_running": self.running, "jobs": jobs}
