"""
Session-statistics scheduler.

Periodic housekeeping over sessions, performance statistics and auth
sessions. Four independent jobs run in order on every pass; each uses its own
database session, and a failing job is logged, captured to error tracking and
reported in the run summary without stopping the others.

Jobs never touch attempt answers.

The scheduler is an explicit object owned by the application lifespan (see
``psikotes.main``). Tests construct one with their own session factory and
clock and call ``run_once`` directly.
"""
import asyncio
import logging
from collections import defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import numpy as np
from scipy.stats import rankdata
from sqlalchemy import delete, insert, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from psikotes.core.config import settings
from psikotes.core.datetime_utils import Clock, ensure_timezone_aware, utc_now
from psikotes.core.error_tracking import capture_error
from psikotes.core.graceful_failure import graceful_failure
from psikotes.models import (
    AsyncSessionLocal,
    AttemptStatus,
    AuthSession,
    SessionStatus,
    TestAttempt,
    TestResult,
    TestSession,
    UserPerformanceStats,
)

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]


@dataclass
class SchedulerRunSummary:
    """Outcome of one scheduler pass."""

    started_at: datetime
    finished_at: Optional[datetime] = None
    sessions_expired: int = 0
    sessions_activated: int = 0
    stats_rows_updated: int = 0
    auth_sessions_cleaned: int = 0
    errors: Dict[str, str] = field(default_factory=dict)
    skipped: bool = False
    skip_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def build_performance_rows(
    attempts: List[Dict[str, Any]], now: datetime
) -> List[Dict[str, Any]]:
    """
    Aggregate attempt/result rows into one statistics row per user.

    Args:
        attempts: Dicts with user_id, status, time_spent, start_time,
            raw_score and scaled_score (scores are None without a result)
        now: Calculation timestamp

    Returns:
        Column dicts for UserPerformanceStats, ranked by average raw score
    """
    by_user: Dict[int, List[Dict[str, Any]]] = defaultdict(list)
    for row in attempts:
        by_user[row["user_id"]].append(row)

    stats: List[Dict[str, Any]] = []
    for user_id in sorted(by_user):
        rows = by_user[user_id]
        completed = [r for r in rows if r["status"] == AttemptStatus.COMPLETED]
        raw = np.array(
            [r["raw_score"] for r in rows if r["raw_score"] is not None], dtype=float
        )
        scaled = np.array(
            [r["scaled_score"] for r in rows if r["scaled_score"] is not None],
            dtype=float,
        )
        total_time = int(sum(r["time_spent"] or 0 for r in rows))

        entry: Dict[str, Any] = {
            "user_id": user_id,
            "total_tests_taken": len(rows),
            "total_tests_completed": len(completed),
            "average_raw_score": float(raw.mean()) if raw.size else None,
            "highest_raw_score": float(raw.max()) if raw.size else None,
            "lowest_raw_score": float(raw.min()) if raw.size else None,
            "average_scaled_score": float(scaled.mean()) if scaled.size else None,
            "highest_scaled_score": float(scaled.max()) if scaled.size else None,
            "lowest_scaled_score": float(scaled.min()) if scaled.size else None,
            "total_time_spent": total_time,
            "average_time_per_test": (
                total_time / len(completed) if completed else None
            ),
            "completion_rate": len(completed) / len(rows) * 100,
            "consistency_score": (
                _clamp(100.0 - float(scaled.max() - scaled.min()))
                if scaled.size
                else None
            ),
            "performance_rank": None,
            "performance_percentile": None,
            "last_test_date": max(
                ensure_timezone_aware(r["start_time"]) for r in rows
            ),
            "calculation_date": now,
        }
        stats.append(entry)

    ranked = [s for s in stats if s["average_raw_score"] is not None]
    if ranked:
        # Competition ranking: ties share the best rank ("1224")
        averages = np.array([s["average_raw_score"] for s in ranked])
        ranks = rankdata(-averages, method="min")
        total = len(ranked)
        for entry, rank in zip(ranked, ranks):
            entry["performance_rank"] = int(rank)
            entry["performance_percentile"] = (total - int(rank)) / total * 100

    return stats


class SessionStatisticsScheduler:
    """Runs the housekeeping jobs once on demand or periodically."""

    def __init__(
        self,
        session_factory: SessionFactory = AsyncSessionLocal,
        clock: Clock = utc_now,
        interval_seconds: Optional[int] = None,
        min_interval_seconds: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.clock = clock
        self.interval_seconds = (
            interval_seconds
            if interval_seconds is not None
            else settings.SCHEDULER_INTERVAL_SECONDS
        )
        self.min_interval_seconds = (
            min_interval_seconds
            if min_interval_seconds is not None
            else settings.SCHEDULER_MIN_INTERVAL_SECONDS
        )
        self._lock = asyncio.Lock()
        self._task: Optional[asyncio.Task] = None
        self._last_run_started: Optional[datetime] = None
        self._last_summary: Optional[SchedulerRunSummary] = None
        self._run_count = 0

    # =========================================================================
    # Jobs
    # =========================================================================

    async def expire_sessions(self, db: AsyncSession, now: datetime) -> int:
        """Expire active, auto-expiring sessions whose window has closed."""
        result = await db.execute(
            update(TestSession)
            .where(
                TestSession.status == SessionStatus.ACTIVE,
                TestSession.auto_expire.is_(True),
                TestSession.end_time < now,
            )
            .values(status=SessionStatus.EXPIRED, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount or 0

    async def activate_sessions(self, db: AsyncSession, now: datetime) -> int:
        """Activate draft sessions whose window has opened."""
        result = await db.execute(
            update(TestSession)
            .where(
                TestSession.status == SessionStatus.DRAFT,
                TestSession.start_time < now,
                TestSession.end_time > now,
            )
            .values(status=SessionStatus.ACTIVE, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount or 0

    async def recompute_performance_stats(self, db: AsyncSession, now: datetime) -> int:
        """
        Rebuild the user performance snapshot from all attempts and results.

        The table is replaced in one transaction: delete everything, then
        insert the new rows in batches of ``STATS_BATCH_SIZE``.
        """
        result = await db.execute(
            select(
                TestAttempt.user_id,
                TestAttempt.status,
                TestAttempt.time_spent,
                TestAttempt.start_time,
                TestResult.raw_score,
                TestResult.scaled_score,
            ).outerjoin(TestResult, TestResult.attempt_id == TestAttempt.id)
        )
        attempts = [dict(row._mapping) for row in result.all()]
        rows = build_performance_rows(attempts, now)

        await db.execute(delete(UserPerformanceStats))
        batch_size = settings.STATS_BATCH_SIZE
        for start in range(0, len(rows), batch_size):
            await db.execute(
                insert(UserPerformanceStats), rows[start : start + batch_size]
            )
        await db.commit()
        return len(rows)

    async def cleanup_auth_sessions(self, db: AsyncSession, now: datetime) -> int:
        """Delete auth sessions that are expired or unused for too long."""
        inactive_cutoff = now - timedelta(days=settings.AUTH_SESSION_INACTIVE_DAYS)
        result = await db.execute(
            delete(AuthSession)
            .where(
                or_(
                    AuthSession.expires_at < now,
                    AuthSession.last_used < inactive_cutoff,
                )
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount or 0

    # =========================================================================
    # Runs
    # =========================================================================

    async def _run_job(
        self,
        name: str,
        job: Callable[[AsyncSession, datetime], Any],
        now: datetime,
        summary: SchedulerRunSummary,
    ) -> int:
        count = 0

        def _record(error: Exception) -> None:
            summary.errors[name] = str(error)
            capture_error(
                error,
                context={"job": name, "started_at": summary.started_at},
                tags={"component": "session_scheduler", "job": name},
            )

        with graceful_failure(
            name.replace("_", " "),
            logger,
            log_level=logging.ERROR,
            exc_info=True,
            on_error=_record,
        ):
            async with self.session_factory() as db:
                count = await job(db, now)
        return count

    async def run_once(self, force: bool = False) -> SchedulerRunSummary:
        """
        Run all four jobs once.

        Args:
            force: Ignore the minimum interval between runs

        Returns:
            Summary of the run; ``skipped`` is set when the run was refused
            because another run is in progress or the last one was too recent
        """
        now = self.clock()
        summary = SchedulerRunSummary(started_at=now)

        if self._lock.locked():
            summary.skipped = True
            summary.skip_reason = "A scheduler run is already in progress"
            summary.finished_at = now
            logger.info("Scheduler run skipped: already running")
            return summary

        if not force and self._last_run_started is not None:
            elapsed = (now - self._last_run_started).total_seconds()
            if elapsed < self.min_interval_seconds:
                summary.skipped = True
                summary.skip_reason = (
                    f"Last run started {int(elapsed)}s ago "
                    f"(minimum interval {self.min_interval_seconds}s)"
                )
                summary.finished_at = now
                logger.info(f"Scheduler run skipped: {summary.skip_reason}")
                return summary

        async with self._lock:
            self._last_run_started = now
            self._run_count += 1

            summary.sessions_expired = await self._run_job(
                "expire_sessions", self.expire_sessions, now, summary
            )
            summary.sessions_activated = await self._run_job(
                "activate_sessions", self.activate_sessions, now, summary
            )
            summary.stats_rows_updated = await self._run_job(
                "recompute_performance_stats",
                self.recompute_performance_stats,
                now,
                summary,
            )
            summary.auth_sessions_cleaned = await self._run_job(
                "cleanup_auth_sessions", self.cleanup_auth_sessions, now, summary
            )

            summary.finished_at = self.clock()
            self._last_summary = summary

        logger.info(
            f"Scheduler run finished: expired={summary.sessions_expired}, "
            f"activated={summary.sessions_activated}, "
            f"stats={summary.stats_rows_updated}, "
            f"auth_cleaned={summary.auth_sessions_cleaned}, "
            f"errors={len(summary.errors)}"
        )
        return summary

    # =========================================================================
    # Periodic loop
    # =========================================================================

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _loop(self) -> None:
        while True:
            try:
                # The loop sets its own pace; the minimum interval throttles
                # manual triggers, and the lock still prevents overlap
                await self.run_once(force=True)
            except Exception as e:
                # run_once isolates jobs; this only catches failures around them
                logger.error(f"Scheduler loop iteration failed: {e}", exc_info=True)
                capture_error(e, tags={"component": "session_scheduler"})
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        """Start the periodic loop on the running event loop."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._loop(), name="session-scheduler")
        logger.info(f"Session scheduler started (every {self.interval_seconds}s)")

    async def stop(self) -> None:
        """Cancel the periodic loop and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Session scheduler stopped")

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "run_in_progress": self._lock.locked(),
            "interval_seconds": self.interval_seconds,
            "min_interval_seconds": self.min_interval_seconds,
            "run_count": self._run_count,
            "last_run_started_at": self._last_run_started,
            "last_run": (
                self._last_summary.to_dict() if self._last_summary else None
            ),
        }
