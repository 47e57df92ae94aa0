"""
Background scheduler for periodic and change-triggered syncs.

Uses APScheduler: every registered (group, user) pair gets an interval
job, and a "local store changed" signal schedules one debounced run per
registered group of that user.
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from groupcal.config import Settings, get_settings
from groupcal.features.sync.orchestrator import SyncOrchestrator
from groupcal.features.sync.remote import RemoteStore

logger = logging.getLogger(__name__)

OrchestratorFactory = Callable[[str], Awaitable[SyncOrchestrator]]
RemoteFactory = Callable[[], Awaitable[RemoteStore]]


def interval_job_id(group_id: str, user_id: str) -> str:
    return f"sync:{user_id}:{group_id}"


def change_job_id(group_id: str, user_id: str) -> str:
    return f"local-change:{user_id}:{group_id}"


class SyncScheduler:
    """Owns the AsyncIOScheduler and the set of registered (group, user) pairs."""

    def __init__(
        self,
        orchestrator_for: OrchestratorFactory,
        settings: Settings | None = None,
        scheduler: AsyncIOScheduler | None = None,
        remote_for: RemoteFactory | None = None,
    ):
        self.settings = settings or get_settings()
        self.scheduler = scheduler or AsyncIOScheduler(timezone=timezone.utc)
        self._orchestrator_for = orchestrator_for
        self._remote_for = remote_for
        self._groups_by_user: dict[str, set[str]] = {}

    # ── Lifecycle ────────────────────────────────────────

    def start(self, paused: bool = False) -> None:
        """Called during FastAPI lifespan startup."""
        if not self.scheduler.running:
            self.scheduler.start(paused=paused)
            logger.info(f"📅 Sync scheduler started ({len(self.scheduler.get_jobs())} jobs)")

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("📅 Sync scheduler shut down.")

    # ── Registration ─────────────────────────────────────

    def registered_groups(self, user_id: str) -> set[str]:
        return set(self._groups_by_user.get(user_id, set()))

    def register(self, group_id: str, user_id: str) -> None:
        """Sync (group, user) every SYNC_INTERVAL_MINUTES."""
        self._groups_by_user.setdefault(user_id, set()).add(group_id)
        self.scheduler.add_job(
            self.run_sync,
            trigger=IntervalTrigger(minutes=self.settings.SYNC_INTERVAL_MINUTES),
            args=[group_id, user_id],
            id=interval_job_id(group_id, user_id),
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        logger.debug(f"Registered periodic sync for user {user_id} in group {group_id}")

    def unregister(self, group_id: str, user_id: str) -> None:
        groups = self._groups_by_user.get(user_id)
        if groups is not None:
            groups.discard(group_id)
            if not groups:
                del self._groups_by_user[user_id]
        for job_id in (interval_job_id(group_id, user_id), change_job_id(group_id, user_id)):
            try:
                self.scheduler.remove_job(job_id)
            except JobLookupError:
                pass  # never scheduled

    # ── Change signal ────────────────────────────────────

    def notify_local_change(self, user_id: str) -> int:
        """Schedule a debounced sync for each of the user's registered groups.

        Repeated signals inside the debounce window replace the pending run.
        Returns the number of runs scheduled.
        """
        groups = self._groups_by_user.get(user_id, set())
        run_at = datetime.now(timezone.utc) + timedelta(seconds=self.settings.SYNC_DEBOUNCE_SECONDS)
        for group_id in groups:
            self.scheduler.add_job(
                self.run_sync,
                trigger=DateTrigger(run_date=run_at),
                args=[group_id, user_id],
                id=change_job_id(group_id, user_id),
                replace_existing=True,
            )
        if groups:
            logger.info(f"Local change for user {user_id}: sync scheduled for {len(groups)} group(s)")
        return len(groups)

    # ── Job body ─────────────────────────────────────────

    async def run_sync(self, group_id: str, user_id: str) -> None:
        """Callback for APScheduler jobs."""
        try:
            orchestrator = await self._orchestrator_for(user_id)
            remote = await self._remote_for() if self._remote_for is not None else None
            report = await orchestrator.sync(group_id, user_id, remote=remote)
        except Exception as e:
            logger.error(f"❌ Scheduled sync for user {user_id} failed: {e}", exc_info=True)
            return
        if report.skipped:
            logger.info(f"Scheduled sync for user {user_id} skipped: another run in flight")
        elif report.error:
            logger.warning(f"Scheduled sync for user {user_id} ended with {report.error_type}: {report.error}")
        else:
            logger.info(f"✅ Scheduled sync for user {user_id} in group {group_id} completed.")
