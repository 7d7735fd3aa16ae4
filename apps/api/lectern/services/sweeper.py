"""Background sweep that bounds every job's lifetime."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
import logging
from pathlib import Path

from lectern.repositories.memory import InMemoryJobStore
from lectern.services.lifecycle import JobLifecycleManager
from lectern.services.quota_ledger import QuotaLedger
from lectern.services.reaper import ResourceReaper

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SweepReport:
    expired_jobs: int = 0
    evicted_jobs: int = 0
    released_reservations: int = 0
    removed_orphans: int = 0


class JobSweeper:
    """Expires jobs past ``max_wait + grace`` whether or not a caller is still waiting.

    Also forgets finished jobs after the retention window, and releases pending
    charges and staging directories left behind by a previous process.
    """

    def __init__(
        self,
        *,
        jobs: InMemoryJobStore,
        manager: JobLifecycleManager,
        ledger: QuotaLedger,
        reaper: ResourceReaper,
        upload_dir: Path,
        interval_seconds: float = 60.0,
        grace_seconds: float = 60.0,
        retention_seconds: float = 3600.0,
    ) -> None:
        self._jobs = jobs
        self._manager = manager
        self._ledger = ledger
        self._reaper = reaper
        self._upload_dir = upload_dir
        self._interval = interval_seconds
        self._grace = grace_seconds
        self._retention = timedelta(seconds=retention_seconds)

    @property
    def overdue_after(self) -> timedelta:
        return timedelta(seconds=self._manager.policy.max_wait + self._grace)

    def sweep_once(self, *, now: datetime | None = None) -> SweepReport:
        report = self._expire_and_evict(now or datetime.now(UTC))
        self._release_leftovers(report, self._protected_job_ids())
        self._log(report)
        return report

    async def sweep(self, *, now: datetime | None = None) -> SweepReport:
        """Same as ``sweep_once`` but the ledger and filesystem passes run in a worker thread."""
        report = self._expire_and_evict(now or datetime.now(UTC))
        await asyncio.to_thread(self._release_leftovers, report, self._protected_job_ids())
        self._log(report)
        return report

    def _expire_and_evict(self, current: datetime) -> SweepReport:
        report = SweepReport()
        cutoff = current - self.overdue_after
        for job in self._jobs.list_unresolved():
            if job.created_at <= cutoff and self._manager.expire(job):
                report.expired_jobs += 1

        evicted = self._jobs.evict_cleaned_up(updated_before=current - self._retention)
        if evicted:
            self._reaper.forget(evicted)
            report.evicted_jobs = len(evicted)
        return report

    def _protected_job_ids(self) -> set[str]:
        return self._manager.live_job_ids() | {job.id for job in self._jobs.list_unresolved()}

    def _release_leftovers(self, report: SweepReport, protected: set[str]) -> None:
        report.released_reservations = self._ledger.release_stale(
            older_than=self.overdue_after,
            live_job_ids=protected,
        )
        report.removed_orphans = self._reaper.sweep_orphans(
            self._upload_dir,
            older_than=self.overdue_after,
            live_job_ids=protected,
        )

    @staticmethod
    def _log(report: SweepReport) -> None:
        if report.expired_jobs or report.evicted_jobs or report.released_reservations or report.removed_orphans:
            logger.info(
                "sweep.completed expired_jobs=%s evicted_jobs=%s released_reservations=%s removed_orphans=%s",
                report.expired_jobs,
                report.evicted_jobs,
                report.released_reservations,
                report.removed_orphans,
            )

    async def run_forever(self) -> None:
        while True:
            try:
                await self.sweep()
            except Exception:
                logger.exception("sweep.failed")
            await asyncio.sleep(self._interval)


__all__ = ["JobSweeper", "SweepReport"]
