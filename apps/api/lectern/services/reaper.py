"""Guaranteed release of transient job inputs."""

from __future__ import annotations

from collections.abc import Collection
from datetime import UTC, datetime, timedelta
import logging
from pathlib import Path
import shutil
import threading

from lectern.core.logging_safety import safe_log_identifier, safe_log_path
from lectern.domain.errors import CleanupError
from lectern.domain.job_fsm import is_terminal
from lectern.repositories.memory import JobRecord

logger = logging.getLogger(__name__)


class ResourceReaper:
    """Deletes a job's input artifact and its byproducts exactly once.

    Cleanup is refused while the job is unresolved, since the input may still be
    read by a submission. Deletion failures are logged, never raised.
    """

    def __init__(self) -> None:
        self._reaped: set[str] = set()
        self._lock = threading.Lock()
        self.cleanup_errors = 0

    def has_reaped(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._reaped

    def forget(self, job_ids: Collection[str]) -> None:
        """Drop bookkeeping for jobs that no longer exist."""
        with self._lock:
            self._reaped.difference_update(job_ids)

    def cleanup(self, job: JobRecord) -> bool:
        if not is_terminal(job.state):
            logger.warning("reaper.refused job_id=%s state=%s", job.id, job.state)
            return False
        with self._lock:
            if job.id in self._reaped:
                return False
            self._reaped.add(job.id)

        paths = [job.input_ref, *job.artifacts]
        deleted = 0
        for raw_path in dict.fromkeys(p for p in paths if p):
            try:
                if self._delete(Path(raw_path)):
                    deleted += 1
            except CleanupError as exc:
                self.cleanup_errors += 1
                logger.warning(
                    "reaper.delete_failed job_id=%s file=%s reason=%s",
                    job.id,
                    safe_log_path(raw_path),
                    exc,
                )

        if job.staging_dir:
            self._remove_if_empty(Path(job.staging_dir))

        logger.info("reaper.cleaned job_id=%s deleted=%s", job.id, deleted)
        return True

    @staticmethod
    def _delete(path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise CleanupError(f"{type(exc).__name__}: {exc.strerror or exc}") from exc
        return True

    def _remove_if_empty(self, directory: Path) -> None:
        try:
            directory.rmdir()
        except FileNotFoundError:
            return
        except OSError as exc:
            # Non-empty directories hold files this job does not own.
            logger.info(
                "reaper.staging_kept dir=%s reason=%s",
                safe_log_identifier(directory.name, prefix="dir"),
                type(exc).__name__,
            )

    def sweep_orphans(
        self,
        root: Path,
        *,
        older_than: timedelta,
        live_job_ids: Collection[str] = (),
    ) -> int:
        """Remove staging directories left behind by a crashed process."""
        if not root.is_dir():
            return 0
        cutoff = (datetime.now(UTC) - older_than).timestamp()
        removed = 0
        for entry in root.iterdir():
            if not entry.is_dir() or entry.name in live_job_ids:
                continue
            try:
                if entry.stat().st_mtime >= cutoff:
                    continue
                shutil.rmtree(entry)
            except FileNotFoundError:
                continue
            except OSError as exc:
                self.cleanup_errors += 1
                logger.warning(
                    "reaper.orphan_failed dir=%s reason=%s",
                    safe_log_identifier(entry.name, prefix="dir"),
                    type(exc).__name__,
                )
                continue
            removed += 1
            with self._lock:
                self._reaped.add(entry.name)
        if removed:
            logger.info("reaper.orphans_removed count=%s", removed)
        return removed


__all__ = ["ResourceReaper"]
