"""Drives one metered job through submit, poll, resolve and cleanup.

Every path into a terminal state goes through ``JobLifecycleManager._resolve``,
which settles the quota reservation, runs the reaper and records ``CLEANED_UP``
in the same synchronous step. Nothing can return early between the outcome
and the cleanup.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
import logging
from pathlib import Path
import time
from uuid import uuid4

from lectern.adapters.jobs.base import ExternalJobClient, JobPayload
from lectern.core.config import Settings
from lectern.core.logging_safety import safe_log_identifier
from lectern.domain.errors import (
    AdmissionDenied,
    JobCancelled,
    JobError,
    PollError,
    RemoteFailure,
    SubmissionError,
    TimeoutExceeded,
    TransientPollError,
)
from lectern.domain.job_fsm import UNRESOLVED_STATES, ensure_transition
from lectern.repositories.memory import InMemoryJobStore, JobRecord
from lectern.schemas.job import JobKind, JobState, RemoteStatus
from lectern.services.quota_ledger import Denied, Granted, QuotaLedger
from lectern.services.reaper import ResourceReaper

logger = logging.getLogger(__name__)

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class PollPolicy:
    interval: float = 5.0
    max_wait: float = 1800.0
    max_poll_errors: int = 5
    backoff_base: float = 2.0
    backoff_max: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> PollPolicy:
        return cls(
            interval=settings.poll_interval_seconds,
            max_wait=settings.max_wait_seconds,
            max_poll_errors=settings.max_poll_errors,
            backoff_base=settings.poll_error_backoff_seconds,
            backoff_max=settings.poll_error_backoff_max_seconds,
        )

    def backoff(self, consecutive_errors: int) -> float:
        return min(self.backoff_max, self.backoff_base * 2 ** max(0, consecutive_errors - 1))


class JobLifecycleManager:
    def __init__(
        self,
        *,
        jobs: InMemoryJobStore,
        ledger: QuotaLedger,
        clients: Mapping[JobKind, ExternalJobClient],
        reaper: ResourceReaper,
        policy: PollPolicy | None = None,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._jobs = jobs
        self._ledger = ledger
        self._clients = dict(clients)
        self._reaper = reaper
        self.policy = policy or PollPolicy()
        self._clock = clock
        self._sleep = sleep
        self._tasks: dict[str, asyncio.Task[JobRecord]] = {}
        self._cancel_signals: dict[str, asyncio.Event] = {}
        self._forced_expiry: set[str] = set()

    def admit(
        self,
        *,
        account_id: str,
        kind: JobKind,
        language: str | None = None,
        text: str | None = None,
    ) -> JobRecord:
        """Reserve a unit and create the job, or raise ``AdmissionDenied``."""
        job_id = str(uuid4())
        admission = self._ledger.try_consume(account_id, job_id=job_id)
        return self._enroll(job_id, admission, account_id=account_id, kind=kind, language=language, text=text)

    async def admit_async(
        self,
        *,
        account_id: str,
        kind: JobKind,
        language: str | None = None,
        text: str | None = None,
    ) -> JobRecord:
        """``admit`` with the ledger round trip run in a worker thread."""
        job_id = str(uuid4())
        admission = await asyncio.to_thread(self._ledger.try_consume, account_id, job_id=job_id)
        return self._enroll(job_id, admission, account_id=account_id, kind=kind, language=language, text=text)

    def _enroll(
        self,
        job_id: str,
        admission: Granted | Denied,
        *,
        account_id: str,
        kind: JobKind,
        language: str | None,
        text: str | None,
    ) -> JobRecord:
        if isinstance(admission, Denied):
            raise AdmissionDenied(admission.reason)

        job = self._jobs.create_job(
            job_id=job_id,
            account_id=account_id,
            kind=kind,
            language=language,
            text=text,
        )
        job.reservation = admission.reservation
        logger.info(
            "job.admitted job_id=%s account_id=%s kind=%s",
            job.id,
            safe_log_identifier(account_id, prefix="acc"),
            kind.value,
        )
        return job

    def start(self, job: JobRecord) -> asyncio.Task[JobRecord]:
        existing = self._tasks.get(job.id)
        if existing is not None:
            return existing
        if job.state is not JobState.CREATED:
            raise ValueError(f"Job {job.id} cannot start from {job.state.value}")

        self._cancel_signals.setdefault(job.id, asyncio.Event())
        task = asyncio.get_running_loop().create_task(self.run(job), name=f"job-{job.id}")
        self._tasks[job.id] = task
        task.add_done_callback(lambda _task, job_id=job.id: self._tasks.pop(job_id, None))
        return task

    def is_live(self, job_id: str) -> bool:
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    def live_job_ids(self) -> set[str]:
        return {job_id for job_id, task in self._tasks.items() if not task.done()}

    async def run(self, job: JobRecord) -> JobRecord:
        if job.state is not JobState.CREATED:
            return job
        signal = self._cancel_signals.setdefault(job.id, asyncio.Event())
        try:
            await self._drive(job, signal)
        except asyncio.CancelledError:
            if job.id not in self._forced_expiry:
                self._resolve(job, JobState.CANCELLED, failure=JobCancelled("Job was cancelled"))
                raise
            # Forced expiry completes the task with the job TIMED_OUT.
            self._resolve(job, JobState.TIMED_OUT, failure=TimeoutExceeded("Job exceeded its maximum wait"))
            current = asyncio.current_task()
            if current is not None:
                current.uncancel()
        except Exception:
            logger.exception("job.crashed job_id=%s state=%s", job.id, job.state)
            self._resolve(job, JobState.FAILED, failure=JobError("Unexpected error while processing the job"))
        finally:
            if job.state in UNRESOLVED_STATES:
                self._resolve(job, JobState.FAILED, failure=JobError("Job processing was interrupted"))
            self._cancel_signals.pop(job.id, None)
            self._forced_expiry.discard(job.id)
        return job

    async def _drive(self, job: JobRecord, signal: asyncio.Event) -> None:
        client = self._clients[job.kind]
        deadline = self._clock() + self.policy.max_wait
        if signal.is_set():
            self._resolve(job, JobState.CANCELLED, failure=JobCancelled("Job was cancelled"))
            return

        payload = JobPayload(
            job_id=job.id,
            kind=job.kind,
            input_path=Path(job.input_ref) if job.input_ref else None,
            text=job.text,
            language=job.language,
        )
        try:
            remote_job_id = await client.submit(payload)
        except SubmissionError as exc:
            logger.warning("job.submit_failed job_id=%s reason=%s", job.id, exc)
            self._resolve(job, JobState.FAILED, failure=exc)
            return

        job.remote_job_id = remote_job_id
        self._jobs.transition_job_state(job=job, new_state=JobState.SUBMITTED)
        logger.info("job.submitted job_id=%s remote_job_id=%s", job.id, remote_job_id)
        await self._poll_until_resolved(job, client, remote_job_id, signal, deadline)

    async def _poll_until_resolved(
        self,
        job: JobRecord,
        client: ExternalJobClient,
        remote_job_id: str,
        signal: asyncio.Event,
        deadline: float,
    ) -> None:
        consecutive_errors = 0
        delay = self.policy.interval
        while True:
            remaining = max(0.0, deadline - self._clock())
            if await self._pause(signal, min(delay, remaining)):
                self._resolve(job, JobState.CANCELLED, failure=JobCancelled("Job was cancelled"))
                await self._cancel_remote(client, job)
                return

            if job.state is JobState.SUBMITTED:
                self._jobs.transition_job_state(job=job, new_state=JobState.POLLING)

            try:
                polled = await client.poll(remote_job_id)
            except TransientPollError as exc:
                consecutive_errors += 1
                logger.warning(
                    "job.poll_transient_error job_id=%s attempt=%s limit=%s reason=%s",
                    job.id,
                    consecutive_errors,
                    self.policy.max_poll_errors,
                    exc,
                )
                if consecutive_errors > self.policy.max_poll_errors:
                    self._resolve(
                        job,
                        JobState.FAILED,
                        failure=RemoteFailure(
                            f"Status polling failed {consecutive_errors} times in a row",
                        ),
                    )
                    await self._cancel_remote(client, job)
                    return
                if self._clock() >= deadline:
                    self._time_out(job)
                    await self._cancel_remote(client, job)
                    return
                delay = self.policy.backoff(consecutive_errors)
                continue
            except PollError as exc:
                logger.warning("job.poll_failed job_id=%s reason=%s", job.id, exc)
                self._resolve(job, JobState.FAILED, failure=RemoteFailure(str(exc)))
                return

            consecutive_errors = 0
            job.poll_count += 1
            job.last_polled_at = datetime.now(UTC)

            if polled.status is RemoteStatus.COMPLETED:
                self._resolve(job, JobState.COMPLETED, result=polled.result or "")
                return
            if polled.status is RemoteStatus.FAILED:
                self._resolve(
                    job,
                    JobState.FAILED,
                    failure=RemoteFailure(polled.error_detail or "Remote job failed"),
                )
                return
            if self._clock() >= deadline:
                self._time_out(job)
                await self._cancel_remote(client, job)
                return
            delay = self.policy.interval

    async def _pause(self, signal: asyncio.Event, seconds: float) -> bool:
        """Sleep for ``seconds`` unless cancelled first; True means cancelled."""
        if signal.is_set():
            return True
        sleeper = asyncio.ensure_future(self._sleep(seconds))
        waiter = asyncio.ensure_future(signal.wait())
        try:
            await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for pending in (sleeper, waiter):
                if not pending.done():
                    pending.cancel()
        return signal.is_set()

    async def _cancel_remote(self, client: ExternalJobClient, job: JobRecord) -> None:
        if job.remote_job_id is None:
            return
        try:
            await client.cancel(job.remote_job_id)
        except Exception as exc:
            logger.info("job.remote_cancel_ignored job_id=%s reason=%s", job.id, type(exc).__name__)

    def _time_out(self, job: JobRecord) -> None:
        self._resolve(
            job,
            JobState.TIMED_OUT,
            failure=TimeoutExceeded(f"No result within {self.policy.max_wait:g} seconds"),
        )

    def _resolve(
        self,
        job: JobRecord,
        state: JobState,
        *,
        result: str | None = None,
        failure: JobError | None = None,
    ) -> bool:
        if job.state not in UNRESOLVED_STATES:
            return False

        self._jobs.transition_job_state(job=job, new_state=state)
        job.outcome = state
        if state is JobState.COMPLETED:
            job.result = result
        elif failure is not None:
            job.failure_code = failure.code
            job.failure_message = str(failure)

        try:
            self._settle_quota(job)
        except Exception:
            logger.exception("quota.settle_failed job_id=%s outcome=%s", job.id, state.value)
        finally:
            self._reaper.cleanup(job)
            self._jobs.transition_job_state(job=job, new_state=JobState.CLEANED_UP)

        logger.info(
            "job.resolved job_id=%s outcome=%s failure_code=%s polls=%s",
            job.id,
            state.value,
            job.failure_code,
            job.poll_count,
        )
        return True

    def _settle_quota(self, job: JobRecord) -> None:
        if job.reservation is None:
            return
        if job.outcome is JobState.COMPLETED:
            self._ledger.commit(job.reservation)
        else:
            self._ledger.release(job.reservation)

    def cancel(self, job: JobRecord) -> bool:
        """Signal cancellation; jobs with no running task resolve immediately."""
        if job.state not in UNRESOLVED_STATES:
            ensure_transition(job.state, JobState.CANCELLED)
        signal = self._cancel_signals.get(job.id)
        if self.is_live(job.id) and signal is not None:
            signal.set()
            logger.info("job.cancel_requested job_id=%s", job.id)
            return True
        return self._resolve(job, JobState.CANCELLED, failure=JobCancelled("Job was cancelled"))

    def abort(self, job: JobRecord, failure: JobError) -> bool:
        """Fail a job before it reaches the remote system."""
        return self._resolve(job, JobState.FAILED, failure=failure)

    def expire(self, job: JobRecord) -> bool:
        """Force an overdue job to TIMED_OUT, interrupting its task if one exists."""
        task = self._tasks.get(job.id)
        if task is not None and not task.done():
            self._forced_expiry.add(job.id)
            task.cancel()
            logger.warning("job.expiry_forced job_id=%s state=%s", job.id, job.state)
            return True
        return self._resolve(
            job,
            JobState.TIMED_OUT,
            failure=TimeoutExceeded("Job was orphaned past its maximum wait"),
        )

    async def shutdown(self, *, grace_seconds: float = 5.0) -> None:
        tasks = [task for task in self._tasks.values() if not task.done()]
        if not tasks:
            return
        for signal in self._cancel_signals.values():
            signal.set()
        _, pending = await asyncio.wait(tasks, timeout=grace_seconds)
        for task in pending:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def aclose_clients(self) -> None:
        for client in set(self._clients.values()):
            await client.aclose()


__all__ = ["JobLifecycleManager", "PollPolicy"]
