"""In-memory repositories used by local development and tests."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
import threading
from uuid import uuid4

from lectern.domain.job_fsm import UNRESOLVED_STATES, ensure_transition
from lectern.repositories.base import (
    AccountExistsError,
    QuotaRecord,
    QuotaStore,
    ReservationRecord,
    ReserveOutcome,
)
from lectern.schemas.job import JobKind, JobState


@dataclass(slots=True)
class JobRecord:
    id: str
    account_id: str
    kind: JobKind
    state: JobState
    created_at: datetime
    updated_at: datetime | None = None
    language: str | None = None
    text: str | None = None
    input_ref: str | None = None
    artifacts: list[str] = field(default_factory=list)
    staging_dir: str | None = None
    reservation: ReservationRecord | None = None
    remote_job_id: str | None = None
    outcome: JobState | None = None
    result: str | None = None
    failure_code: str | None = None
    failure_message: str | None = None
    poll_count: int = 0
    last_polled_at: datetime | None = None


class InMemoryQuotaStore(QuotaStore):
    """Quota records guarded by one lock per account key.

    A lock is held only for the duration of a single store call, so different
    accounts never contend and no caller can interleave a read-decide-write.
    """

    def __init__(self) -> None:
        self._accounts: dict[str, QuotaRecord] = {}
        self._reservations: dict[str, ReservationRecord] = {}
        self._locks: dict[str, threading.Lock] = {}
        self._registry_lock = threading.Lock()
        self.write_count = 0

    def _lock_for(self, account_id: str) -> threading.Lock:
        with self._registry_lock:
            lock = self._locks.get(account_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[account_id] = lock
            return lock

    def _touch(self, record: QuotaRecord) -> None:
        record.version += 1
        record.updated_at = datetime.now(UTC)
        self.write_count += 1

    def open_account(self, account_id: str, *, remaining_units: int, unlimited: bool) -> QuotaRecord:
        with self._lock_for(account_id):
            if account_id in self._accounts:
                raise AccountExistsError(account_id)
            record = QuotaRecord(
                account_id=account_id,
                remaining_units=remaining_units,
                reserved_units=0,
                unlimited=unlimited,
                version=1,
                updated_at=datetime.now(UTC),
            )
            self._accounts[account_id] = record
            self.write_count += 1
            return replace(record)

    def ensure_account(self, account_id: str, *, remaining_units: int) -> QuotaRecord:
        with self._lock_for(account_id):
            record = self._accounts.get(account_id)
            if record is None:
                record = QuotaRecord(
                    account_id=account_id,
                    remaining_units=remaining_units,
                    reserved_units=0,
                    unlimited=False,
                    version=1,
                    updated_at=datetime.now(UTC),
                )
                self._accounts[account_id] = record
                self.write_count += 1
            return replace(record)

    def get_account(self, account_id: str) -> QuotaRecord | None:
        with self._lock_for(account_id):
            record = self._accounts.get(account_id)
            return replace(record) if record is not None else None

    def reserve(self, reservation: ReservationRecord) -> ReserveOutcome:
        with self._lock_for(reservation.account_id):
            outcome = self._check_admission(reservation.account_id)
            if outcome is not ReserveOutcome.RESERVED:
                return outcome
            record = self._accounts[reservation.account_id]
            record.reserved_units += 1
            self._touch(record)
            with self._registry_lock:
                self._reservations[reservation.reservation_id] = replace(reservation)
            return outcome

    def consume(self, account_id: str) -> ReserveOutcome:
        with self._lock_for(account_id):
            outcome = self._check_admission(account_id)
            if outcome is ReserveOutcome.RESERVED:
                record = self._accounts[account_id]
                record.remaining_units -= 1
                self._touch(record)
            return outcome

    def _check_admission(self, account_id: str) -> ReserveOutcome:
        record = self._accounts.get(account_id)
        if record is None:
            return ReserveOutcome.ACCOUNT_NOT_FOUND
        if record.unlimited:
            return ReserveOutcome.UNLIMITED
        if record.remaining_units - record.reserved_units <= 0:
            return ReserveOutcome.NO_REMAINING_UNITS
        return ReserveOutcome.RESERVED

    def commit_reservation(self, reservation_id: str) -> bool:
        return self._settle(reservation_id, spend=True)

    def release_reservation(self, reservation_id: str) -> bool:
        return self._settle(reservation_id, spend=False)

    def _settle(self, reservation_id: str, *, spend: bool) -> bool:
        with self._registry_lock:
            reservation = self._reservations.pop(reservation_id, None)
        if reservation is None:
            return False
        with self._lock_for(reservation.account_id):
            record = self._accounts.get(reservation.account_id)
            if record is None:
                return True
            record.reserved_units = max(0, record.reserved_units - 1)
            # An account upgraded mid-job is no longer charged for it.
            if spend and not record.unlimited and record.remaining_units > 0:
                record.remaining_units -= 1
            self._touch(record)
        return True

    def credit(self, account_id: str, units: int, *, limited_only: bool = False) -> QuotaRecord | None:
        with self._lock_for(account_id):
            record = self._accounts.get(account_id)
            if record is None:
                return None
            if limited_only and record.unlimited:
                return replace(record)
            record.remaining_units += units
            self._touch(record)
            return replace(record)

    def set_unlimited(self, account_id: str, unlimited: bool) -> QuotaRecord | None:
        with self._lock_for(account_id):
            record = self._accounts.get(account_id)
            if record is None:
                return None
            record.unlimited = unlimited
            self._touch(record)
            return replace(record)

    def list_reservations(self, *, created_before: datetime) -> list[ReservationRecord]:
        with self._registry_lock:
            pending = [replace(r) for r in self._reservations.values() if r.created_at < created_before]
        pending.sort(key=lambda r: r.created_at)
        return pending


@dataclass(slots=True)
class InMemoryJobStore:
    """Job records owned by the lifecycle manager of this process."""

    jobs: dict[str, JobRecord] = field(default_factory=dict)
    job_write_count: int = 0

    def create_job(
        self,
        *,
        account_id: str,
        kind: JobKind,
        job_id: str | None = None,
        language: str | None = None,
        text: str | None = None,
    ) -> JobRecord:
        now = datetime.now(UTC)
        job = JobRecord(
            id=job_id or str(uuid4()),
            account_id=account_id,
            kind=kind,
            state=JobState.CREATED,
            created_at=now,
            updated_at=now,
            language=language,
            text=text,
        )
        self.jobs[job.id] = job
        self.job_write_count += 1
        return job

    def get_job(self, job_id: str) -> JobRecord | None:
        return self.jobs.get(job_id)

    def get_job_for_account(self, account_id: str, job_id: str) -> JobRecord | None:
        job = self.jobs.get(job_id)
        if job is None or job.account_id != account_id:
            return None
        return job

    def list_jobs_for_account(self, account_id: str) -> list[JobRecord]:
        jobs = [record for record in self.jobs.values() if record.account_id == account_id]
        jobs.sort(key=lambda record: record.created_at, reverse=True)
        return jobs

    def list_unresolved(self) -> list[JobRecord]:
        return [record for record in self.jobs.values() if record.state in UNRESOLVED_STATES]

    def evict_cleaned_up(self, *, updated_before: datetime) -> list[str]:
        """Drop CLEANED_UP records last touched before the cutoff; returns their ids."""
        evicted = [
            job_id
            for job_id, record in self.jobs.items()
            if record.state is JobState.CLEANED_UP and (record.updated_at or record.created_at) < updated_before
        ]
        for job_id in evicted:
            del self.jobs[job_id]
        return evicted

    def transition_job_state(self, *, job: JobRecord, new_state: JobState) -> None:
        """Apply an FSM-validated state mutation with consistent write bookkeeping."""
        ensure_transition(job.state, new_state)
        job.state = new_state
        job.updated_at = datetime.now(UTC)
        self.job_write_count += 1
