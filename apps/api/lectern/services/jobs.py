"""Job service layer."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
import re
import shutil
import time
from typing import BinaryIO

from lectern.core.config import Settings
from lectern.core.logging_safety import safe_log_identifier, safe_log_path
from lectern.domain.errors import AdmissionDenied, JobError, SubmissionError
from lectern.domain.job_fsm import UNRESOLVED_STATES
from lectern.errors import ApiError, not_found
from lectern.repositories.memory import InMemoryJobStore, JobRecord
from lectern.schemas.job import Job, JobEnvelope, JobKind, JobState
from lectern.schemas.quota import QuotaBalance
from lectern.services.lifecycle import JobLifecycleManager
from lectern.services.media import AudioExtractionError, AudioExtractor
from lectern.services.quota_ledger import QuotaLedger

logger = logging.getLogger(__name__)

_FAILURE_STATUS: dict[str, int] = {
    "job_submission_failed": 502,
    "job_remote_failure": 502,
    "job_timed_out": 504,
    "job_cancelled": 409,
    "internal_error": 500,
}
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def admission_error(exc: AdmissionDenied) -> ApiError:
    return ApiError(status_code=exc.status_code, code=exc.code, message=str(exc))


class JobService:
    def __init__(
        self,
        *,
        jobs: InMemoryJobStore,
        ledger: QuotaLedger,
        manager: JobLifecycleManager,
        extractor: AudioExtractor,
        settings: Settings,
    ) -> None:
        self._jobs = jobs
        self._ledger = ledger
        self._manager = manager
        self._extractor = extractor
        self._settings = settings

    async def get_quota(self, *, account_id: str) -> QuotaBalance:
        balance = await asyncio.to_thread(self._read_quota, account_id)
        if balance is None:
            raise admission_error(AdmissionDenied("account_not_found"))
        return balance

    def _read_quota(self, account_id: str) -> QuotaBalance | None:
        self._provision(account_id)
        return self._ledger.get_balance(account_id)

    async def submit_transcription(
        self,
        *,
        account_id: str,
        filename: str | None,
        stream: BinaryIO,
        language: str | None,
        wait: bool,
        extract_audio: bool = False,
    ) -> JobEnvelope:
        job = await self._admit(account_id=account_id, kind=JobKind.TRANSCRIPTION, language=language)
        try:
            await self._stage_media(job, filename=filename, stream=stream, extract_audio=extract_audio)
        except (OSError, AudioExtractionError) as exc:
            logger.warning("job.staging_failed job_id=%s reason=%s", job.id, type(exc).__name__)
            self._manager.abort(job, SubmissionError("Could not prepare the uploaded media", job_id=job.id))
            raise self._failure_error(job) from exc
        except asyncio.CancelledError:
            self._cancel_unresolved(job)
            raise
        return await self._launch(job, wait=wait)

    async def submit_summary(
        self,
        *,
        account_id: str,
        text: str,
        language: str,
        wait: bool,
    ) -> JobEnvelope:
        job = await self._admit(account_id=account_id, kind=JobKind.SUMMARIZATION, language=language, text=text)
        return await self._launch(job, wait=wait)

    def get_job(self, *, account_id: str, job_id: str) -> Job:
        record = self._jobs.get_job_for_account(account_id=account_id, job_id=job_id)
        if record is None:
            raise not_found()
        return self._to_job(record)

    def list_jobs(self, *, account_id: str) -> list[Job]:
        return [self._to_job(record) for record in self._jobs.list_jobs_for_account(account_id)]

    async def cancel_job(self, *, account_id: str, job_id: str) -> JobEnvelope:
        record = self._jobs.get_job_for_account(account_id=account_id, job_id=job_id)
        if record is None:
            raise not_found()
        self._manager.cancel(record)
        return await self._envelope(record)

    def _provision(self, account_id: str) -> None:
        if self._settings.auto_provision_accounts:
            self._ledger.ensure_account(account_id, free_units=self._settings.free_tier_units)

    async def _admit(
        self,
        *,
        account_id: str,
        kind: JobKind,
        language: str | None,
        text: str | None = None,
    ) -> JobRecord:
        await asyncio.to_thread(self._provision, account_id)
        try:
            return await self._manager.admit_async(account_id=account_id, kind=kind, language=language, text=text)
        except AdmissionDenied as exc:
            raise admission_error(exc) from exc

    async def _stage_media(
        self,
        job: JobRecord,
        *,
        filename: str | None,
        stream: BinaryIO,
        extract_audio: bool,
    ) -> None:
        staging_dir = self._settings.upload_dir / job.id
        staged = staging_dir / f"{int(time.time() * 1000)}-{self._clean_filename(filename)}"
        job.staging_dir = str(staging_dir)
        # Register paths before writing so partial files are reaped too.
        if extract_audio:
            target = self._extractor.target_for(staged)
            job.artifacts.append(str(staged))
            job.input_ref = str(target)
        else:
            target = staged
            job.input_ref = str(staged)

        await asyncio.to_thread(self._write_stream, staged, stream)
        logger.info("job.staged job_id=%s file=%s", job.id, safe_log_path(staged))
        if extract_audio:
            await self._extractor.extract(staged, target)

    @staticmethod
    def _write_stream(path: Path, stream: BinaryIO) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("wb") as handle:
            shutil.copyfileobj(stream, handle)

    @staticmethod
    def _clean_filename(filename: str | None) -> str:
        name = _UNSAFE_FILENAME_CHARS.sub("_", Path(filename or "").name).strip("._")
        return name or "upload"

    async def _launch(self, job: JobRecord, *, wait: bool) -> JobEnvelope:
        task = self._manager.start(job)
        if not wait:
            return await self._envelope(job)
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            # Caller went away: stop polling; the job still resolves and cleans up.
            logger.info("job.caller_cancelled job_id=%s", job.id)
            self._cancel_unresolved(job)
            raise
        if job.outcome is not JobState.COMPLETED:
            raise self._failure_error(job)
        return await self._envelope(job)

    def _cancel_unresolved(self, job: JobRecord) -> None:
        if job.state in UNRESOLVED_STATES:
            self._manager.cancel(job)

    def _failure_error(self, job: JobRecord) -> ApiError:
        code = job.failure_code or JobError.code
        logger.info(
            "job.failed_response job_id=%s account_id=%s code=%s",
            job.id,
            safe_log_identifier(job.account_id, prefix="acc"),
            code,
        )
        return ApiError(
            status_code=_FAILURE_STATUS.get(code, 500),
            code=code,
            message=job.failure_message or "Job did not complete",
            details={"job_id": job.id, "outcome": job.outcome},
        )

    async def _envelope(self, record: JobRecord) -> JobEnvelope:
        balance = await asyncio.to_thread(self._ledger.get_balance, record.account_id) or QuotaBalance(
            remaining_units=0,
            available_units=0,
            unlimited=False,
        )
        return JobEnvelope(job=self._to_job(record), quota=balance)

    @staticmethod
    def _to_job(record: JobRecord) -> Job:
        return Job(
            id=record.id,
            kind=record.kind,
            state=record.state,
            outcome=record.outcome,
            language=record.language,
            result=record.result,
            failure_code=record.failure_code,
            failure_message=record.failure_message,
            poll_count=record.poll_count,
            created_at=record.created_at,
            updated_at=record.updated_at,
            last_polled_at=record.last_polled_at,
        )
