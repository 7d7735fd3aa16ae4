"""Deterministic job client for local development and tests."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import uuid4

from lectern.adapters.jobs.base import ExternalJobClient, JobPayload, PollResult
from lectern.domain.errors import PollError, SubmissionError
from lectern.schemas.job import JobKind, RemoteStatus


@dataclass(slots=True)
class _MockJob:
    result: str
    polls_remaining: int


class MockJobClient(ExternalJobClient):
    """Reports ``processing`` a fixed number of times, then ``completed``.

    Transcriptions resolve to a line naming the input file; summaries to the
    first sentence of the input text.
    """

    def __init__(self, *, polls_until_complete: int = 2) -> None:
        self._polls_until_complete = max(1, polls_until_complete)
        self._jobs: dict[str, _MockJob] = {}
        self.submitted: list[JobPayload] = []

    async def submit(self, payload: JobPayload) -> str:
        if payload.kind is JobKind.TRANSCRIPTION:
            if payload.input_path is None or not payload.input_path.is_file():
                raise SubmissionError("Audio input is missing", job_id=payload.job_id)
            result = f"[mock transcript] {payload.input_path.name}"
        else:
            text = (payload.text or "").strip()
            if not text:
                raise SubmissionError("Text is required", job_id=payload.job_id)
            result = f"[mock summary:{payload.language or 'en'}] {text.split('.')[0].strip()}"

        remote_job_id = f"mock-{uuid4()}"
        self._jobs[remote_job_id] = _MockJob(result=result, polls_remaining=self._polls_until_complete)
        self.submitted.append(payload)
        return remote_job_id

    async def poll(self, remote_job_id: str) -> PollResult:
        job = self._jobs.get(remote_job_id)
        if job is None:
            raise PollError(f"Unknown mock job {remote_job_id}")
        job.polls_remaining -= 1
        if job.polls_remaining > 0:
            return PollResult(status=RemoteStatus.PROCESSING)
        self._jobs.pop(remote_job_id, None)
        return PollResult(status=RemoteStatus.COMPLETED, result=job.result)

    async def cancel(self, remote_job_id: str) -> None:
        self._jobs.pop(remote_job_id, None)


__all__ = ["MockJobClient"]
