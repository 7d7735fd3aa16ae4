"""Provider-neutral contract for remote processing jobs."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from lectern.schemas.job import JobKind, RemoteStatus


@dataclass(frozen=True, slots=True)
class JobPayload:
    job_id: str
    kind: JobKind
    input_path: Path | None = None
    text: str | None = None
    language: str | None = None


@dataclass(frozen=True, slots=True)
class PollResult:
    status: RemoteStatus
    result: str | None = None
    error_detail: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.status in (RemoteStatus.QUEUED, RemoteStatus.PROCESSING)


class ExternalJobClient(ABC):
    """Submit work to a remote processor and query its status.

    Implementations never retry or back off; the lifecycle manager owns that policy.
    """

    @abstractmethod
    async def submit(self, payload: JobPayload) -> str:
        """Start a remote job and return its provider id, or raise ``SubmissionError``."""

    @abstractmethod
    async def poll(self, remote_job_id: str) -> PollResult:
        """Return current status, or raise ``PollError``/``TransientPollError``."""

    async def cancel(self, remote_job_id: str) -> None:
        """Best-effort request to stop a remote job; providers may ignore it."""
        return None

    async def aclose(self) -> None:
        return None


__all__ = ["ExternalJobClient", "JobPayload", "PollResult"]
