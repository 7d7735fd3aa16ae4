"""AssemblyAI speech-to-text adapter."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from lectern.adapters.jobs.base import ExternalJobClient, JobPayload, PollResult
from lectern.core.logging_safety import safe_log_path
from lectern.domain.errors import PollError, SubmissionError, TransientPollError
from lectern.schemas.job import RemoteStatus

logger = logging.getLogger(__name__)

_STATUS_MAP: dict[str, RemoteStatus] = {
    "queued": RemoteStatus.QUEUED,
    "processing": RemoteStatus.PROCESSING,
    "completed": RemoteStatus.COMPLETED,
    "error": RemoteStatus.FAILED,
    "failed": RemoteStatus.FAILED,
}
_TRANSIENT_STATUS_CODES = frozenset({408, 425, 429})


class AssemblyAITranscriptionClient(ExternalJobClient):
    """Uploads the staged audio file, starts a transcript and reads its status."""

    def __init__(
        self,
        api_key: str,
        *,
        api_base: str = "https://api.assemblyai.com",
        timeout: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._api_base = api_base.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    def _headers(self, **extra: str) -> dict[str, str]:
        return {"Authorization": self._api_key, **extra}

    async def submit(self, payload: JobPayload) -> str:
        path = payload.input_path
        if path is None or not path.is_file():
            raise SubmissionError("Audio input is missing", job_id=payload.job_id)

        try:
            audio = await asyncio.to_thread(path.read_bytes)
            upload = await self._client.post(
                f"{self._api_base}/v2/upload",
                content=audio,
                headers=self._headers(**{"Content-Type": "application/octet-stream"}),
            )
            upload.raise_for_status()
            upload_url = upload.json().get("upload_url")
            if not upload_url:
                raise SubmissionError("Upload response missing upload_url", job_id=payload.job_id)

            body: dict[str, Any] = {"audio_url": upload_url}
            if payload.language and payload.language != "auto":
                body["language_code"] = payload.language
            created = await self._client.post(
                f"{self._api_base}/v2/transcript",
                json=body,
                headers=self._headers(),
            )
            created.raise_for_status()
            transcript_id = created.json().get("id")
        except (httpx.HTTPError, OSError, ValueError) as exc:
            logger.warning(
                "assemblyai.submit_failed file=%s reason=%s",
                safe_log_path(path),
                type(exc).__name__,
            )
            raise SubmissionError("Transcription intake rejected the job", job_id=payload.job_id) from exc

        if not transcript_id:
            raise SubmissionError("Transcript response missing id", job_id=payload.job_id)
        logger.info("assemblyai.submitted remote_job_id=%s", transcript_id)
        return str(transcript_id)

    async def poll(self, remote_job_id: str) -> PollResult:
        try:
            response = await self._client.get(
                f"{self._api_base}/v2/transcript/{remote_job_id}",
                headers=self._headers(),
            )
        except httpx.TransportError as exc:
            raise TransientPollError(f"Transport error: {type(exc).__name__}") from exc

        if response.status_code >= 500 or response.status_code in _TRANSIENT_STATUS_CODES:
            raise TransientPollError(f"Status query returned HTTP {response.status_code}")
        if response.status_code >= 400:
            raise PollError(f"Status query rejected with HTTP {response.status_code}")

        try:
            data = response.json()
        except ValueError as exc:
            raise TransientPollError("Status response was not JSON") from exc

        status = _STATUS_MAP.get(str(data.get("status", "")).lower())
        if status is None:
            raise PollError(f"Unknown transcript status {data.get('status')!r}")
        if status is RemoteStatus.COMPLETED:
            return PollResult(status=status, result=data.get("text") or "")
        if status is RemoteStatus.FAILED:
            return PollResult(status=status, error_detail=str(data.get("error") or "Transcription failed"))
        return PollResult(status=status)

    async def cancel(self, remote_job_id: str) -> None:
        try:
            await self._client.delete(
                f"{self._api_base}/v2/transcript/{remote_job_id}",
                headers=self._headers(),
            )
        except httpx.HTTPError as exc:
            logger.info("assemblyai.cancel_ignored remote_job_id=%s reason=%s", remote_job_id, type(exc).__name__)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


__all__ = ["AssemblyAITranscriptionClient"]
