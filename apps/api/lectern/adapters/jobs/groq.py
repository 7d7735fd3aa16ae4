"""Groq chat-completions adapter for lecture summaries.

The completion endpoint answers synchronously, so ``submit`` runs the request as
a background task and ``poll`` reports on that task. This keeps summaries on the
same submit/poll lifecycle as transcriptions.
"""

from __future__ import annotations

import asyncio
import logging
from uuid import uuid4

import httpx

from lectern.adapters.jobs.base import ExternalJobClient, JobPayload, PollResult
from lectern.domain.errors import PollError, SubmissionError
from lectern.schemas.job import RemoteStatus

logger = logging.getLogger(__name__)

_ENGLISH_LAYOUT = """
Title: [Concise descriptive title]

Introduction:
Brief overview of topic and significance

Key Points:
- Core ideas summarized clearly
- Logical flow between concepts
- Examples where helpful

Conclusion:
Main takeaways
Important implications

Multiple-Choice Questions:
1. Clear question stem
  a) Option
  b) Option
  c) Option
  d) Option
Correct Answer: [letter]
Explanation: [brief rationale]

Practical Applications:
Two real-world use cases
"""

_ARABIC_LAYOUT = """
العنوان: [عنوان واضح يعبر عن الموضوع]

المقدمة:
وصف موجز للموضوع وأهميته

النقاط الرئيسية:
- ملخص النقاط الأساسية
- تسلسل منطقي بين الأفكار
- أمثلة توضيحية عند الحاجة

الخاتمة:
أهم الأفكار والاستنتاجات
التطبيقات العملية

أسئلة الاختيار من متعدد:
1. سؤال واضح ومباشر
  أ) خيار
  ب) خيار
  ج) خيار
  د) خيار
الإجابة الصحيحة: [الحرف]
شرح: [شرح موجز]

التطبيقات العملية:
مثالين واقعيين لتطبيق هذه المعرفة
"""

_SYSTEM_PROMPTS = {
    "ar": "أنت مساعد أكاديمي محترف يقدم ملخصات دقيقة ومنظمة",
    "default": "You are a professional academic assistant creating structured summaries",
}


def build_summary_messages(text: str, language: str = "en") -> list[dict[str, str]]:
    is_arabic = language.lower() == "ar"
    prompt = (
        f"Create a professional lecture summary in {language} following this structure and format "
        "and make sure the main headings in bold using html tag bold instead of **:\n"
        f"{_ARABIC_LAYOUT if is_arabic else _ENGLISH_LAYOUT}\n"
        f"Lecture Content:\n{text}\n"
    )
    return [
        {"role": "system", "content": _SYSTEM_PROMPTS["ar" if is_arabic else "default"]},
        {"role": "user", "content": prompt},
    ]


class GroqSummarizationClient(ExternalJobClient):
    def __init__(
        self,
        api_key: str,
        *,
        api_base: str = "https://api.groq.com",
        model: str = "llama-3.3-70b-versatile",
        max_tokens: int = 1500,
        temperature: float = 0.3,
        timeout: float = 60.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._api_key = api_key
        self._url = f"{api_base.rstrip('/')}/openai/v1/chat/completions"
        self._model = model
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None
        self._tasks: dict[str, asyncio.Task[str]] = {}

    async def submit(self, payload: JobPayload) -> str:
        text = (payload.text or "").strip()
        if not text:
            raise SubmissionError("Text is required", job_id=payload.job_id)
        if not self._api_key:
            raise SubmissionError("Summarization provider is not configured", job_id=payload.job_id)

        remote_job_id = f"groq-{uuid4()}"
        self._tasks[remote_job_id] = asyncio.create_task(
            self._complete(text, payload.language or "en"),
            name=f"summary-{remote_job_id}",
        )
        logger.info("groq.submitted remote_job_id=%s model=%s", remote_job_id, self._model)
        return remote_job_id

    async def _complete(self, text: str, language: str) -> str:
        response = await self._client.post(
            self._url,
            json={
                "model": self._model,
                "messages": build_summary_messages(text, language),
                "max_tokens": self._max_tokens,
                "temperature": self._temperature,
            },
            headers={"Authorization": f"Bearer {self._api_key}"},
        )
        response.raise_for_status()
        return response.json()["choices"][0]["message"]["content"]

    async def poll(self, remote_job_id: str) -> PollResult:
        task = self._tasks.get(remote_job_id)
        if task is None:
            raise PollError(f"Unknown summary job {remote_job_id}")
        if not task.done():
            return PollResult(status=RemoteStatus.PROCESSING)

        self._tasks.pop(remote_job_id, None)
        if task.cancelled():
            return PollResult(status=RemoteStatus.FAILED, error_detail="Summary request was cancelled")
        exc = task.exception()
        if exc is not None:
            logger.warning("groq.completion_failed remote_job_id=%s reason=%s", remote_job_id, type(exc).__name__)
            return PollResult(status=RemoteStatus.FAILED, error_detail=f"Summary request failed: {type(exc).__name__}")
        return PollResult(status=RemoteStatus.COMPLETED, result=task.result())

    async def cancel(self, remote_job_id: str) -> None:
        task = self._tasks.pop(remote_job_id, None)
        if task is not None and not task.done():
            task.cancel()

    async def aclose(self) -> None:
        for task in self._tasks.values():
            task.cancel()
        self._tasks.clear()
        if self._owns_client:
            await self._client.aclose()


__all__ = ["GroqSummarizationClient", "build_summary_messages"]
