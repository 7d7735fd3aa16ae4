"""FastAPI application entrypoint."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager, suppress
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from lectern.adapters.jobs import (
    AssemblyAITranscriptionClient,
    ExternalJobClient,
    GroqSummarizationClient,
    MockJobClient,
)
from lectern.core.config import Settings, get_settings
from lectern.errors import ApiError
from lectern.repositories.base import QuotaStore
from lectern.repositories.memory import InMemoryJobStore, InMemoryQuotaStore
from lectern.repositories.sql import SqlQuotaStore
from lectern.routes import internal_router, jobs_router, quota_router
from lectern.schemas.error import ErrorResponse
from lectern.schemas.job import JobKind
from lectern.services.jobs import JobService
from lectern.services.lifecycle import JobLifecycleManager, PollPolicy
from lectern.services.media import AudioExtractor
from lectern.services.quota_ledger import QuotaLedger
from lectern.services.reaper import ResourceReaper
from lectern.services.sweeper import JobSweeper

logger = logging.getLogger(__name__)


def _build_quota_store(settings: Settings) -> QuotaStore:
    if settings.database_url:
        return SqlQuotaStore.from_url(settings.database_url)
    return InMemoryQuotaStore()


def _build_clients(settings: Settings) -> dict[JobKind, ExternalJobClient]:
    if settings.job_provider == "mock":
        mock = MockJobClient(polls_until_complete=settings.mock_polls_until_complete)
        return {JobKind.TRANSCRIPTION: mock, JobKind.SUMMARIZATION: mock}

    if not settings.assemblyai_api_key or not settings.groq_api_key:
        logger.warning(
            "app.provider_keys_missing assemblyai=%s groq=%s",
            bool(settings.assemblyai_api_key),
            bool(settings.groq_api_key),
        )
    return {
        JobKind.TRANSCRIPTION: AssemblyAITranscriptionClient(
            settings.assemblyai_api_key or "",
            api_base=settings.assemblyai_base_url,
            timeout=settings.http_timeout_seconds,
        ),
        JobKind.SUMMARIZATION: GroqSummarizationClient(
            settings.groq_api_key or "",
            api_base=settings.groq_base_url,
            model=settings.groq_model,
            max_tokens=settings.summary_max_tokens,
            temperature=settings.summary_temperature,
            timeout=settings.http_timeout_seconds,
        ),
    }


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    sweeper: JobSweeper = app.state.sweeper
    sweep_task = asyncio.create_task(sweeper.run_forever(), name="job-sweeper")
    try:
        yield
    finally:
        sweep_task.cancel()
        with suppress(asyncio.CancelledError):
            await sweep_task
        manager: JobLifecycleManager = app.state.manager
        await manager.shutdown()
        await manager.aclose_clients()
        store = app.state.quota_store
        if isinstance(store, SqlQuotaStore):
            store.dispose()


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(title="Lectern API", version="1.0.0", lifespan=_lifespan)

    quota_store = _build_quota_store(settings)
    jobs = InMemoryJobStore()
    ledger = QuotaLedger(
        quota_store,
        policy=settings.quota_policy,
        refund_on_failure=settings.refund_on_failure,
    )
    reaper = ResourceReaper()
    manager = JobLifecycleManager(
        jobs=jobs,
        ledger=ledger,
        clients=_build_clients(settings),
        reaper=reaper,
        policy=PollPolicy.from_settings(settings),
    )
    app.state.quota_store = quota_store
    app.state.jobs = jobs
    app.state.ledger = ledger
    app.state.reaper = reaper
    app.state.manager = manager
    app.state.sweeper = JobSweeper(
        jobs=jobs,
        manager=manager,
        ledger=ledger,
        reaper=reaper,
        upload_dir=settings.upload_dir,
        interval_seconds=settings.sweep_interval_seconds,
        grace_seconds=settings.sweep_grace_seconds,
        retention_seconds=settings.job_retention_seconds,
    )
    app.state.job_service = JobService(
        jobs=jobs,
        ledger=ledger,
        manager=manager,
        extractor=AudioExtractor(settings.ffmpeg_binary),
        settings=settings,
    )

    @app.exception_handler(ApiError)
    async def handle_api_error(_, exc: ApiError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.payload.model_dump(mode="json", exclude_none=True),
        )

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = [".".join(str(part) for part in error.get("loc", ())) for error in exc.errors()]
        payload = ErrorResponse(
            code="validation_error",
            message="Invalid request payload",
            details={"fields": fields},
        )
        return JSONResponse(status_code=422, content=payload.model_dump(mode="json"))

    api_prefix = "/api/v1"
    app.include_router(jobs_router, prefix=api_prefix)
    app.include_router(quota_router, prefix=api_prefix)
    app.include_router(internal_router, prefix=api_prefix)

    return app


app = create_app()
