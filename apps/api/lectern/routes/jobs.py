"""Metered job routes."""

from typing import Annotated

from fastapi import APIRouter, Depends, File, Form, Path, Query, Response, UploadFile, status

from lectern.routes.dependencies import get_authenticated_principal, get_job_service
from lectern.schemas.auth import AuthPrincipal
from lectern.schemas.error import (
    AdmissionDeniedError,
    ErrorResponse,
    FsmTransitionError,
    JobFailureError,
    NoLeakNotFoundError,
)
from lectern.schemas.job import CreateSummaryRequest, Job, JobEnvelope, JobState
from lectern.services.jobs import JobService

router = APIRouter(tags=["Jobs"])

_SUBMIT_RESPONSES = {
    202: {"model": JobEnvelope},
    401: {"model": ErrorResponse},
    403: {"model": AdmissionDeniedError},
    404: {"model": AdmissionDeniedError},
    409: {"model": JobFailureError},
    500: {"model": JobFailureError},
    502: {"model": JobFailureError},
    504: {"model": JobFailureError},
}


def _set_submit_status(response: Response, envelope: JobEnvelope) -> None:
    finished = envelope.job.outcome is JobState.COMPLETED
    response.status_code = status.HTTP_200_OK if finished else status.HTTP_202_ACCEPTED


@router.post("/transcriptions", response_model=JobEnvelope, responses=_SUBMIT_RESPONSES)
async def create_transcription(
    response: Response,
    audio: Annotated[UploadFile, File()],
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    service: Annotated[JobService, Depends(get_job_service)],
    language: Annotated[str | None, Form(min_length=2, max_length=8)] = None,
    wait: Annotated[bool, Query()] = True,
) -> JobEnvelope:
    envelope = await service.submit_transcription(
        account_id=principal.account_id,
        filename=audio.filename,
        stream=audio.file,
        language=language,
        wait=wait,
    )
    _set_submit_status(response, envelope)
    return envelope


@router.post("/transcriptions/video", response_model=JobEnvelope, responses=_SUBMIT_RESPONSES)
async def create_video_transcription(
    response: Response,
    video: Annotated[UploadFile, File()],
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    service: Annotated[JobService, Depends(get_job_service)],
    language: Annotated[str | None, Form(min_length=2, max_length=8)] = None,
    wait: Annotated[bool, Query()] = True,
) -> JobEnvelope:
    envelope = await service.submit_transcription(
        account_id=principal.account_id,
        filename=video.filename,
        stream=video.file,
        language=language,
        wait=wait,
        extract_audio=True,
    )
    _set_submit_status(response, envelope)
    return envelope


@router.post("/summaries", response_model=JobEnvelope, responses=_SUBMIT_RESPONSES)
async def create_summary(
    payload: CreateSummaryRequest,
    response: Response,
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    service: Annotated[JobService, Depends(get_job_service)],
) -> JobEnvelope:
    envelope = await service.submit_summary(
        account_id=principal.account_id,
        text=payload.text,
        language=payload.language,
        wait=payload.wait,
    )
    _set_submit_status(response, envelope)
    return envelope


@router.get("/jobs", response_model=list[Job])
async def list_jobs(
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    service: Annotated[JobService, Depends(get_job_service)],
) -> list[Job]:
    return service.list_jobs(account_id=principal.account_id)


@router.get(
    "/jobs/{jobId}",
    response_model=Job,
    responses={404: {"model": NoLeakNotFoundError}},
)
async def get_job(
    job_id: Annotated[str, Path(alias="jobId")],
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    service: Annotated[JobService, Depends(get_job_service)],
) -> Job:
    return service.get_job(account_id=principal.account_id, job_id=job_id)


@router.post(
    "/jobs/{jobId}/cancel",
    response_model=JobEnvelope,
    responses={
        404: {"model": NoLeakNotFoundError},
        409: {"model": FsmTransitionError},
    },
)
async def cancel_job(
    job_id: Annotated[str, Path(alias="jobId")],
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    service: Annotated[JobService, Depends(get_job_service)],
) -> JobEnvelope:
    return await service.cancel_job(account_id=principal.account_id, job_id=job_id)
