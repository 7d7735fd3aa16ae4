"""Quota routes."""

from typing import Annotated

from fastapi import APIRouter, Depends

from lectern.routes.dependencies import get_authenticated_principal, get_job_service
from lectern.schemas.auth import AuthPrincipal
from lectern.schemas.error import AdmissionDeniedError, ErrorResponse
from lectern.schemas.quota import QuotaBalance
from lectern.services.jobs import JobService

router = APIRouter(tags=["Quota"])


@router.get(
    "/quota",
    response_model=QuotaBalance,
    responses={401: {"model": ErrorResponse}, 404: {"model": AdmissionDeniedError}},
)
async def get_quota(
    principal: Annotated[AuthPrincipal, Depends(get_authenticated_principal)],
    service: Annotated[JobService, Depends(get_job_service)],
) -> QuotaBalance:
    return await service.get_quota(account_id=principal.account_id)
