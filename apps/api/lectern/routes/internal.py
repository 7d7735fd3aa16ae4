"""Internal account-management routes for the subscription system."""

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Path, status

from lectern.core.logging_safety import safe_log_identifier
from lectern.errors import ApiError
from lectern.repositories.base import AccountExistsError
from lectern.routes.dependencies import get_quota_ledger, require_admin_secret
from lectern.schemas.error import AdmissionDeniedError, ErrorResponse
from lectern.schemas.quota import OpenAccountRequest, QuotaBalance, UpdateQuotaRequest
from lectern.services.quota_ledger import QuotaLedger

router = APIRouter(prefix="/internal", tags=["Internal"], dependencies=[Depends(require_admin_secret)])
logger = logging.getLogger(__name__)


@router.post(
    "/accounts",
    response_model=QuotaBalance,
    status_code=status.HTTP_201_CREATED,
    responses={401: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
def open_account(
    payload: OpenAccountRequest,
    ledger: Annotated[QuotaLedger, Depends(get_quota_ledger)],
) -> QuotaBalance:
    try:
        balance = ledger.open_account(
            payload.account_id,
            remaining_units=payload.remaining_units,
            unlimited=payload.unlimited,
        )
    except AccountExistsError as exc:
        raise ApiError(status_code=409, code="account_exists", message="Account already exists") from exc
    logger.info(
        "admin.account_opened account_id=%s remaining_units=%s unlimited=%s",
        safe_log_identifier(payload.account_id, prefix="acc"),
        payload.remaining_units,
        payload.unlimited,
    )
    return balance


@router.post(
    "/accounts/{accountId}/quota",
    response_model=QuotaBalance,
    responses={401: {"model": ErrorResponse}, 404: {"model": AdmissionDeniedError}},
)
def update_quota(
    account_id: Annotated[str, Path(alias="accountId")],
    payload: UpdateQuotaRequest,
    ledger: Annotated[QuotaLedger, Depends(get_quota_ledger)],
) -> QuotaBalance:
    balance = ledger.get_balance(account_id)
    if payload.unlimited is True:
        balance = ledger.mark_unlimited(account_id)
    elif payload.unlimited is False:
        balance = ledger.mark_limited(account_id)
    if payload.grant_units is not None and balance is not None:
        balance = ledger.grant_units(account_id, payload.grant_units)
    if balance is None:
        raise ApiError(status_code=404, code="account_not_found", message="Account not found")

    logger.info(
        "admin.quota_updated account_id=%s unlimited=%s grant_units=%s",
        safe_log_identifier(account_id, prefix="acc"),
        payload.unlimited,
        payload.grant_units,
    )
    return balance
