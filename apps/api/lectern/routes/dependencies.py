"""Dependency wiring for routes."""

from __future__ import annotations

import logging
from secrets import compare_digest
from typing import Annotated
from uuid import uuid4

from fastapi import Depends, Request, Security
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer

from lectern.adapters.auth import (
    AuthVerificationError,
    FirebaseTokenVerifier,
    MockTokenVerifier,
    TokenVerifier,
)
from lectern.core.config import Settings, get_settings
from lectern.core.logging_safety import safe_log_identifier
from lectern.errors import ApiError
from lectern.schemas.auth import AuthPrincipal
from lectern.services.jobs import JobService
from lectern.services.quota_ledger import QuotaLedger

bearer_scheme = HTTPBearer(auto_error=False, scheme_name="bearerAuth")
admin_secret_scheme = APIKeyHeader(
    name="X-Admin-Secret",
    auto_error=False,
    scheme_name="internalAdminSecret",
)
logger = logging.getLogger(__name__)


def _auth_error(message: str) -> ApiError:
    return ApiError(status_code=401, code="unauthorized", message=message)


def _request_correlation_id(request: Request) -> str:
    existing = getattr(request.state, "correlation_id", None)
    if isinstance(existing, str) and existing:
        return existing

    correlation_id = request.headers.get("X-Correlation-Id")
    if correlation_id:
        request.state.correlation_id = correlation_id
        return correlation_id

    generated = f"req-{uuid4()}"
    request.state.correlation_id = generated
    return generated


def get_token_verifier(settings: Annotated[Settings, Depends(get_settings)]) -> TokenVerifier:
    """Resolve provider adapter from configuration."""
    if settings.auth_provider == "firebase":
        return FirebaseTokenVerifier(
            project_id=settings.firebase_project_id,
            audience=settings.firebase_audience,
        )
    return MockTokenVerifier()


async def get_authenticated_principal(
    request: Request,
    credentials: Annotated[HTTPAuthorizationCredentials | None, Security(bearer_scheme)],
    verifier: Annotated[TokenVerifier, Depends(get_token_verifier)],
) -> AuthPrincipal:
    """Validate the bearer token and resolve the account to charge."""
    correlation_id = _request_correlation_id(request)
    safe_correlation_id = safe_log_identifier(correlation_id, prefix="cid")
    if credentials is None or credentials.scheme.lower() != "bearer" or not credentials.credentials:
        logger.warning(
            "auth.rejected correlation_id=%s method=%s path=%s reason=invalid_or_missing_bearer",
            safe_correlation_id,
            request.method,
            request.url.path,
        )
        raise _auth_error("Invalid or missing bearer token")

    try:
        principal = verifier.verify_token(credentials.credentials)
    except AuthVerificationError as exc:
        logger.warning(
            "auth.rejected correlation_id=%s method=%s path=%s reason=token_verification_failed",
            safe_correlation_id,
            request.method,
            request.url.path,
        )
        raise _auth_error(str(exc) or "Invalid bearer token") from exc

    logger.info(
        "auth.accepted correlation_id=%s method=%s path=%s account_id=%s role=%s",
        safe_correlation_id,
        request.method,
        request.url.path,
        safe_log_identifier(principal.account_id, prefix="acc"),
        principal.role,
    )
    request.state.auth_principal = principal
    return principal


async def require_admin_secret(
    request: Request,
    admin_secret: Annotated[str | None, Security(admin_secret_scheme)],
    settings: Annotated[Settings, Depends(get_settings)],
) -> None:
    """Guard the account-management endpoints used by the subscription system."""
    correlation_id = _request_correlation_id(request)
    safe_correlation_id = safe_log_identifier(correlation_id, prefix="cid")
    expected = settings.admin_secret
    if not expected or admin_secret is None or not compare_digest(admin_secret, expected):
        logger.warning(
            "admin.auth_rejected correlation_id=%s method=%s path=%s reason=invalid_admin_secret",
            safe_correlation_id,
            request.method,
            request.url.path,
        )
        raise _auth_error("Invalid admin authentication")


def get_job_service(request: Request) -> JobService:
    return request.app.state.job_service


def get_quota_ledger(request: Request) -> QuotaLedger:
    return request.app.state.ledger
