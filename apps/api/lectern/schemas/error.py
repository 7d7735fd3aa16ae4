"""API error response schemas."""

from typing import Any
from typing import Literal

from pydantic import BaseModel

from lectern.schemas.job import JobState


class ErrorResponse(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class NoLeakNotFoundError(BaseModel):
    code: Literal["resource_not_found"]
    message: str


class AdmissionDeniedError(BaseModel):
    code: Literal["no_remaining_units", "account_not_found"]
    message: str
    details: dict[str, Any] | None = None


class JobFailureDetails(BaseModel):
    job_id: str
    outcome: JobState | None = None


class JobFailureError(BaseModel):
    code: Literal[
        "job_submission_failed",
        "job_remote_failure",
        "job_timed_out",
        "job_cancelled",
        "internal_error",
    ]
    message: str
    details: JobFailureDetails | None = None


class TransitionErrorDetails(BaseModel):
    current_state: JobState
    attempted_state: JobState
    allowed_next_states: list[JobState] | None = None


class FsmTransitionError(BaseModel):
    code: Literal["fsm_transition_invalid", "fsm_terminal_immutable"]
    message: str
    details: TransitionErrorDetails
