"""Job API schemas."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from lectern.schemas.quota import QuotaBalance


class JobKind(str, Enum):
    TRANSCRIPTION = "transcription"
    SUMMARIZATION = "summarization"


class JobState(str, Enum):
    CREATED = "CREATED"
    SUBMITTED = "SUBMITTED"
    POLLING = "POLLING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"
    CANCELLED = "CANCELLED"
    CLEANED_UP = "CLEANED_UP"


class RemoteStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class CreateSummaryRequest(BaseModel):
    text: str = Field(min_length=1)
    language: str = Field(default="en", min_length=2, max_length=8)
    wait: bool = True


class Job(BaseModel):
    id: str
    kind: JobKind
    state: JobState
    outcome: JobState | None = None
    language: str | None = None
    result: str | None = None
    failure_code: str | None = None
    failure_message: str | None = None
    poll_count: int = 0
    created_at: datetime
    updated_at: datetime | None = None
    last_polled_at: datetime | None = None


class JobEnvelope(BaseModel):
    """Job view plus the caller's balance after the request."""

    job: Job
    quota: QuotaBalance
