"""Domain failure taxonomy for metered jobs.

Only ``AdmissionDenied``, ``SubmissionError``, ``RemoteFailure``, ``TimeoutExceeded``
and ``JobCancelled`` ever reach a caller. ``TransientPollError`` is absorbed by the
poll loop's retry limit and ``CleanupError`` is logged by the reaper.
"""

from __future__ import annotations

from typing import Literal

DenialReason = Literal["no_remaining_units", "account_not_found"]


class JobError(Exception):
    """Base class for job failures that carry a public error code."""

    code = "internal_error"
    status_code = 500

    def __init__(self, message: str, *, job_id: str | None = None) -> None:
        self.job_id = job_id
        super().__init__(message)


class AdmissionDenied(JobError):
    status_code = 403

    def __init__(self, reason: DenialReason) -> None:
        self.reason = reason
        self.code = reason
        if reason == "account_not_found":
            self.status_code = 404
            message = "No quota record exists for this account."
        else:
            message = "You have used all free requests. Upgrade to continue."
        super().__init__(message)


class SubmissionError(JobError):
    """Remote intake rejected the job."""

    code = "job_submission_failed"
    status_code = 502


class PollError(Exception):
    """Status query failed for a reason other than the job itself failing."""


class TransientPollError(PollError):
    """Network or transport hiccup while polling; safe to retry."""


class RemoteFailure(JobError):
    code = "job_remote_failure"
    status_code = 502


class TimeoutExceeded(JobError):
    code = "job_timed_out"
    status_code = 504


class JobCancelled(JobError):
    code = "job_cancelled"
    status_code = 409


class CleanupError(Exception):
    """Artifact deletion failed."""


__all__ = [
    "AdmissionDenied",
    "CleanupError",
    "DenialReason",
    "JobCancelled",
    "JobError",
    "PollError",
    "RemoteFailure",
    "SubmissionError",
    "TimeoutExceeded",
    "TransientPollError",
]
