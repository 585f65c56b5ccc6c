"""Error taxonomy for the job pipeline."""

from __future__ import annotations

from pulse_tracks.jobs.models import FailureClass, JobStatus


class PulseTracksError(Exception):
    """Base class for every error raised by the pipeline core."""


class ValidationError(PulseTracksError):
    """Admission inputs rejected before any state change."""

    def __init__(self, problems: list[str]) -> None:
        self.problems = problems
        super().__init__("; ".join(problems))


class InsufficientCreditsError(PulseTracksError):
    def __init__(self, *, account_id: str, balance: int, required: int) -> None:
        self.account_id = account_id
        self.balance = balance
        self.required = required
        super().__init__(f"Insufficient credits: balance={balance} required={required}")


class AccountNotFoundError(PulseTracksError):
    def __init__(self, account_id: str) -> None:
        self.account_id = account_id
        super().__init__(f"Account not found: {account_id}")


class JobNotFoundError(PulseTracksError):
    def __init__(self, job_ref: str) -> None:
        self.job_ref = job_ref
        super().__init__(f"Job not found: {job_ref}")


class ForbiddenError(PulseTracksError):
    def __init__(self, job_ref: str) -> None:
        self.job_ref = job_ref
        super().__init__(f"Forbidden: job {job_ref} belongs to another account")


class WrongStateError(PulseTracksError):
    def __init__(self, *, job_id: str, status: JobStatus, expected: str) -> None:
        self.job_id = job_id
        self.status = status
        super().__init__(f"Job {job_id} is '{status.value}' (expected {expected})")


class InvalidTransitionError(PulseTracksError):
    def __init__(self, status_from: JobStatus, status_to: JobStatus) -> None:
        self.status_from = status_from
        self.status_to = status_to
        super().__init__(f"Transition not allowed: {status_from.value} -> {status_to.value}")


class ExternalServiceError(PulseTracksError):
    """Failure talking to a generative service."""

    failure_class: FailureClass = FailureClass.SERVICE_REJECTED

    def __init__(
        self,
        message: str,
        *,
        failure_class: FailureClass | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        if failure_class is not None:
            self.failure_class = failure_class
        # classifier diagnostics merged into the failure event
        self.details = dict(details or {})
        super().__init__(message)


class TransientExternalFailure(ExternalServiceError):
    """Retryable only through a future dequeue re-claiming the job."""

    failure_class = FailureClass.SERVICE_TRANSIENT


class PermanentExternalFailure(ExternalServiceError):
    failure_class = FailureClass.SERVICE_REJECTED


class ReconciliationConflict(PulseTracksError):
    """Callback that cannot be applied; logged, never propagated to the provider."""
