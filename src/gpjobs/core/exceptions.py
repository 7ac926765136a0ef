from typing import Optional

from gpjobs.core.models.job import FailureKind, JobFailure


class JobError(Exception):
    """Base exception for remote job failures.

    Attributes:
        message: Human-readable error description
        diagnostic: Technical diagnostic information for debugging
        job_id: Optional remote job identifier
    """

    kind: Optional[FailureKind] = None

    def __init__(
        self,
        message: str,
        diagnostic: Optional[str] = None,
        job_id: Optional[str] = None,
    ):
        self.message = message
        self.diagnostic = diagnostic
        self.job_id = job_id
        super().__init__(message)

    def to_failure(self) -> JobFailure:
        """Terminal failure record for the job this error ended."""
        return JobFailure(
            kind=self.kind or FailureKind.service,
            message=self.message or type(self).__name__,
            diagnostic=self.diagnostic,
        )


class SubmissionError(JobError):
    """Raised when the service is unreachable or rejects the parameters at submit time.

    Attributes:
        upstream_status: HTTP status code from the service (if applicable)
    """

    kind = FailureKind.submission

    def __init__(
        self,
        message: str,
        upstream_status: Optional[int] = None,
        diagnostic: Optional[str] = None,
        job_id: Optional[str] = None,
    ):
        self.upstream_status = upstream_status
        super().__init__(message=message, diagnostic=diagnostic, job_id=job_id)


class CommunicationError(JobError):
    """Transient network failure; the polling loop retries these."""

    kind = FailureKind.communication


class ServiceError(JobError):
    """The service reported the job failed or does not know the handle.

    Attributes:
        upstream_status: HTTP status code from the service (if applicable)
    """

    kind = FailureKind.service

    def __init__(
        self,
        message: str,
        upstream_status: Optional[int] = None,
        diagnostic: Optional[str] = None,
        job_id: Optional[str] = None,
    ):
        self.upstream_status = upstream_status
        super().__init__(message=message, diagnostic=diagnostic, job_id=job_id)


class ResultUnavailableError(JobError):
    """Raised when a result is requested for a job that has not succeeded."""

    kind = FailureKind.result_unavailable


class InvalidStateError(Exception):
    """Usage contract violation, e.g. submitting the same controller twice."""


class JobCanceledError(JobError):
    """Raised by `JobOutcome.unwrap()` when the job was canceled."""


_FAILURE_ERRORS = {
    FailureKind.submission: SubmissionError,
    FailureKind.service: ServiceError,
    FailureKind.communication: CommunicationError,
    FailureKind.result_unavailable: ResultUnavailableError,
}


def error_from_failure(failure: JobFailure, job_id: Optional[str] = None) -> JobError:
    error_cls = _FAILURE_ERRORS.get(failure.kind, ServiceError)
    return error_cls(failure.message, diagnostic=failure.diagnostic, job_id=job_id)
