# gpjobs/core/interfaces/remote_job_client.py
from abc import ABC, abstractmethod

from gpjobs.core.models.job import JobHandle, JobParameters, ResultPayload, StatusSnapshot


class RemoteJobClientPort(ABC):
    """Narrow contract with the remote processing service.

    Adapters translate transport failures into the job error taxonomy:
    SubmissionError, CommunicationError (transient), ServiceError and
    ResultUnavailableError. Nothing else should escape.
    """

    @abstractmethod
    async def __aenter__(self) -> "RemoteJobClientPort":
        """Async context manager entry method"""
        pass

    @abstractmethod
    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit method"""
        pass

    @abstractmethod
    async def submit(self, parameters: JobParameters) -> JobHandle:
        """Start a remote job. Raises SubmissionError if unreachable or rejected."""
        pass

    @abstractmethod
    async def fetch_status(self, handle: JobHandle) -> StatusSnapshot:
        """Return current status and latest message.

        Raises CommunicationError on transient failures (caller retries) and
        ServiceError when the service does not recognise the handle.
        """
        pass

    @abstractmethod
    async def fetch_result(self, handle: JobHandle) -> ResultPayload:
        """Return the result payload; ResultUnavailableError unless succeeded."""
        pass

    @abstractmethod
    async def cancel(self, handle: JobHandle) -> None:
        """Ask the service to stop the job. Best effort, no confirmation awaited."""
        pass

    @abstractmethod
    async def close(self) -> None:
        """Release transport resources"""
        pass
