"""Configuration models for core domain components.

Pydantic-based configuration consolidating the settings of the job controller,
so composition roots and tests inject them explicitly.
"""

from typing import Optional
from pydantic import BaseModel, Field


class JobControllerConfig(BaseModel):
    """Configuration for JobController behavior.

    Attributes:
        poll_interval: Seconds between remote status requests (float for test flexibility)
        status_max_attempts: Consecutive attempts per poll before a communication failure is fatal
        status_retry_base_wait: Base wait in seconds for exponential backoff between attempts
        status_retry_max_wait: Upper bound in seconds for a single backoff wait
        request_timeout: Upper bound in seconds for any single remote call (None = unbounded)
        observer_timeout: Upper bound in seconds for one async observer notification
        cancel_grace_period: Seconds `await_outcome` lets the loop settle after cancellation
    """

    poll_interval: float = Field(
        default=2.0,
        gt=0,
        description="Interval in seconds between remote job status requests"
    )

    status_max_attempts: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Maximum consecutive attempts for a status request failing with a transient error"
    )

    status_retry_base_wait: float = Field(
        default=0.5,
        gt=0,
        description="Base wait time in seconds for exponential backoff between retries"
    )

    status_retry_max_wait: float = Field(
        default=8.0,
        gt=0,
        description="Maximum wait time in seconds between retry attempts"
    )

    request_timeout: Optional[float] = Field(
        default=30.0,
        gt=0,
        description="Maximum time in seconds for one remote call; a timeout counts as a transient failure"
    )

    observer_timeout: float = Field(
        default=5.0,
        gt=0,
        description="Maximum time in seconds an async observer may take for one notification"
    )

    cancel_grace_period: float = Field(
        default=1.0,
        ge=0,
        description="Seconds await_outcome waits for the loop to observe a cancellation before forcing it"
    )

    model_config = {
        "frozen": True,  # Immutable after creation for safety
        "extra": "forbid",  # Reject unknown fields
    }

    @classmethod
    def from_app_settings(cls, settings) -> "JobControllerConfig":
        """Factory method to construct config from a GpJobsSettings instance.

        Args:
            settings: GpJobsSettings instance from core.settings

        Returns:
            JobControllerConfig with values from app settings
        """
        return cls(
            poll_interval=settings.GPJOBS_POLL_INTERVAL,
            status_max_attempts=settings.GPJOBS_STATUS_MAX_ATTEMPTS,
            request_timeout=settings.GPJOBS_REQUEST_TIMEOUT,
            # retry waits, observer timeout and grace period use defaults
        )
