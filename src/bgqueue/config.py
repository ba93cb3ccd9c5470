from datetime import timedelta

from pydantic import BaseModel, Field, model_validator

from bgqueue.errors import ConfigurationError


class QueueConfig(BaseModel):
    """
    Tunables for claiming, retrying and recovering tasks.

    All durations are in seconds. Defaults are chosen so that a synchronous handler always
    times out well before its claim can be reaped.
    """

    max_retries: int = Field(default=5, ge=0, description="Failed attempts that are retried before a task is marked FAILED_TERMINAL")
    backoff_base: float = Field(default=1.0, ge=0, description="Delay before the first retry")
    backoff_max_delay: float = Field(default=300.0, ge=0, description="Upper bound on any retry delay")
    backoff_jitter: bool = Field(default=False, description="Randomise retry delays by +/-25%")
    claim_timeout: float = Field(default=300.0, gt=0, description="Claims older than this are returned to PENDING by the reaper")
    execution_timeout: float = Field(default=60.0, gt=0, description="Maximum run time of a synchronous handler")
    reaper_interval: float = Field(default=30.0, gt=0, description="Seconds between reaper scans")
    poll_interval: float = Field(default=1.0, ge=0, description="Sleep between empty polls")
    poll_jitter: float = Field(default=0.1, ge=0, description="Random +/- added to each poll sleep")
    max_async_in_flight: int = Field(default=100, ge=1, description="Async executions a worker runs before it stops claiming")
    delete_on_success: bool = Field(default=False, description="Delete finished rows instead of marking them DONE")
    order_by_priority: bool = Field(default=False, description="Claim higher priority rows first, then oldest first")

    @model_validator(mode="after")
    def check_timeouts(self) -> "QueueConfig":
        if self.backoff_max_delay < self.backoff_base:
            raise ConfigurationError(
                f"backoff_max_delay ({self.backoff_max_delay}s) must be >= backoff_base ({self.backoff_base}s)"
            )
        if self.execution_timeout >= self.claim_timeout:
            raise ConfigurationError(
                f"execution_timeout ({self.execution_timeout}s) must be < claim_timeout ({self.claim_timeout}s), "
                "otherwise the reaper can recover tasks that are still running"
            )
        return self

    @property
    def claim_timeout_delta(self) -> timedelta:
        return timedelta(seconds=self.claim_timeout)
