from enum import Enum
from typing import Optional

from pydantic import BaseModel


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    UNKNOWN_JOB_TYPE = "unknown_job_type"
    IN_PROGRESS = "in_progress"


class Outcome(BaseModel):
    """
    Result of dispatching a task, consumed by the retry manager.
    """
    kind: OutcomeKind
    error: Optional[str] = None

    @classmethod
    def success(cls) -> "Outcome":
        return cls(kind=OutcomeKind.SUCCESS)

    @classmethod
    def failure(cls, error: str) -> "Outcome":
        return cls(kind=OutcomeKind.FAILURE, error=error)

    @classmethod
    def timeout(cls, seconds: float) -> "Outcome":
        return cls(kind=OutcomeKind.TIMEOUT, error=f"Handler did not finish within {seconds}s")

    @classmethod
    def unknown_job_type(cls, job_type: str) -> "Outcome":
        return cls(kind=OutcomeKind.UNKNOWN_JOB_TYPE, error=f"No handler registered for job type '{job_type}'")

    @classmethod
    def in_progress(cls) -> "Outcome":
        return cls(kind=OutcomeKind.IN_PROGRESS)

    @property
    def is_failure(self) -> bool:
        """Timeouts count as failures; unknown job types do not, they are never retried."""
        return self.kind in (OutcomeKind.FAILURE, OutcomeKind.TIMEOUT)
