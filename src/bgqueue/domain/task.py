from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Attach UTC to naive datetimes; convert aware ones to UTC.

    SQLite drops offsets on the way in, so every timestamp read back from it is naive.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    CLAIMED = "CLAIMED"
    DONE = "DONE"
    FAILED_TERMINAL = "FAILED_TERMINAL"


TERMINAL_STATUSES = frozenset({TaskStatus.DONE, TaskStatus.FAILED_TERMINAL})


class Task(BaseModel):
    """
    A single row of the background task table.
    """
    id: int = Field(..., description="Store-assigned, monotonically increasing identifier")
    job_type: str = Field(..., min_length=1, description="Tag selecting the registered handler")
    is_async: bool = Field(..., description="Dispatch on a fire-and-forget path instead of awaiting the handler")
    payload: bytes = Field(..., description="Opaque job data, never interpreted by the queue")
    priority: int = Field(default=0, description="Only used for ordering when priority ordering is enabled")
    retries: int = Field(default=0, ge=0, description="Failed attempts so far")
    last_retry: datetime = Field(default=EPOCH, description="Time of the most recent failed attempt; EPOCH if none")
    created_at: datetime = Field(default_factory=utcnow, description="Insertion time, the primary claim ordering key")
    status: TaskStatus = TaskStatus.PENDING
    claimed_at: Optional[datetime] = None
    claim_owner: Optional[str] = None
    next_eligible_at: Optional[datetime] = Field(None, description="Earliest time a retried task may be claimed again")
    last_error: Optional[str] = None

    @field_validator("last_retry", "created_at", "claimed_at", "next_eligible_at")
    def check_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
