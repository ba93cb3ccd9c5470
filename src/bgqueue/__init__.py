"""
Background Task Queue

A durable task queue built on a single task table, with concurrent workers, retries and
crash recovery.

Core Concepts:

Task:
    A Task is one row of the task table: an opaque payload, a job type naming the handler
    that performs it, and a flag choosing synchronous or fire-and-forget execution.
    Its status moves PENDING -> CLAIMED -> DONE, back to PENDING for a retry, or to
    FAILED_TERMINAL once its retries are exhausted.

Claim:
    A worker takes ownership of a PENDING task with a single conditional update on the
    task's status. Exactly one worker wins each task.

Outcome:
    What happened when a claimed task's handler ran. The retry manager turns outcomes into
    status changes, applying exponential backoff between attempts.

Reaper:
    Returns tasks claimed by workers that died (or stalled past the claim timeout) to the
    queue, counting the lost attempt as a failure.
"""

from .config import QueueConfig
from .domain import EPOCH, Outcome, OutcomeKind, Task, TaskStatus
from .errors import ConflictFailed, ConfigurationError, NotFound, StoreUnavailable, TaskQueueError, UnknownJobType
from .log import configure_logging, get_logger
from .queue import TaskQueue
from .registry import HandlerRegistry
from .storages import InMemoryTaskStore, SqlAlchemyTaskStore, TaskStore
from .worker import Worker

__all__ = [
    "QueueConfig",
    "EPOCH",
    "Outcome",
    "OutcomeKind",
    "Task",
    "TaskStatus",
    "ConflictFailed",
    "ConfigurationError",
    "NotFound",
    "StoreUnavailable",
    "TaskQueueError",
    "UnknownJobType",
    "configure_logging",
    "get_logger",
    "TaskQueue",
    "HandlerRegistry",
    "InMemoryTaskStore",
    "SqlAlchemyTaskStore",
    "TaskStore",
    "Worker",
]
