from typing import Optional


class TaskQueueError(Exception):
    """
    Base class for all errors raised by the task queue.
    """


class StoreUnavailable(TaskQueueError):
    """
    The task store could not be reached or refused the operation for a transient reason.

    Never retried internally; callers apply their own retry policy.
    """


class NotFound(TaskQueueError):
    """
    An operation referenced a task id that does not exist (or no longer exists).
    """

    def __init__(self, task_id: int):
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class ConflictFailed(TaskQueueError):
    """
    A conditional update lost its race: the row no longer matches the expected state.

    Expected under concurrency. The caller must abandon the attempt and re-poll.
    """

    def __init__(self, task_id: int, expected: str, actual: Optional[str] = None):
        message = f"Task {task_id} is no longer {expected}"
        if actual is not None:
            message += f" (now {actual})"
        super().__init__(message)
        self.task_id = task_id
        self.expected = expected
        self.actual = actual


class UnknownJobType(TaskQueueError):
    """
    No handler is registered for a task's job type.
    """

    def __init__(self, job_type: str):
        super().__init__(f"No handler registered for job type '{job_type}'")
        self.job_type = job_type


class ConfigurationError(TaskQueueError, ValueError):
    """
    Invalid queue configuration.
    """
