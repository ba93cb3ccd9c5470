from .task import Task, TaskStatus, TERMINAL_STATUSES, EPOCH, utcnow
from .outcome import Outcome, OutcomeKind

__all__ = ["Task", "TaskStatus", "TERMINAL_STATUSES", "EPOCH", "utcnow", "Outcome", "OutcomeKind"]
