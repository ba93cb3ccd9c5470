from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from bgqueue.domain.task import Task, TaskStatus


class TaskStore(Protocol):
    async def create_tables(self) -> None:
        """Create the task table if it does not exist."""
        ...

    async def insert(self, job_type: str, payload: bytes, is_async: bool, priority: int = 0, now: Optional[datetime] = None) -> int:
        """Insert a PENDING task and return its store-assigned id."""
        ...

    async def get(self, task_id: int) -> Optional[Task]:
        """Retrieve a task by its ID."""
        ...

    async def claim_one(self, worker_id: str, now: datetime, is_async: Optional[bool] = None, order_by_priority: bool = False) -> Optional[Task]:
        """
        Atomically select the next eligible PENDING task and mark it CLAIMED by worker_id.

        Returns None when no task is eligible. Concurrent callers never receive the same task.
        """
        ...

    async def update_if(
        self,
        task_id: int,
        expected_status: TaskStatus,
        values: Dict[str, Any],
        expected_owner: Optional[str] = None,
        expected_claimed_at: Optional[datetime] = None,
    ) -> Task:
        """
        Apply values to a task only if it is still in expected_status (and, when given, still
        held by expected_owner since expected_claimed_at). Return the updated task.

        Raises NotFound if the task does not exist and ConflictFailed if a precondition fails.
        """
        ...

    async def delete_if(
        self,
        task_id: int,
        expected_status: TaskStatus,
        expected_owner: Optional[str] = None,
        expected_claimed_at: Optional[datetime] = None,
    ) -> None:
        """Delete a task under the same preconditions and errors as update_if."""
        ...

    async def find_stale_claims(self, cutoff: datetime, limit: int = 100) -> List[Task]:
        """List CLAIMED tasks claimed before cutoff, oldest claim first."""
        ...

    async def list_tasks(self, status: Optional[TaskStatus] = None, limit: int = 100, offset: int = 0) -> List[Task]:
        """List tasks, newest first, optionally filtered by status."""
        ...

    async def count(self, status: Optional[TaskStatus] = None) -> int:
        """Count tasks, optionally filtered by status."""
        ...

    async def delete(self, task_id: int) -> bool:
        """Delete a task by its ID regardless of status. Return True if a row was removed."""
        ...
