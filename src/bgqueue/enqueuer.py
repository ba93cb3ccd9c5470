from datetime import datetime
from typing import Optional, Union

from bgqueue.log import get_logger
from bgqueue.storages.protocol import TaskStore

logger = get_logger("enqueuer")

PayloadLike = Union[bytes, bytearray, memoryview]


class Enqueuer:
    """
    Producer side of the queue: validates and inserts new PENDING tasks.
    """

    def __init__(self, store: TaskStore):
        self.store: TaskStore = store

    async def enqueue(self, job_type: str, payload: PayloadLike, is_async: bool = False, priority: int = 0, now: Optional[datetime] = None) -> int:
        """
        Insert a new task.

        Args:
            job_type (str): Tag selecting the handler. Must be non-empty.
            payload (bytes): Opaque job data, stored as-is.
            is_async (bool): Dispatch on the fire-and-forget path.
            priority (int): Ordering hint, only honoured when priority ordering is enabled.

        Returns:
            int: The store-assigned task id.

        Raises:
            ValueError: If job_type is empty.
            TypeError: If payload is not bytes-like.
            StoreUnavailable: If the store cannot be reached.
        """
        if not isinstance(job_type, str) or not job_type.strip():
            raise ValueError("job_type must be a non-empty string")
        if not isinstance(payload, (bytes, bytearray, memoryview)):
            raise TypeError(f"payload must be bytes-like, got {type(payload).__name__}")

        data = bytes(payload)
        task_id = await self.store.insert(job_type, data, bool(is_async), priority=priority, now=now)
        logger.debug("Enqueued task %s (job_type=%s, is_async=%s, %d bytes)", task_id, job_type, is_async, len(data))
        return task_id
