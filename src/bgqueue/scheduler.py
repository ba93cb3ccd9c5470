import asyncio
import random
from datetime import datetime
from typing import Optional

from bgqueue.config import QueueConfig
from bgqueue.domain.task import Task, utcnow
from bgqueue.log import get_logger
from bgqueue.storages.protocol import TaskStore

logger = get_logger("scheduler")


class ClaimScheduler:
    """
    Hands out the oldest eligible task to a worker, one claim at a time.

    Mutual exclusion comes entirely from the store's conditional claim; the scheduler keeps
    no state of its own, so any number of schedulers may share a store.
    """

    def __init__(self, store: TaskStore, config: QueueConfig):
        self.store: TaskStore = store
        self.config: QueueConfig = config

    async def claim_next(self, worker_id: str, is_async: Optional[bool] = None, now: Optional[datetime] = None) -> Optional[Task]:
        task = await self.store.claim_one(
            worker_id,
            now or utcnow(),
            is_async=is_async,
            order_by_priority=self.config.order_by_priority,
        )
        if task is not None:
            logger.debug("Worker %s claimed task %s (%s)", worker_id, task.id, task.job_type)
        return task

    def poll_delay(self) -> float:
        jitter = random.uniform(-self.config.poll_jitter, self.config.poll_jitter)
        return max(0.0, self.config.poll_interval + jitter)

    async def wait_for_task(self, worker_id: str, stop_event: asyncio.Event, is_async: Optional[bool] = None) -> Optional[Task]:
        """
        Poll until a task is claimed or stop_event is set, sleeping between empty polls.
        """
        while not stop_event.is_set():
            task = await self.claim_next(worker_id, is_async=is_async)
            if task is not None:
                return task
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_delay())
            except asyncio.TimeoutError:
                pass
        return None
