from datetime import datetime
from typing import List, Optional

from bgqueue.config import QueueConfig
from bgqueue.dispatcher import ExecutionDispatcher
from bgqueue.domain.outcome import Outcome
from bgqueue.domain.task import Task, TaskStatus
from bgqueue.enqueuer import Enqueuer, PayloadLike
from bgqueue.reaper import LifecycleReaper
from bgqueue.registry import Handler, HandlerRegistry
from bgqueue.retry import FinishHook, RetryManager
from bgqueue.scheduler import ClaimScheduler
from bgqueue.storages.protocol import TaskStore
from bgqueue.worker import Worker


class TaskQueue:
    """
    Producer, worker and registration interfaces over a single task store.
    """

    def __init__(
        self,
        store: TaskStore,
        config: Optional[QueueConfig] = None,
        registry: Optional[HandlerRegistry] = None,
        on_finish: Optional[FinishHook] = None,
    ):
        self.store: TaskStore = store
        self.config: QueueConfig = config or QueueConfig()
        self.registry: HandlerRegistry = registry or HandlerRegistry()
        self.enqueuer: Enqueuer = Enqueuer(store)
        self.scheduler: ClaimScheduler = ClaimScheduler(store, self.config)
        self.retry_manager: RetryManager = RetryManager(store, self.config, on_finish=on_finish)
        self.dispatcher: ExecutionDispatcher = self.make_dispatcher()
        self.reaper: LifecycleReaper = LifecycleReaper(store, self.retry_manager, self.config)

    async def start(self):
        await self.store.create_tables()

    def make_dispatcher(self) -> ExecutionDispatcher:
        return ExecutionDispatcher(
            self.registry,
            self.config.execution_timeout,
            on_complete=self._record_async_outcome,
        )

    async def _record_async_outcome(self, task: Task, outcome: Outcome) -> None:
        await self.retry_manager.report(
            task.id,
            outcome,
            worker_id=task.claim_owner,
            expected_claimed_at=task.claimed_at,
        )

    def register_handler(self, job_type: str, handler: Handler) -> None:
        self.registry.register_handler(job_type, handler)

    def handler(self, job_type: str):
        return self.registry.handler(job_type)

    async def enqueue(self, job_type: str, payload: PayloadLike, is_async: bool = False, priority: int = 0) -> int:
        return await self.enqueuer.enqueue(job_type, payload, is_async=is_async, priority=priority)

    async def claim_next(self, worker_id: str, is_async: Optional[bool] = None, now: Optional[datetime] = None) -> Optional[Task]:
        return await self.scheduler.claim_next(worker_id, is_async=is_async, now=now)

    async def dispatch(self, task: Task) -> Outcome:
        return await self.dispatcher.dispatch(task)

    async def report_outcome(self, task_id: int, outcome: Outcome, worker_id: Optional[str] = None, now: Optional[datetime] = None) -> Optional[Task]:
        return await self.retry_manager.report(task_id, outcome, worker_id=worker_id, now=now)

    async def get_task(self, task_id: int) -> Optional[Task]:
        return await self.store.get(task_id)

    async def list_tasks(self, status: Optional[TaskStatus] = None, limit: int = 100, offset: int = 0) -> List[Task]:
        return await self.store.list_tasks(status=status, limit=limit, offset=offset)

    async def count(self, status: Optional[TaskStatus] = None) -> int:
        return await self.store.count(status)

    async def failed_task_count(self) -> int:
        return await self.store.count(TaskStatus.FAILED_TERMINAL)

    def worker(self, worker_id: Optional[str] = None, is_async: Optional[bool] = None) -> Worker:
        """
        Create a worker with its own dispatcher, so in-flight limits apply per worker.
        """
        return Worker(
            self.scheduler,
            self.make_dispatcher(),
            self.retry_manager,
            self.config,
            worker_id=worker_id,
            is_async=is_async,
        )
