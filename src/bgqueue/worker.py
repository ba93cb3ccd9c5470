import asyncio
import os
import socket
import uuid
from typing import Optional

from bgqueue.config import QueueConfig
from bgqueue.dispatcher import ExecutionDispatcher
from bgqueue.domain.outcome import OutcomeKind
from bgqueue.domain.task import Task
from bgqueue.errors import ConflictFailed, NotFound, StoreUnavailable
from bgqueue.log import get_logger
from bgqueue.retry import RetryManager
from bgqueue.scheduler import ClaimScheduler

logger = get_logger("worker")

# cap on the sleep between retries after the store becomes unavailable
MAX_STORE_RETRY_DELAY: float = 30.0


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class Worker:
    """
    Claims tasks and runs them until stopped.

    A worker keeps no authoritative state: everything it needs to resume after a crash is
    in the store, and anything it leaves CLAIMED is recovered by the reaper.
    """

    def __init__(
        self,
        scheduler: ClaimScheduler,
        dispatcher: ExecutionDispatcher,
        retry_manager: RetryManager,
        config: QueueConfig,
        worker_id: Optional[str] = None,
        is_async: Optional[bool] = None,
    ):
        self.scheduler: ClaimScheduler = scheduler
        self.dispatcher: ExecutionDispatcher = dispatcher
        self.retry_manager: RetryManager = retry_manager
        self.config: QueueConfig = config
        self.worker_id: str = worker_id or default_worker_id()
        # None: any task; True/False: only async or only sync tasks
        self.is_async: Optional[bool] = is_async
        self.worker_task: Optional[asyncio.Task] = None
        self.is_running: bool = False
        self._stop_event: asyncio.Event = asyncio.Event()

    async def run_once(self) -> bool:
        """
        Claim and run a single task.

        Returns:
            bool: False if no task was eligible.
        """
        task = await self.scheduler.claim_next(self.worker_id, is_async=self.is_async)
        if task is None:
            return False
        await self._process(task)
        return True

    async def run_pending(self, max_tasks: Optional[int] = None) -> int:
        """
        Run eligible tasks until none are left (or max_tasks have been started).

        Async tasks are only started here, not awaited; call ``dispatcher.drain()`` to wait
        for them.

        Returns:
            int: How many tasks were claimed and dispatched.
        """
        ran = 0
        while max_tasks is None or ran < max_tasks:
            await self._wait_for_capacity()
            if not await self.run_once():
                break
            ran += 1
        return ran

    async def _process(self, task: Task) -> None:
        outcome = await self.dispatcher.dispatch(task)
        if outcome.kind == OutcomeKind.IN_PROGRESS:
            return
        try:
            await self.retry_manager.report(
                task.id,
                outcome,
                worker_id=self.worker_id,
                expected_claimed_at=task.claimed_at,
            )
        except ConflictFailed:
            logger.debug("Task %s was recovered before worker %s finished it, dropping result", task.id, self.worker_id)
        except NotFound:
            logger.warning("Task %s disappeared while worker %s was running it", task.id, self.worker_id)

    async def start(self):
        """
        Start the background claim loop.
        """
        if not self.is_running:
            self.is_running = True
            self._stop_event = asyncio.Event()
            self.worker_task = asyncio.create_task(self._worker_loop())
            logger.info("Worker %s started", self.worker_id)

    async def stop(self, cancel_in_flight: bool = False):
        """
        Stop claiming. The task being run synchronously, if any, is allowed to finish.

        Args:
            cancel_in_flight (bool): Cancel running async executions instead of waiting for
                them. Cancelled tasks stay CLAIMED until the reaper recovers them.
        """
        if self.is_running:
            self.is_running = False
            self._stop_event.set()
            if self.worker_task:
                await self.worker_task
                self.worker_task = None
            if cancel_in_flight:
                await self.dispatcher.cancel_all()
            else:
                await self.dispatcher.drain()
            logger.info("Worker %s stopped", self.worker_id)

    async def _worker_loop(self):
        failures = 0
        while not self._stop_event.is_set():
            try:
                await self._wait_for_capacity()
                task = await self.scheduler.wait_for_task(self.worker_id, self._stop_event, is_async=self.is_async)
                if task is None:
                    break
                await self._process(task)
                failures = 0
            except StoreUnavailable as e:
                failures += 1
                delay = min(0.5 * (2 ** min(failures - 1, 16)), MAX_STORE_RETRY_DELAY)
                logger.warning("Worker %s: store unavailable (attempt %d), retrying in %.1fs: %s", self.worker_id, failures, delay, e)
                await self._sleep(delay)
            except Exception:
                logger.exception("Worker %s: unexpected error in claim loop", self.worker_id)
                await self._sleep(max(self.config.poll_interval, 0.01))

    async def _wait_for_capacity(self) -> None:
        while self.dispatcher.in_flight >= self.config.max_async_in_flight and not self._stop_event.is_set():
            await self._sleep(max(self.config.poll_interval, 0.01))

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass
