import inspect
import random
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from bgqueue.config import QueueConfig
from bgqueue.domain.outcome import Outcome, OutcomeKind
from bgqueue.domain.task import Task, TaskStatus, utcnow
from bgqueue.errors import ConflictFailed, NotFound
from bgqueue.log import get_logger
from bgqueue.storages.protocol import TaskStore

logger = get_logger("retry")

# Invoked with the task id after an outcome has been recorded for a task that left CLAIMED.
FinishHook = Callable[[int], Union[None, Awaitable[None]]]

_CLEARED_CLAIM: Dict[str, Any] = {"claimed_at": None, "claim_owner": None}


class RetryManager:
    """
    Applies dispatch outcomes to the store: success, retry with backoff, or terminal failure.

    Every write is conditioned on the task still being CLAIMED (by the reporting worker when
    one is named), so a late report never overwrites a task that was recovered or re-claimed.
    """

    def __init__(self, store: TaskStore, config: QueueConfig, on_finish: Optional[FinishHook] = None):
        self.store: TaskStore = store
        self.config: QueueConfig = config
        self.on_finish: Optional[FinishHook] = on_finish

    def backoff(self, retries: int) -> timedelta:
        """
        Delay before attempt number ``retries + 1``: ``min(base * 2^(retries-1), max_delay)``.
        """
        if retries < 1:
            return timedelta(0)
        delay = min(self.config.backoff_base * (2.0 ** min(retries - 1, 64)), self.config.backoff_max_delay)
        if self.config.backoff_jitter:
            jitter_range = delay * 0.25
            delay = max(0.0, delay + random.uniform(-jitter_range, jitter_range))
        return timedelta(seconds=delay)

    async def report(
        self,
        task_id: int,
        outcome: Outcome,
        worker_id: Optional[str] = None,
        expected_claimed_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> Optional[Task]:
        """
        Record the outcome of an attempt.

        Args:
            task_id (int): The claimed task.
            outcome (Outcome): What the dispatcher observed.
            worker_id (Optional[str]): If given, the task must still be claimed by this worker.
            expected_claimed_at (Optional[datetime]): If given, the claim must be this exact one.
            now (Optional[datetime]): Override for the current time.

        Returns:
            Optional[Task]: The task after the update; None when the outcome left the row
            untouched (IN_PROGRESS) or the row was deleted on success.

        Raises:
            NotFound: If the task does not exist.
            ConflictFailed: If the task is no longer held by this claim.
        """
        if outcome.kind == OutcomeKind.IN_PROGRESS:
            return None

        now = now or utcnow()
        task = await self.store.get(task_id)
        if task is None:
            raise NotFound(task_id)
        if task.status != TaskStatus.CLAIMED:
            logger.debug("Ignoring %s for task %s: status is %s", outcome.kind.value, task_id, task.status.value)
            raise ConflictFailed(task_id, TaskStatus.CLAIMED.value, task.status.value)

        claimed_at = expected_claimed_at or task.claimed_at
        try:
            if outcome.kind == OutcomeKind.SUCCESS:
                updated = await self._complete(task, worker_id, claimed_at)
            elif outcome.kind == OutcomeKind.UNKNOWN_JOB_TYPE:
                updated = await self._fail_unknown(task, outcome, worker_id, claimed_at)
            elif outcome.is_failure:
                updated = await self._fail(task, outcome, worker_id, claimed_at, now)
            else:
                raise ValueError(f"Unsupported outcome kind: {outcome.kind}")
        except ConflictFailed:
            logger.debug("Task %s changed hands before its %s could be recorded", task_id, outcome.kind.value)
            raise

        await self._finish(task_id)
        return updated

    async def _complete(self, task: Task, worker_id: Optional[str], claimed_at: Optional[datetime]) -> Optional[Task]:
        if self.config.delete_on_success:
            await self.store.delete_if(
                task.id, TaskStatus.CLAIMED, expected_owner=worker_id, expected_claimed_at=claimed_at
            )
            logger.debug("Task %s done and deleted", task.id)
            return None
        updated = await self.store.update_if(
            task.id,
            TaskStatus.CLAIMED,
            {"status": TaskStatus.DONE, **_CLEARED_CLAIM},
            expected_owner=worker_id,
            expected_claimed_at=claimed_at,
        )
        logger.debug("Task %s done", task.id)
        return updated

    async def _fail_unknown(self, task: Task, outcome: Outcome, worker_id: Optional[str], claimed_at: Optional[datetime]) -> Task:
        # retrying cannot help; leave retries and last_retry untouched
        updated = await self.store.update_if(
            task.id,
            TaskStatus.CLAIMED,
            {"status": TaskStatus.FAILED_TERMINAL, "last_error": outcome.error, **_CLEARED_CLAIM},
            expected_owner=worker_id,
            expected_claimed_at=claimed_at,
        )
        logger.error("Task %s failed permanently: unknown job type '%s'", task.id, task.job_type)
        return updated

    async def _fail(self, task: Task, outcome: Outcome, worker_id: Optional[str], claimed_at: Optional[datetime], now: datetime) -> Task:
        error = outcome.error or outcome.kind.value
        if task.retries + 1 > self.config.max_retries:
            updated = await self.store.update_if(
                task.id,
                TaskStatus.CLAIMED,
                {
                    "status": TaskStatus.FAILED_TERMINAL,
                    "last_retry": now,
                    "last_error": error,
                    "next_eligible_at": None,
                    **_CLEARED_CLAIM,
                },
                expected_owner=worker_id,
                expected_claimed_at=claimed_at,
            )
            logger.error(
                "Task %s (%s) failed permanently after %d retries: %s",
                task.id, task.job_type, task.retries, error,
            )
            return updated

        retries = task.retries + 1
        delay = self.backoff(retries)
        updated = await self.store.update_if(
            task.id,
            TaskStatus.CLAIMED,
            {
                "status": TaskStatus.PENDING,
                "retries": retries,
                "last_retry": now,
                "next_eligible_at": now + delay,
                "last_error": error,
                **_CLEARED_CLAIM,
            },
            expected_owner=worker_id,
            expected_claimed_at=claimed_at,
        )
        logger.warning(
            "Task %s (%s) failed, retry %d/%d in %.1fs: %s",
            task.id, task.job_type, retries, self.config.max_retries, delay.total_seconds(), error,
        )
        return updated

    async def _finish(self, task_id: int) -> None:
        if self.on_finish is None:
            return
        try:
            result = self.on_finish(task_id)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("on_finish hook failed for task %s", task_id)
