import asyncio
from datetime import datetime
from typing import Optional

from bgqueue.config import QueueConfig
from bgqueue.domain.outcome import Outcome
from bgqueue.domain.task import utcnow
from bgqueue.errors import ConflictFailed, NotFound, StoreUnavailable
from bgqueue.log import get_logger
from bgqueue.retry import RetryManager
from bgqueue.storages.protocol import TaskStore

logger = get_logger("reaper")


class LifecycleReaper:
    """
    Returns tasks whose claim outlived ``claim_timeout`` to the queue.

    A stale claim is treated as a failed attempt, so it goes through the same retry
    bookkeeping as a handler failure and eventually reaches FAILED_TERMINAL if the task keeps
    killing its workers.
    """

    def __init__(self, store: TaskStore, retry_manager: RetryManager, config: QueueConfig, batch_size: int = 100):
        self.store: TaskStore = store
        self.retry_manager: RetryManager = retry_manager
        self.config: QueueConfig = config
        self.batch_size: int = batch_size
        self.reaper_task: Optional[asyncio.Task] = None
        self.is_running: bool = False

    async def reap_once(self, now: Optional[datetime] = None) -> int:
        """
        Recover every stale claim visible right now.

        Returns:
            int: Number of tasks taken back from their workers.
        """
        now = now or utcnow()
        cutoff = now - self.config.claim_timeout_delta
        recovered = 0
        while True:
            stale = await self.store.find_stale_claims(cutoff, limit=self.batch_size)
            batch_recovered = 0
            for task in stale:
                outcome = Outcome.failure(
                    f"Claim by {task.claim_owner} timed out after {self.config.claim_timeout}s"
                )
                try:
                    # guarded by the observed claim: a worker that reports first wins
                    await self.retry_manager.report(
                        task.id,
                        outcome,
                        worker_id=task.claim_owner,
                        expected_claimed_at=task.claimed_at,
                        now=now,
                    )
                except (ConflictFailed, NotFound):
                    logger.debug("Task %s finished before it could be reaped", task.id)
                    continue
                recovered += 1
                batch_recovered += 1
                logger.info("Recovered task %s from worker %s", task.id, task.claim_owner)
            if len(stale) < self.batch_size or batch_recovered == 0:
                break
        return recovered

    async def start(self):
        """
        Start reaping on a fixed interval.
        """
        if not self.is_running:
            self.is_running = True
            self.reaper_task = asyncio.create_task(self._reaper_loop())
            logger.info("Reaper started (interval %ss, claim timeout %ss)", self.config.reaper_interval, self.config.claim_timeout)

    async def stop(self):
        """
        Stop the reaper loop.
        """
        if self.is_running:
            self.is_running = False
            if self.reaper_task:
                self.reaper_task.cancel()
                try:
                    await self.reaper_task
                except asyncio.CancelledError:
                    pass
                self.reaper_task = None
            logger.info("Reaper stopped")

    async def _reaper_loop(self):
        while self.is_running:
            try:
                await self.reap_once()
            except StoreUnavailable as e:
                logger.warning("Reaper scan skipped, store unavailable: %s", e)
            except Exception:
                logger.exception("Reaper scan failed")
            await asyncio.sleep(self.config.reaper_interval)
