import asyncio
import inspect
from typing import Awaitable, Callable, Optional, Set

from bgqueue.domain.outcome import Outcome
from bgqueue.domain.task import Task
from bgqueue.errors import ConflictFailed, UnknownJobType
from bgqueue.log import get_logger
from bgqueue.registry import Handler, HandlerRegistry

logger = get_logger("dispatcher")

# Called by the async path once a handler has finished: (task, outcome).
CompletionCallback = Callable[[Task, Outcome], Awaitable[None]]


def describe_error(error: BaseException) -> str:
    message = str(error)
    return f"{type(error).__name__}: {message}" if message else type(error).__name__


class ExecutionDispatcher:
    """
    Runs a claimed task's handler and turns whatever happens into an Outcome.

    Synchronous tasks are awaited here under the execution timeout. Asynchronous tasks are
    started on their own asyncio task and report back through the completion callback.
    Handler exceptions never escape this class.
    """

    def __init__(self, registry: HandlerRegistry, execution_timeout: float, on_complete: Optional[CompletionCallback] = None):
        self.registry: HandlerRegistry = registry
        self.execution_timeout: float = execution_timeout
        self.on_complete: Optional[CompletionCallback] = on_complete
        self._in_flight: Set[asyncio.Task] = set()

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def dispatch(self, task: Task) -> Outcome:
        try:
            handler = self.registry.resolve(task.job_type)
        except UnknownJobType:
            logger.error("Task %s has unknown job type '%s'", task.id, task.job_type)
            return Outcome.unknown_job_type(task.job_type)

        if task.is_async:
            future = asyncio.create_task(self._run_async(task, handler))
            self._in_flight.add(future)
            future.add_done_callback(self._in_flight.discard)
            return Outcome.in_progress()

        return await self._run_sync(task, handler)

    async def _run_sync(self, task: Task, handler: Handler) -> Outcome:
        try:
            await asyncio.wait_for(self._invoke(handler, task.payload), timeout=self.execution_timeout)
        except asyncio.TimeoutError:
            logger.warning("Task %s timed out after %ss", task.id, self.execution_timeout)
            return Outcome.timeout(self.execution_timeout)
        except Exception as e:
            logger.debug("Task %s handler raised", task.id, exc_info=True)
            return Outcome.failure(describe_error(e))
        return Outcome.success()

    async def _run_async(self, task: Task, handler: Handler) -> None:
        try:
            await self._invoke(handler, task.payload)
            outcome = Outcome.success()
        except asyncio.CancelledError:
            # left CLAIMED; the reaper recovers it once the claim times out
            logger.info("Async execution of task %s cancelled", task.id)
            raise
        except Exception as e:
            logger.debug("Task %s handler raised", task.id, exc_info=True)
            outcome = Outcome.failure(describe_error(e))

        if self.on_complete is None:
            return
        try:
            await self.on_complete(task, outcome)
        except ConflictFailed:
            logger.debug("Async task %s was taken over before it reported", task.id)
        except Exception:
            logger.exception("Failed to record outcome of async task %s", task.id)

    async def _invoke(self, handler: Handler, payload: bytes) -> None:
        if inspect.iscoroutinefunction(handler):
            await handler(payload)
            return
        # plain functions run on a thread so the timeout can fire; the thread itself is not interrupted
        result = await asyncio.to_thread(handler, payload)
        if inspect.isawaitable(result):
            await result

    async def drain(self) -> None:
        """Wait for every async execution started so far."""
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def cancel_all(self) -> None:
        for future in list(self._in_flight):
            if not future.done():
                future.cancel()
        await asyncio.gather(*list(self._in_flight), return_exceptions=True)
        self._in_flight.clear()
