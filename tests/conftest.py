import pytest
import pytest_asyncio

from bgqueue.config import QueueConfig
from bgqueue.queue import TaskQueue
from bgqueue.storages.sqlalchemy import InMemoryTaskStore


@pytest.fixture(scope="function")
def config() -> QueueConfig:
    # zero backoff so a failed task is immediately claimable again
    return QueueConfig(
        max_retries=3,
        backoff_base=0.0,
        backoff_max_delay=0.0,
        claim_timeout=5.0,
        execution_timeout=0.5,
        reaper_interval=0.05,
        poll_interval=0.01,
        poll_jitter=0.0,
    )


@pytest_asyncio.fixture(scope="function")
async def store():
    store = InMemoryTaskStore()
    await store.create_tables()
    yield store
    await store.close()


@pytest_asyncio.fixture(scope="function")
async def queue(store: InMemoryTaskStore, config: QueueConfig):
    queue = TaskQueue(store, config)
    await queue.start()
    yield queue
