from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from bgqueue.domain.task import EPOCH, TaskStatus, utcnow
from bgqueue.errors import ConflictFailed, NotFound, StoreUnavailable
from bgqueue.storages.sqlalchemy import InMemoryTaskStore, SqlAlchemyTaskStore


@pytest.mark.asyncio
async def test_insert_and_get(store: InMemoryTaskStore):
    task_id = await store.insert("resize_image", b"\x00\x01binary", is_async=False)

    task = await store.get(task_id)
    assert task is not None
    assert task.id == task_id
    assert task.job_type == "resize_image"
    assert task.payload == b"\x00\x01binary"
    assert task.is_async is False
    assert task.status == TaskStatus.PENDING
    assert task.retries == 0
    assert task.last_retry == EPOCH
    assert task.claimed_at is None
    assert task.claim_owner is None
    assert task.created_at.tzinfo is not None


@pytest.mark.asyncio
async def test_ids_increase(store: InMemoryTaskStore):
    ids = [await store.insert("t", b"", is_async=False) for _ in range(5)]
    assert ids == sorted(ids)
    assert len(set(ids)) == 5


@pytest.mark.asyncio
async def test_get_missing_task(store: InMemoryTaskStore):
    assert await store.get(12345) is None


@pytest.mark.asyncio
async def test_claim_one_marks_claimed(store: InMemoryTaskStore):
    task_id = await store.insert("t", b"x", is_async=False)
    now = utcnow()

    task = await store.claim_one("worker-a", now)
    assert task is not None
    assert task.id == task_id
    assert task.status == TaskStatus.CLAIMED
    assert task.claim_owner == "worker-a"
    assert task.claimed_at == now

    stored = await store.get(task_id)
    assert stored.status == TaskStatus.CLAIMED
    assert stored.claim_owner == "worker-a"

    # nothing else is eligible
    assert await store.claim_one("worker-b", utcnow()) is None


@pytest.mark.asyncio
async def test_claim_one_oldest_first(store: InMemoryTaskStore):
    base = utcnow() - timedelta(minutes=1)
    newer = await store.insert("t", b"newer", is_async=False, now=base + timedelta(seconds=2))
    older = await store.insert("t", b"older", is_async=False, now=base)

    first = await store.claim_one("w", utcnow())
    second = await store.claim_one("w", utcnow())
    assert first.id == older
    assert second.id == newer


@pytest.mark.asyncio
async def test_claim_one_breaks_ties_by_id(store: InMemoryTaskStore):
    created = utcnow() - timedelta(seconds=1)
    ids = [await store.insert("t", b"", is_async=False, now=created) for _ in range(3)]

    claimed = [(await store.claim_one("w", utcnow())).id for _ in range(3)]
    assert claimed == ids


@pytest.mark.asyncio
async def test_claim_one_skips_future_and_backed_off_tasks(store: InMemoryTaskStore):
    now = utcnow()
    await store.insert("t", b"future", is_async=False, now=now + timedelta(hours=1))
    delayed = await store.insert("t", b"delayed", is_async=False, now=now - timedelta(seconds=10))
    await store.update_if(delayed, TaskStatus.PENDING, {"next_eligible_at": now + timedelta(seconds=30)})

    assert await store.claim_one("w", now) is None

    task = await store.claim_one("w", now + timedelta(seconds=31))
    assert task is not None
    assert task.id == delayed


@pytest.mark.asyncio
async def test_claim_one_filters_by_async_flag(store: InMemoryTaskStore):
    sync_id = await store.insert("t", b"", is_async=False)
    async_id = await store.insert("t", b"", is_async=True)

    task = await store.claim_one("w", utcnow(), is_async=True)
    assert task.id == async_id
    task = await store.claim_one("w", utcnow(), is_async=True)
    assert task is None
    task = await store.claim_one("w", utcnow(), is_async=False)
    assert task.id == sync_id


@pytest.mark.asyncio
async def test_claim_one_priority_ordering(store: InMemoryTaskStore):
    base = utcnow() - timedelta(minutes=1)
    low = await store.insert("t", b"", is_async=False, priority=0, now=base)
    high = await store.insert("t", b"", is_async=False, priority=10, now=base + timedelta(seconds=1))

    fifo = await store.claim_one("w", utcnow())
    assert fifo.id == low

    await store.update_if(low, TaskStatus.CLAIMED, {"status": TaskStatus.PENDING, "claimed_at": None, "claim_owner": None})
    by_priority = await store.claim_one("w", utcnow(), order_by_priority=True)
    assert by_priority.id == high


@pytest.mark.asyncio
async def test_update_if_applies_values(store: InMemoryTaskStore):
    task_id = await store.insert("t", b"", is_async=False)
    claimed = await store.claim_one("w", utcnow())
    when = datetime(2030, 1, 1, tzinfo=timezone.utc)

    updated = await store.update_if(
        task_id,
        TaskStatus.CLAIMED,
        {"status": TaskStatus.PENDING, "retries": 1, "last_retry": when, "claimed_at": None, "claim_owner": None},
        expected_owner="w",
        expected_claimed_at=claimed.claimed_at,
    )
    assert updated.status == TaskStatus.PENDING
    assert updated.retries == 1
    assert updated.last_retry == when
    assert updated.claim_owner is None


@pytest.mark.asyncio
async def test_update_if_not_found(store: InMemoryTaskStore):
    with pytest.raises(NotFound):
        await store.update_if(999, TaskStatus.CLAIMED, {"status": TaskStatus.DONE})


@pytest.mark.asyncio
async def test_update_if_conflicts(store: InMemoryTaskStore):
    task_id = await store.insert("t", b"", is_async=False)

    with pytest.raises(ConflictFailed) as exc_info:
        await store.update_if(task_id, TaskStatus.CLAIMED, {"status": TaskStatus.DONE})
    assert exc_info.value.actual == TaskStatus.PENDING.value

    await store.claim_one("worker-a", utcnow())
    with pytest.raises(ConflictFailed):
        await store.update_if(task_id, TaskStatus.CLAIMED, {"status": TaskStatus.DONE}, expected_owner="worker-b")

    # the failed attempts changed nothing
    task = await store.get(task_id)
    assert task.status == TaskStatus.CLAIMED
    assert task.claim_owner == "worker-a"


@pytest.mark.asyncio
async def test_delete_if(store: InMemoryTaskStore):
    task_id = await store.insert("t", b"", is_async=False)
    with pytest.raises(ConflictFailed):
        await store.delete_if(task_id, TaskStatus.CLAIMED)

    await store.claim_one("w", utcnow())
    await store.delete_if(task_id, TaskStatus.CLAIMED, expected_owner="w")
    assert await store.get(task_id) is None

    with pytest.raises(NotFound):
        await store.delete_if(task_id, TaskStatus.CLAIMED)


@pytest.mark.asyncio
async def test_delete_if_checks_claim_time(store: InMemoryTaskStore):
    task_id = await store.insert("t", b"", is_async=False)
    claimed = await store.claim_one("w", utcnow())

    with pytest.raises(ConflictFailed):
        await store.delete_if(
            task_id, TaskStatus.CLAIMED, expected_owner="w",
            expected_claimed_at=claimed.claimed_at - timedelta(seconds=1),
        )
    assert await store.get(task_id) is not None

    await store.delete_if(task_id, TaskStatus.CLAIMED, expected_owner="w", expected_claimed_at=claimed.claimed_at)
    assert await store.get(task_id) is None


@pytest.mark.asyncio
async def test_find_stale_claims(store: InMemoryTaskStore):
    now = utcnow()
    old_id = await store.insert("t", b"", is_async=False, now=now - timedelta(minutes=20))
    fresh_id = await store.insert("t", b"", is_async=False, now=now - timedelta(minutes=10))
    await store.claim_one("w", now - timedelta(minutes=15))
    await store.claim_one("w", now)
    assert {old_id, fresh_id} == {t.id for t in await store.list_tasks(TaskStatus.CLAIMED)}

    stale = await store.find_stale_claims(now - timedelta(minutes=5))
    assert [t.id for t in stale] == [old_id]


@pytest.mark.asyncio
async def test_list_and_count(store: InMemoryTaskStore):
    ids = [await store.insert("t", f"{i}".encode(), is_async=False) for i in range(5)]
    await store.claim_one("w", utcnow())

    listed = await store.list_tasks(limit=3)
    assert [t.id for t in listed] == list(reversed(ids))[:3]

    assert await store.count() == 5
    assert await store.count(TaskStatus.PENDING) == 4
    assert await store.count(TaskStatus.CLAIMED) == 1
    pending = await store.list_tasks(TaskStatus.PENDING)
    assert ids[0] not in [t.id for t in pending]


@pytest.mark.asyncio
async def test_delete(store: InMemoryTaskStore):
    task_id = await store.insert("t", b"", is_async=False)
    assert await store.delete(task_id) is True
    assert await store.delete(task_id) is False


@pytest_asyncio.fixture(scope="function")
async def unreachable_store(tmp_path):
    store = SqlAlchemyTaskStore(f"sqlite+aiosqlite:///{tmp_path / 'missing' / 'queue.db'}")
    yield store
    await store.close()


@pytest.mark.asyncio
async def test_store_unavailable(unreachable_store: SqlAlchemyTaskStore):
    with pytest.raises(StoreUnavailable):
        await unreachable_store.insert("t", b"", is_async=False)
    with pytest.raises(StoreUnavailable):
        await unreachable_store.claim_one("w", utcnow())
