import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional

from sqlalchemy import BigInteger, Boolean, Column, DateTime, Index, Integer, LargeBinary, String, Text, delete, func, or_, update
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.future import select
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from bgqueue.domain.task import EPOCH, Task, TaskStatus, ensure_utc, utcnow
from bgqueue.errors import ConflictFailed, NotFound, StoreUnavailable
from bgqueue.log import get_logger
from bgqueue.storages.protocol import TaskStore

logger = get_logger("store")

Base = declarative_base()


class TaskModel(Base):
    __tablename__ = '_background_tasks'
    __table_args__ = (
        Index('ix_background_tasks_claim', 'status', 'created_at', 'id'),
    )

    id = Column(BigInteger().with_variant(Integer, 'sqlite'), primary_key=True, autoincrement=True)
    job_type = Column(Text, nullable=False)
    is_async = Column(Boolean, nullable=False)
    # only consulted when priority ordering is enabled
    priority = Column(Integer, nullable=False, default=0)
    payload = Column(LargeBinary, nullable=False)
    retries = Column(Integer, nullable=False, default=0)
    last_retry = Column(DateTime(timezone=True), nullable=False, default=EPOCH)
    created_at = Column(DateTime(timezone=True), nullable=False)
    status = Column(String(32), nullable=False, default=TaskStatus.PENDING.value)
    claimed_at = Column(DateTime(timezone=True))
    claim_owner = Column(String(255))
    next_eligible_at = Column(DateTime(timezone=True))
    last_error = Column(Text)


class SqlAlchemyTaskStore(TaskStore):
    # candidates tried per claim_one call before giving up on a heavily contended queue
    claim_attempts: int = 5

    def __init__(self, db_url: str, **engine_kwargs: Any):
        self.engine = create_async_engine(db_url, **engine_kwargs)
        self.async_session = sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self._skip_locked: bool = self.engine.dialect.name == 'postgresql'
        self._lock: Optional[asyncio.Lock] = None

    async def create_tables(self):
        async with self._guard():
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        await self.engine.dispose()

    @asynccontextmanager
    async def _guard(self) -> AsyncIterator[None]:
        """
        Serialise access when required and translate connectivity failures into StoreUnavailable.
        """
        if self._lock is not None:
            await self._lock.acquire()
        try:
            yield
        except (OperationalError, InterfaceError) as e:
            logger.warning("Task store unavailable: %s", e)
            raise StoreUnavailable(str(e)) from e
        except DBAPIError as e:
            if e.connection_invalidated:
                logger.warning("Task store connection lost: %s", e)
                raise StoreUnavailable(str(e)) from e
            raise
        except OSError as e:
            logger.warning("Task store unreachable: %s", e)
            raise StoreUnavailable(str(e)) from e
        finally:
            if self._lock is not None:
                self._lock.release()

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async with self._guard():
            async with self.async_session() as session:
                yield session

    async def insert(self, job_type: str, payload: bytes, is_async: bool, priority: int = 0, now: Optional[datetime] = None) -> int:
        async with self._session() as session:
            db_task = TaskModel(
                job_type=job_type,
                is_async=is_async,
                priority=priority,
                payload=payload,
                retries=0,
                last_retry=EPOCH,
                created_at=ensure_utc(now) if now else utcnow(),
                status=TaskStatus.PENDING.value,
            )
            session.add(db_task)
            await session.flush()
            task_id = db_task.id
            await session.commit()
            return task_id

    async def get(self, task_id: int) -> Optional[Task]:
        async with self._session() as session:
            result = await session.execute(select(TaskModel).filter_by(id=task_id))
            db_task = result.scalar_one_or_none()
            if db_task:
                return self._db_to_task(db_task)
            return None

    async def claim_one(self, worker_id: str, now: datetime, is_async: Optional[bool] = None, order_by_priority: bool = False) -> Optional[Task]:
        now = ensure_utc(now)
        async with self._session() as session:
            for _ in range(self.claim_attempts):
                result = await session.execute(self._eligible(now, is_async, order_by_priority).limit(1))
                candidate = result.scalar_one_or_none()
                if candidate is None:
                    await session.rollback()
                    return None

                claimed = await session.execute(
                    update(TaskModel)
                    .where(TaskModel.id == candidate.id, TaskModel.status == TaskStatus.PENDING.value)
                    .values(status=TaskStatus.CLAIMED.value, claimed_at=now, claim_owner=worker_id)
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount == 1:
                    await session.commit()
                    return self._db_to_task(candidate).model_copy(update={
                        'status': TaskStatus.CLAIMED,
                        'claimed_at': now,
                        'claim_owner': worker_id,
                    })

                # another worker claimed it between our select and update
                logger.debug("Lost claim race for task %s, trying next candidate", candidate.id)
                await session.rollback()
                session.expunge_all()
            return None

    def _eligible(self, now: datetime, is_async: Optional[bool], order_by_priority: bool):
        stmt = select(TaskModel).where(
            TaskModel.status == TaskStatus.PENDING.value,
            TaskModel.created_at <= now,
            or_(TaskModel.next_eligible_at.is_(None), TaskModel.next_eligible_at <= now),
        )
        if is_async is not None:
            stmt = stmt.where(TaskModel.is_async == is_async)
        if order_by_priority:
            stmt = stmt.order_by(TaskModel.priority.desc(), TaskModel.created_at.asc(), TaskModel.id.asc())
        else:
            stmt = stmt.order_by(TaskModel.created_at.asc(), TaskModel.id.asc())
        if self._skip_locked:
            stmt = stmt.with_for_update(skip_locked=True)
        return stmt

    async def update_if(
        self,
        task_id: int,
        expected_status: TaskStatus,
        values: Dict[str, Any],
        expected_owner: Optional[str] = None,
        expected_claimed_at: Optional[datetime] = None,
    ) -> Task:
        conditions = self._preconditions(task_id, expected_status, expected_owner, expected_claimed_at)
        async with self._session() as session:
            result = await session.execute(
                update(TaskModel)
                .where(*conditions)
                .values(**self._to_columns(values))
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                await self._raise_for_missed(session, task_id, expected_status)
            await session.commit()
            db_task = await session.get(TaskModel, task_id, populate_existing=True)
            if db_task is None:
                raise NotFound(task_id)
            return self._db_to_task(db_task)

    async def delete_if(
        self,
        task_id: int,
        expected_status: TaskStatus,
        expected_owner: Optional[str] = None,
        expected_claimed_at: Optional[datetime] = None,
    ) -> None:
        conditions = self._preconditions(task_id, expected_status, expected_owner, expected_claimed_at)
        async with self._session() as session:
            result = await session.execute(
                delete(TaskModel).where(*conditions).execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                await self._raise_for_missed(session, task_id, expected_status)
            await session.commit()

    def _preconditions(self, task_id: int, expected_status: TaskStatus, expected_owner: Optional[str], expected_claimed_at: Optional[datetime]) -> list:
        conditions = [TaskModel.id == task_id, TaskModel.status == expected_status.value]
        if expected_owner is not None:
            conditions.append(TaskModel.claim_owner == expected_owner)
        if expected_claimed_at is not None:
            conditions.append(TaskModel.claimed_at == ensure_utc(expected_claimed_at))
        return conditions

    async def _raise_for_missed(self, session: AsyncSession, task_id: int, expected_status: TaskStatus) -> None:
        current = await session.get(TaskModel, task_id, populate_existing=True)
        if current is None:
            raise NotFound(task_id)
        raise ConflictFailed(task_id, expected_status.value, current.status)

    async def find_stale_claims(self, cutoff: datetime, limit: int = 100) -> List[Task]:
        async with self._session() as session:
            result = await session.execute(
                select(TaskModel)
                .where(TaskModel.status == TaskStatus.CLAIMED.value, TaskModel.claimed_at < ensure_utc(cutoff))
                .order_by(TaskModel.claimed_at.asc(), TaskModel.id.asc())
                .limit(limit)
            )
            return [self._db_to_task(db_task) for db_task in result.scalars()]

    async def list_tasks(self, status: Optional[TaskStatus] = None, limit: int = 100, offset: int = 0) -> List[Task]:
        async with self._session() as session:
            stmt = select(TaskModel)
            if status is not None:
                stmt = stmt.filter_by(status=status.value)
            result = await session.execute(
                stmt.order_by(TaskModel.created_at.desc(), TaskModel.id.desc()).offset(offset).limit(limit)
            )
            return [self._db_to_task(db_task) for db_task in result.scalars()]

    async def count(self, status: Optional[TaskStatus] = None) -> int:
        async with self._session() as session:
            stmt = select(func.count()).select_from(TaskModel)
            if status is not None:
                stmt = stmt.where(TaskModel.status == status.value)
            result = await session.execute(stmt)
            return result.scalar_one()

    async def delete(self, task_id: int) -> bool:
        async with self._session() as session:
            result = await session.execute(select(TaskModel).filter_by(id=task_id))
            db_task = result.scalar_one_or_none()
            if db_task:
                await session.delete(db_task)
                await session.commit()
                return True
            return False

    def _to_columns(self, values: Dict[str, Any]) -> Dict[str, Any]:
        columns: Dict[str, Any] = {}
        for key, value in values.items():
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, datetime):
                value = ensure_utc(value)
            columns[key] = value
        return columns

    def _db_to_task(self, db_task: TaskModel) -> Task:
        return Task(
            id=db_task.id,
            job_type=db_task.job_type,
            is_async=db_task.is_async,
            payload=bytes(db_task.payload),
            priority=db_task.priority,
            retries=db_task.retries,
            last_retry=db_task.last_retry,
            created_at=db_task.created_at,
            status=TaskStatus(db_task.status),
            claimed_at=db_task.claimed_at,
            claim_owner=db_task.claim_owner,
            next_eligible_at=db_task.next_eligible_at,
            last_error=db_task.last_error,
        )


class InMemoryTaskStore(SqlAlchemyTaskStore):
    """
    SQLite in-memory store. Every session shares one connection, so sessions are serialised
    to keep one session's rollback from discarding another's uncommitted claim.
    Data does not survive the process.
    """

    def __init__(self):
        super().__init__("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
        self._lock = asyncio.Lock()
