from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional

from sqlalchemy import (
    Column, String, DateTime, Boolean, JSON, ForeignKey, Integer, Text, case, delete, literal, null, update
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.future import select

from collection_scheduler.domain.task import Task, ScheduleWindow, CollectionSettings
from collection_scheduler.domain.entity import Entity
from collection_scheduler.domain.execution import ExecutionRecord, execution_record_adapter
from collection_scheduler.errors import PersistenceError
from collection_scheduler.storages.protocol import Storage, EntityRegistry

Base = declarative_base()


class TaskModel(Base):
    __tablename__ = 'tasks'

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False, unique=True)
    description = Column(String)
    is_active = Column(Boolean, default=True, index=True)
    owner_id = Column(String, nullable=False, index=True)
    schedule = Column(JSON, nullable=False)
    collection = Column(JSON, nullable=False)
    entity_ids = Column(JSON, nullable=False)
    last_run = Column(DateTime(timezone=True))
    next_run = Column(DateTime(timezone=True), index=True)
    created_at = Column(DateTime(timezone=True), nullable=False)


class ExecutionModel(Base):
    __tablename__ = 'executions'

    id = Column(Integer, primary_key=True, autoincrement=True)
    task_id = Column(String, ForeignKey('tasks.id', ondelete='CASCADE'), nullable=False, index=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    status = Column(String, nullable=False)
    items_collected = Column(Integer, nullable=False, default=0)
    entities_processed = Column(Integer, nullable=False, default=0)
    error = Column(Text)
    duration_ms = Column(Integer, nullable=False, default=0)


class EntityModel(Base):
    __tablename__ = 'entities'

    entity_id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    platform = Column(String, nullable=False)


def _to_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo, so everything is stored as UTC and re-tagged on read
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SqlAlchemyStorage(Storage, EntityRegistry):
    def __init__(self, db_url: str, echo: bool = False):
        self.engine = create_async_engine(db_url, echo=echo)
        self.async_session = sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self.async_session() as session:
                yield session
        except SQLAlchemyError as e:
            raise PersistenceError(f"Task store operation failed: {e}") from e

    async def create_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        await self.engine.dispose()

    async def create_task(self, task: Task) -> str:
        async with self._session() as session:
            db_task = TaskModel(
                id=task.id,
                is_active=task.is_active,
                last_run=_to_utc(task.last_run),
                next_run=_to_utc(task.next_run) if task.is_active else None,
                created_at=_to_utc(task.created_at),
            )
            self._apply_task(db_task, task)
            session.add(db_task)
            await session.commit()
            return task.id

    async def get_task(self, task_id: str) -> Optional[Task]:
        async with self._session() as session:
            result = await session.execute(select(TaskModel).filter_by(id=task_id))
            db_task = result.scalar_one_or_none()
            if db_task:
                return self._db_to_task(db_task)
            return None

    async def update_task(self, task: Task) -> bool:
        async with self._session() as session:
            result = await session.execute(select(TaskModel).filter_by(id=task.id))
            db_task = result.scalar_one_or_none()
            if db_task:
                self._apply_task(db_task, task)
                await session.commit()
                return True
            return False

    async def delete_task(self, task_id: str) -> bool:
        async with self._session() as session:
            result = await session.execute(select(TaskModel).filter_by(id=task_id))
            db_task = result.scalar_one_or_none()
            if db_task:
                await session.execute(delete(ExecutionModel).where(ExecutionModel.task_id == task_id))
                await session.delete(db_task)
                await session.commit()
                return True
            return False

    async def list_tasks(
        self,
        limit: int = 10,
        offset: int = 0,
        search: Optional[str] = None,
        owner_id: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> List[Task]:
        query = select(TaskModel)
        if search:
            query = query.where(TaskModel.name.ilike(f"%{search}%"))
        if owner_id:
            query = query.filter_by(owner_id=owner_id)
        if is_active is not None:
            query = query.filter_by(is_active=is_active)
        query = query.order_by(TaskModel.created_at.desc()).offset(offset).limit(limit)
        async with self._session() as session:
            result = await session.execute(query)
            return [self._db_to_task(db_task) for db_task in result.scalars()]

    async def list_due_tasks(self, now: datetime) -> List[Task]:
        async with self._session() as session:
            result = await session.execute(
                select(TaskModel)
                .where(TaskModel.is_active.is_(True))
                .where(TaskModel.next_run.is_not(None))
                .where(TaskModel.next_run <= _to_utc(now))
                .order_by(TaskModel.next_run)
            )
            return [self._db_to_task(db_task) for db_task in result.scalars()]

    async def set_active(self, task_id: str, is_active: bool, next_run: Optional[datetime]) -> bool:
        return await self._update_columns(
            task_id,
            is_active=is_active,
            next_run=_to_utc(next_run) if is_active else None,
        )

    async def set_next_run(self, task_id: str, next_run: Optional[datetime]) -> bool:
        return await self._update_columns(task_id, next_run=self._next_run_if_active(next_run))

    async def set_run_times(self, task_id: str, last_run: Optional[datetime], next_run: Optional[datetime]) -> bool:
        return await self._update_columns(
            task_id,
            last_run=_to_utc(last_run),
            next_run=self._next_run_if_active(next_run),
        )

    async def _update_columns(self, task_id: str, **values) -> bool:
        async with self._session() as session:
            result = await session.execute(
                update(TaskModel)
                .where(TaskModel.id == task_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            return result.rowcount > 0

    def _next_run_if_active(self, next_run: Optional[datetime]):
        # Evaluated against the row at write time, so a concurrent stop always wins
        if next_run is None:
            return None
        return case(
            (TaskModel.is_active.is_(True), literal(_to_utc(next_run), TaskModel.__table__.c.next_run.type)),
            else_=null(),
        )

    async def add_execution(self, task_id: str, record: ExecutionRecord) -> None:
        async with self._session() as session:
            session.add(ExecutionModel(
                task_id=task_id,
                timestamp=_to_utc(record.timestamp),
                status=record.status,
                items_collected=record.items_collected,
                entities_processed=record.entities_processed,
                error=record.error_message,
                duration_ms=record.duration_ms,
            ))
            await session.commit()

    async def list_executions(self, task_id: str, limit: int = 50) -> List[ExecutionRecord]:
        async with self._session() as session:
            result = await session.execute(
                select(ExecutionModel)
                .filter_by(task_id=task_id)
                .order_by(ExecutionModel.timestamp.desc(), ExecutionModel.id.desc())
                .limit(limit)
            )
            return [self._db_to_record(db_record) for db_record in result.scalars()]

    async def get_entity(self, entity_id: str) -> Optional[Entity]:
        async with self._session() as session:
            result = await session.execute(select(EntityModel).filter_by(entity_id=entity_id))
            db_entity = result.scalar_one_or_none()
            if db_entity:
                return Entity(entity_id=db_entity.entity_id, name=db_entity.name, platform=db_entity.platform)
            return None

    async def add_entity(self, entity: Entity) -> str:
        async with self._session() as session:
            await session.merge(EntityModel(entity_id=entity.entity_id, name=entity.name, platform=entity.platform))
            await session.commit()
            return entity.entity_id

    def _apply_task(self, db_task: TaskModel, task: Task) -> None:
        # Definition fields only; run state has its own targeted updates
        db_task.name = task.name
        db_task.description = task.description
        db_task.owner_id = task.owner_id
        db_task.schedule = task.schedule.model_dump(mode="json")
        db_task.collection = task.collection.model_dump(mode="json")
        db_task.entity_ids = list(task.entity_ids)

    def _db_to_task(self, db_task: TaskModel) -> Task:
        return Task(
            id=db_task.id,
            name=db_task.name,
            description=db_task.description,
            is_active=db_task.is_active,
            owner_id=db_task.owner_id,
            schedule=ScheduleWindow(**db_task.schedule),
            collection=CollectionSettings(**db_task.collection),
            entity_ids=db_task.entity_ids,
            last_run=_to_utc(db_task.last_run),
            next_run=_to_utc(db_task.next_run),
            created_at=_to_utc(db_task.created_at),
        )

    def _db_to_record(self, db_record: ExecutionModel) -> ExecutionRecord:
        return execution_record_adapter.validate_python({
            "status": db_record.status,
            "timestamp": _to_utc(db_record.timestamp),
            "items_collected": db_record.items_collected,
            "entities_processed": db_record.entities_processed,
            "error": db_record.error,
            "duration_ms": db_record.duration_ms,
        })


class InMemoryStorage(SqlAlchemyStorage):
    def __init__(self):
        super().__init__("sqlite+aiosqlite:///:memory:")
