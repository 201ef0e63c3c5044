import asyncio
import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from collection_scheduler.backends.base import JobQueue, QueueStatus
from collection_scheduler.backends.in_memory import InMemoryJobQueue
from collection_scheduler.clock import Clock, utcnow
from collection_scheduler.config import Settings
from collection_scheduler.domain.execution import ExecutionRecord
from collection_scheduler.domain.task import Task
from collection_scheduler.errors import ConfigurationError, NotFoundError, QueueError
from collection_scheduler.retry import RetryPolicy, Sleep
from collection_scheduler.runner import TaskRunner
from collection_scheduler.schedule import next_run, validate_window
from collection_scheduler.sources.cache import TTLCache
from collection_scheduler.sources.ea import EaApiClient
from collection_scheduler.sources.protocol import DataSource
from collection_scheduler.storages.protocol import Storage, EntityRegistry
from collection_scheduler.storages.sqlalchemy import SqlAlchemyStorage
from collection_scheduler.trigger import TriggerLoop, TriggerStatus

logger = logging.getLogger(__name__)


class ServiceHealth(BaseModel):
    trigger: TriggerStatus
    queue: Optional[QueueStatus] = None
    queue_healthy: bool
    trigger_healthy: bool
    overall: bool


class SchedulerService:
    """
    Entry points for administrative callers: task lifecycle, manual runs, history and health.
    """

    def __init__(
        self,
        storage: Storage,
        registry: EntityRegistry,
        source: DataSource,
        queue: JobQueue,
        settings: Optional[Settings] = None,
        clock: Clock = utcnow,
        sleep: Sleep = asyncio.sleep,
    ):
        self.settings = settings or Settings()
        self.storage = storage
        self.queue = queue
        self._clock = clock
        self.runner = TaskRunner(
            storage,
            registry,
            source,
            queue=queue if self.settings.preschedule_next_run else None,
            clock=clock,
            sleep=sleep,
        )
        self.queue.set_handler(self.runner.run)
        self.trigger = TriggerLoop(
            storage,
            queue,
            interval=self.settings.trigger_interval,
            max_consecutive_errors=self.settings.trigger_max_consecutive_errors,
            clock=clock,
            sleep=sleep,
        )

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "SchedulerService":
        """
        Wire the default stack: SQL storage, EA API client and the in-process job queue.
        """
        settings = settings or Settings()
        storage = SqlAlchemyStorage(settings.database_url, echo=settings.db_echo)
        source = EaApiClient(
            base_url=settings.api_base_url,
            cache=TTLCache(ttl=settings.cache_ttl),
            timeout=settings.api_timeout,
        )
        queue = InMemoryJobQueue(
            retry_policy=RetryPolicy(
                max_retries=settings.job_max_retries,
                base_delay=settings.job_retry_base_delay,
                multiplier=settings.job_retry_multiplier,
            ),
            concurrency=settings.queue_concurrency,
            job_timeout=settings.job_timeout,
            keep_completed=settings.keep_completed_jobs,
            keep_failed=settings.keep_failed_jobs,
        )
        return cls(storage, storage, source, queue, settings=settings)

    async def startup(self) -> None:
        if isinstance(self.storage, SqlAlchemyStorage):
            await self.storage.create_tables()
        await self.queue.start()
        if not await self.trigger.start():
            logger.warning("Trigger loop was already running at startup")
        logger.info("Scheduler service started")

    async def shutdown(self) -> None:
        logger.info("Shutting down scheduler service...")
        await self.trigger.stop()
        await self.queue.stop()
        logger.info("Scheduler service stopped")

    async def _get_task(self, task_id: str) -> Task:
        task = await self.storage.get_task(task_id)
        if task is None:
            raise NotFoundError(f"Task {task_id} not found")
        return task

    async def create_task(self, task: Task) -> Task:
        validate_window(task.schedule)
        task.next_run = next_run(self._clock(), task.schedule) if task.is_active else None
        await self.storage.create_task(task)
        logger.info("Created task %s (%s), next run %s", task.id, task.name, task.next_run)
        return task

    async def update_task(self, task_id: str, changes: Dict[str, Any]) -> Task:
        """
        Apply field changes to a task's definition. A schedule change recomputes the next run.

        ``is_active`` cannot be changed here; use ``start_task`` and ``stop_task``.
        """
        if "is_active" in changes or "next_run" in changes or "last_run" in changes:
            raise ConfigurationError("Run state is managed by start_task, stop_task and the runner")
        existing = await self._get_task(task_id)
        data = existing.model_dump()
        data.update(changes)
        data["id"] = existing.id
        try:
            task = Task.model_validate(data)
        except ValueError as e:
            raise ConfigurationError(f"Invalid task update: {e}") from e
        if "schedule" in changes:
            validate_window(task.schedule)

        if not await self.storage.update_task(task):
            raise NotFoundError(f"Task {task_id} not found")
        if "schedule" in changes:
            await self.storage.set_next_run(task_id, next_run(self._clock(), task.schedule))
            await self.queue.discard_waiting(task_id)
        return await self._get_task(task_id)

    async def delete_task(self, task_id: str) -> None:
        await self.queue.discard_waiting(task_id)
        if not await self.storage.delete_task(task_id):
            raise NotFoundError(f"Task {task_id} not found")
        logger.info("Deleted task %s and its history", task_id)

    async def start_task(self, task_id: str) -> Task:
        task = await self._get_task(task_id)
        validate_window(task.schedule)
        if not await self.storage.set_active(task_id, True, next_run(self._clock(), task.schedule)):
            raise NotFoundError(f"Task {task_id} not found")
        task = await self._get_task(task_id)
        logger.info("Started task %s, next run %s", task_id, task.next_run)
        return task

    async def stop_task(self, task_id: str) -> Task:
        """
        Deactivate a task. A job already running for it is left to finish.
        """
        if not await self.storage.set_active(task_id, False, None):
            raise NotFoundError(f"Task {task_id} not found")
        await self.queue.discard_waiting(task_id)
        logger.info("Stopped task %s", task_id)
        return await self._get_task(task_id)

    async def run_now(self, task_id: str) -> ExecutionRecord:
        await self._get_task(task_id)
        record = await self.runner.run(task_id)
        if record is None:
            raise NotFoundError(f"Task {task_id} not found or inactive")
        return record

    async def history(self, task_id: str, limit: int = 50) -> List[ExecutionRecord]:
        await self._get_task(task_id)
        return await self.storage.list_executions(task_id, limit)

    async def list_tasks(
        self,
        page: int = 1,
        limit: int = 10,
        search: Optional[str] = None,
        owner_id: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> List[Task]:
        offset = (max(page, 1) - 1) * limit
        return await self.storage.list_tasks(limit, offset, search=search, owner_id=owner_id, is_active=is_active)

    async def health(self) -> ServiceHealth:
        trigger_status = self.trigger.status()
        trigger_healthy = trigger_status.is_running and trigger_status.error_count < self.trigger.max_consecutive_errors
        try:
            queue_status: Optional[QueueStatus] = await self.queue.status()
            queue_healthy = True
        except QueueError as e:
            logger.error("Error getting job queue status: %s", e)
            queue_status = None
            queue_healthy = False
        return ServiceHealth(
            trigger=trigger_status,
            queue=queue_status,
            queue_healthy=queue_healthy,
            trigger_healthy=trigger_healthy,
            overall=queue_healthy and trigger_healthy,
        )
