import asyncio
import logging
import time
from datetime import datetime
from functools import partial
from typing import Dict, Optional, Tuple

from collection_scheduler.backends.base import JobQueue
from collection_scheduler.clock import Clock, utcnow
from collection_scheduler.domain.execution import ExecutionRecord, SuccessRecord, PartialRecord, ErrorRecord
from collection_scheduler.domain.task import CollectionSettings, Task
from collection_scheduler.errors import ExternalFetchError, QueueError
from collection_scheduler.retry import RetryPolicy, Sleep, retry_async
from collection_scheduler.schedule import next_run
from collection_scheduler.sources.protocol import DataSource
from collection_scheduler.storages.protocol import Storage, EntityRegistry

logger = logging.getLogger(__name__)


def fetch_retry_policy(settings: CollectionSettings) -> RetryPolicy:
    return RetryPolicy(
        max_retries=settings.retry_attempts,
        base_delay=settings.retry_delay_minutes * 60,
        multiplier=2.0,
    )


class TaskRunner:
    """
    Executes one task's collection work end to end.

    Entities are fetched strictly in order, one at a time. Runs of the same task are
    serialized within one event loop, so a manual run and a queued job never overlap.
    Each loop gets its own locks, since an asyncio.Lock cannot be shared between loops.
    """

    def __init__(
        self,
        storage: Storage,
        registry: EntityRegistry,
        source: DataSource,
        queue: Optional[JobQueue] = None,
        clock: Clock = utcnow,
        sleep: Sleep = asyncio.sleep,
    ):
        self.storage = storage
        self.registry = registry
        self.source = source
        self.queue = queue
        self._clock = clock
        self._sleep = sleep
        self._locks: Dict[Tuple[asyncio.AbstractEventLoop, str], asyncio.Lock] = {}
        self._lock_users: Dict[Tuple[asyncio.AbstractEventLoop, str], int] = {}

    async def run(self, task_id: str) -> Optional[ExecutionRecord]:
        """
        Run the task once and persist the outcome.

        Returns:
            The stored execution record, or None when the task is missing or inactive.

        Raises:
            PersistenceError: If the store fails; the queue retries the job.
        """
        key = (asyncio.get_running_loop(), task_id)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._lock_users[key] = self._lock_users.get(key, 0) + 1
        try:
            if lock.locked():
                logger.info("Task %s is already running, waiting for the current run to finish", task_id)
            async with lock:
                return await self._run(task_id)
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] == 0:
                del self._lock_users[key]
                del self._locks[key]

    async def _run(self, task_id: str) -> Optional[ExecutionRecord]:
        task = await self.storage.get_task(task_id)
        if task is None:
            logger.warning("Task %s not found, skipping run", task_id)
            return None
        if not task.is_active:
            logger.info("Task %s is inactive, skipping run", task_id)
            return None

        started = time.monotonic()
        collected = 0
        processed = 0
        fetched = 0
        failure: Optional[str] = None
        policy = fetch_retry_policy(task.collection)

        for entity_id in task.entity_ids:
            entity = await self.registry.get_entity(entity_id)
            if entity is None:
                logger.warning("Entity %s not found, skipping", entity_id)
                continue

            processed += 1
            try:
                items = await retry_async(
                    partial(self.source.fetch_items, entity_id, task.collection.platform, task.collection.task_type),
                    policy,
                    retry_on=(ExternalFetchError,),
                    sleep=self._sleep,
                    description=f"Fetch for entity {entity_id}",
                )
            except ExternalFetchError as e:
                failure = f"Entity {entity_id}: {e}"
                logger.warning("Task %s aborted at entity %s: %s", task_id, entity_id, e)
                break
            collected += len(items)
            fetched += 1

        now = self._clock()
        record = self._build_record(now, collected, processed, fetched, failure, started)
        await self._complete(task, now, record)
        logger.info(
            "Task %s finished with status %s: %d items from %d entities in %dms",
            task_id, record.status, record.items_collected, record.entities_processed, record.duration_ms,
        )
        return record

    def _build_record(
        self,
        now: datetime,
        collected: int,
        processed: int,
        fetched: int,
        failure: Optional[str],
        started: float,
    ) -> ExecutionRecord:
        fields = dict(
            timestamp=now,
            items_collected=collected,
            entities_processed=processed,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        if failure is None:
            return SuccessRecord(**fields)
        if fetched > 0:
            return PartialRecord(error=failure, **fields)
        return ErrorRecord(error=failure, **fields)

    async def _complete(self, task: Task, now: datetime, record: ExecutionRecord) -> None:
        # Re-read the task: it may have been stopped or deleted while the run was in flight
        latest = await self.storage.get_task(task.id)
        if latest is None:
            logger.warning("Task %s was deleted during its run, discarding the outcome", task.id)
            return

        await self.storage.add_execution(task.id, record)
        upcoming = next_run(now, latest.schedule) if latest.is_active else None
        # The store drops next_run if a stop lands after the re-read
        await self.storage.set_run_times(task.id, now, upcoming)

        if upcoming is not None and self.queue is not None:
            await self._preschedule(task.id, now, upcoming)

    async def _preschedule(self, task_id: str, now: datetime, upcoming: datetime) -> None:
        delay = max(0.0, (upcoming - now).total_seconds())
        try:
            await self.queue.enqueue(task_id, delay)
        except QueueError as e:
            # The trigger loop still picks the task up once it is due
            logger.warning("Could not pre-schedule next run of task %s: %s", task_id, e)
