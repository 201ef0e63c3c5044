import asyncio
import logging
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from collection_scheduler.backends.base import JobQueue
from collection_scheduler.clock import Clock, utcnow
from collection_scheduler.retry import Sleep
from collection_scheduler.storages.protocol import Storage

logger = logging.getLogger(__name__)


class TriggerStatus(BaseModel):
    is_running: bool
    last_tick: Optional[datetime] = None
    error_count: int = 0
    next_check_in: Optional[float] = None


class TriggerLoop:
    """
    Periodically finds due tasks and queues them.

    Each tick enqueues every active task whose next run has passed, unless the queue
    already holds a waiting or active job for it. After ``max_consecutive_errors``
    failed ticks in a row the loop stops itself and must be started again explicitly.
    """

    def __init__(
        self,
        storage: Storage,
        queue: JobQueue,
        interval: float = 60.0,
        max_consecutive_errors: int = 5,
        clock: Clock = utcnow,
        sleep: Sleep = asyncio.sleep,
    ):
        self.storage = storage
        self.queue = queue
        self.interval = interval
        self.max_consecutive_errors = max_consecutive_errors
        self._clock = clock
        self._sleep = sleep
        self._running: bool = False
        self._loop_task: Optional[asyncio.Task] = None
        self.last_tick: Optional[datetime] = None
        self.error_count: int = 0

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> bool:
        """
        Start ticking. Returns False if the loop was already running.
        """
        if self._running:
            logger.warning("Trigger loop is already running")
            return False

        logger.info("Starting trigger loop (checking every %ss)", self.interval)
        self._running = True
        self.error_count = 0
        await self._safe_tick()
        if self._running:
            self._loop_task = asyncio.create_task(self._loop())
        return True

    async def stop(self) -> bool:
        """
        Stop ticking. Returns False if the loop was not running.
        """
        if not self._running:
            logger.warning("Trigger loop is not running")
            return False

        self._running = False
        loop_task, self._loop_task = self._loop_task, None
        if loop_task is not None and loop_task is not asyncio.current_task():
            loop_task.cancel()
            try:
                await loop_task
            except asyncio.CancelledError:
                pass
        logger.info("Trigger loop stopped")
        return True

    async def tick(self) -> int:
        """
        Queue every due task that has no pending job. Returns the number of jobs added.
        """
        now = self._clock()
        due_tasks = await self.storage.list_due_tasks(now)
        enqueued = 0
        for task in due_tasks:
            if await self.queue.has_pending(task.id):
                logger.debug("Task %s already queued, skipping", task.id)
                continue
            await self.queue.enqueue(task.id, 0)
            enqueued += 1

        self.last_tick = self._clock()
        self.error_count = 0
        if enqueued:
            logger.info("Trigger check queued %d of %d due task(s)", enqueued, len(due_tasks))
        return enqueued

    async def trigger_manual_check(self) -> int:
        """
        Run one check now, counting a failure like a scheduled tick would.
        """
        logger.info("Triggering manual check")
        try:
            return await self.tick()
        except Exception as e:
            await self._record_failure(e)
            raise

    def status(self) -> TriggerStatus:
        status = TriggerStatus(
            is_running=self._running,
            last_tick=self.last_tick,
            error_count=self.error_count,
        )
        if self._running and self.last_tick is not None:
            elapsed = (self._clock() - self.last_tick).total_seconds()
            status.next_check_in = max(0.0, self.interval - elapsed)
        return status

    async def _loop(self) -> None:
        while self._running:
            await self._sleep(self.interval)
            if not self._running:
                break
            await self._safe_tick()

    async def _safe_tick(self) -> None:
        try:
            await self.tick()
        except Exception as e:
            await self._record_failure(e)

    async def _record_failure(self, error: Exception) -> None:
        self.error_count += 1
        logger.error(
            "Error in trigger check (attempt %d/%d): %s",
            self.error_count, self.max_consecutive_errors, error,
        )
        if self.error_count >= self.max_consecutive_errors and self._running:
            logger.error("Too many consecutive errors (%d), stopping trigger loop", self.error_count)
            await self.stop()
