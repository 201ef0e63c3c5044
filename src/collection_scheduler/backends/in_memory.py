import asyncio
import logging
from collections import deque
from datetime import timedelta
from typing import Deque, Dict, List, Optional

from collection_scheduler.backends.base import JobQueue, QueueStatus
from collection_scheduler.clock import Clock, utcnow
from collection_scheduler.domain.execution import ExecutionRecord
from collection_scheduler.domain.job import QueueJob, JobStatus
from collection_scheduler.errors import QueueError
from collection_scheduler.retry import RetryPolicy, Sleep, retry_async

logger = logging.getLogger(__name__)


class InMemoryJobQueue(JobQueue):
    """
    Job queue running on the current asyncio event loop.
    Jobs do not survive a restart; use CeleryJobQueue when durability matters.
    """

    def __init__(
        self,
        retry_policy: RetryPolicy = RetryPolicy(),
        concurrency: int = 4,
        job_timeout: Optional[float] = 600.0,
        keep_completed: int = 10,
        keep_failed: int = 20,
        clock: Clock = utcnow,
        sleep: Sleep = asyncio.sleep,
    ):
        super().__init__(retry_policy, clock)
        self.job_timeout = job_timeout
        self.is_running: bool = False
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(concurrency)
        self._jobs: Dict[str, QueueJob] = {}
        self._job_futures: Dict[str, asyncio.Task] = {}
        self._completed: Deque[QueueJob] = deque(maxlen=keep_completed)
        self._failed: Deque[QueueJob] = deque(maxlen=keep_failed)

    async def start(self):
        if not self.is_running:
            self.is_running = True
            logger.info("InMemoryJobQueue started.")

    async def stop(self):
        """
        Stop the queue, cancelling waiting and active jobs.
        """
        if self.is_running:
            self.is_running = False
            futures = list(self._job_futures.values())
            for future in futures:
                if not future.done():
                    future.cancel()
            await asyncio.gather(*futures, return_exceptions=True)
            self._job_futures.clear()
            logger.info("InMemoryJobQueue stopped.")

    async def enqueue(self, task_id: str, delay: float = 0) -> QueueJob:
        if not self.is_running:
            raise QueueError("Queue is not running")
        self._require_handler()

        for job in self._jobs.values():
            if job.task_id == task_id and job.status == JobStatus.WAITING:
                logger.info("Task %s already has waiting job %s, not adding another", task_id, job.id)
                return job

        delay = max(0.0, delay)
        job = QueueJob(task_id=task_id, run_at=self._clock() + timedelta(seconds=delay), created_at=self._clock())
        self._jobs[job.id] = job
        self._job_futures[job.id] = asyncio.create_task(self._process(job, delay))
        logger.info("Added job %s for task %s (delay %.1fs)", job.id, task_id, delay)
        return job

    async def has_pending(self, task_id: str) -> bool:
        return any(job.task_id == task_id for job in self._jobs.values())

    async def discard_waiting(self, task_id: str) -> int:
        discarded = [
            job for job in self._jobs.values()
            if job.task_id == task_id and job.status == JobStatus.WAITING
        ]
        for job in discarded:
            del self._jobs[job.id]
            future = self._job_futures.pop(job.id, None)
            if future and not future.done():
                future.cancel()
        if discarded:
            logger.info("Discarded %d waiting job(s) for task %s", len(discarded), task_id)
        return len(discarded)

    async def status(self) -> QueueStatus:
        waiting = [job for job in self._jobs.values() if job.status == JobStatus.WAITING]
        active = [job for job in self._jobs.values() if job.status == JobStatus.ACTIVE]
        completed = list(reversed(self._completed))
        failed = list(reversed(self._failed))
        return QueueStatus(
            waiting=len(waiting),
            active=len(active),
            completed=len(completed),
            failed=len(failed),
            recent_jobs={
                "waiting": waiting[:5],
                "active": active,
                "completed": completed[:5],
                "failed": failed[:5],
            },
        )

    async def clear(self) -> None:
        for task_id in {job.task_id for job in self._jobs.values()}:
            await self.discard_waiting(task_id)
        self._completed.clear()
        self._failed.clear()
        logger.info("Job queue cleared")

    async def list_jobs(self, task_id: str) -> List[QueueJob]:
        """
        All known jobs for a task: pending ones first, then retained finished ones, newest first.
        """
        pending = [job for job in self._jobs.values() if job.task_id == task_id]
        finished = sorted(
            (job for job in list(self._completed) + list(self._failed) if job.task_id == task_id),
            key=lambda job: job.end_time,
            reverse=True,
        )
        return pending + finished

    async def _process(self, job: QueueJob, delay: float):
        try:
            if delay > 0:
                await self._sleep(delay)
            async with self._semaphore:
                await self._run(job)
        except asyncio.CancelledError:
            if self._jobs.pop(job.id, None) is not None:
                job.set_failed("Job cancelled", self._clock())
                self._failed.append(job)
            raise
        finally:
            self._job_futures.pop(job.id, None)

    async def _run(self, job: QueueJob):
        handler = self._require_handler()
        job.set_status(JobStatus.ACTIVE, self._clock())

        async def attempt() -> Optional[ExecutionRecord]:
            job.attempts_made += 1
            return await asyncio.wait_for(handler(job.task_id), timeout=self.job_timeout)

        try:
            result = await retry_async(
                attempt,
                self.retry_policy,
                sleep=self._sleep,
                description=f"Job {job.id} for task {job.task_id}",
            )
        except asyncio.TimeoutError:
            job.set_failed(f"Job timed out after {self.job_timeout}s", self._clock())
            self._finish(job)
            logger.error("Job %s for task %s failed terminally: timed out", job.id, job.task_id)
        except Exception as e:
            job.set_failed(str(e) or type(e).__name__, self._clock())
            self._finish(job)
            logger.error("Job %s for task %s failed terminally: %s", job.id, job.task_id, job.error)
        else:
            job.set_result(result, self._clock())
            self._finish(job)
            logger.info("Job %s for task %s completed", job.id, job.task_id)

    def _finish(self, job: QueueJob):
        self._jobs.pop(job.id, None)
        if job.status == JobStatus.COMPLETED:
            self._completed.append(job)
        else:
            self._failed.append(job)
