import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from celery import Celery
from kombu.exceptions import OperationalError

from collection_scheduler.backends.base import JobQueue, QueueStatus
from collection_scheduler.clock import Clock, utcnow
from collection_scheduler.config import Settings
from collection_scheduler.domain.job import QueueJob, JobStatus
from collection_scheduler.errors import QueueError
from collection_scheduler.retry import RetryPolicy

logger = logging.getLogger(__name__)


def create_celery_app(settings: Settings, name: str = "collection_scheduler") -> Celery:
    app = Celery(name, broker=settings.celery_broker_url, backend=settings.celery_result_backend)
    app.conf.update(
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        task_time_limit=settings.job_timeout,
    )
    return app


class CeleryJobQueue(JobQueue):
    """
    Durable job queue backed by a Celery broker.

    Workers are started separately with the celery CLI, e.g.
    ``celery -A myapp.celery_app worker``. The in-flight check inspects the workers,
    so jobs still sitting in the broker are not seen by ``has_pending``.

    Each job runs on its own event loop via ``asyncio.run``. The runner keeps its per-task
    lock per loop, so under a threaded pool two jobs for one task are not serialized by it;
    separate workers rely on ``has_pending`` instead.
    """
    app: Celery

    def __init__(self, celery_app: Celery, retry_policy: RetryPolicy = RetryPolicy(), clock: Clock = utcnow):
        super().__init__(retry_policy, clock)
        self.app = celery_app
        queue = self

        @self.app.task(bind=True, name="collection_scheduler.run_task", max_retries=retry_policy.max_retries)
        def run_task(celery_task, task_id: str):
            handler = queue._require_handler()
            try:
                record = asyncio.run(handler(task_id))
            except Exception as e:
                retries = celery_task.request.retries
                if retries >= queue.retry_policy.max_retries:
                    logger.error("Job %s for task %s failed terminally: %s", celery_task.request.id, task_id, e)
                    raise
                countdown = queue.retry_policy.delay_for(retries + 1)
                logger.warning("Job %s for task %s failed (%s), retrying in %.1fs", celery_task.request.id, task_id, e, countdown)
                raise celery_task.retry(exc=e, countdown=countdown)
            return record.model_dump(mode="json") if record is not None else None

        self._celery_task = run_task

    async def enqueue(self, task_id: str, delay: float = 0) -> QueueJob:
        delay = max(0.0, delay)
        try:
            result = await asyncio.to_thread(
                self._celery_task.apply_async, args=[task_id], countdown=delay or None
            )
        except OperationalError as e:
            raise QueueError(f"Could not enqueue task {task_id}: {e}") from e
        logger.info("Added job %s for task %s (delay %.1fs)", result.id, task_id, delay)
        now = self._clock()
        return QueueJob(id=result.id, task_id=task_id, run_at=now + timedelta(seconds=delay), created_at=now)

    async def has_pending(self, task_id: str) -> bool:
        return any(_task_id_of(request) == task_id for request in await self._pending_requests())

    async def discard_waiting(self, task_id: str) -> int:
        inspect = self.app.control.inspect()
        waiting = self._requests(await self._inspect(inspect.reserved)) + self._requests(await self._inspect(inspect.scheduled))
        job_ids = [request["id"] for request in waiting if _task_id_of(request) == task_id]
        for job_id in job_ids:
            await asyncio.to_thread(self.app.control.revoke, job_id)
        if job_ids:
            logger.info("Revoked %d waiting job(s) for task %s", len(job_ids), task_id)
        return len(job_ids)

    async def status(self) -> QueueStatus:
        inspect = self.app.control.inspect()
        active = self._requests(await self._inspect(inspect.active))
        waiting = self._requests(await self._inspect(inspect.reserved)) + self._requests(await self._inspect(inspect.scheduled))
        now = self._clock()
        return QueueStatus(
            waiting=len(waiting),
            active=len(active),
            recent_jobs={
                "waiting": [self._to_job(request, JobStatus.WAITING, now) for request in waiting[:5]],
                "active": [self._to_job(request, JobStatus.ACTIVE, now) for request in active],
            },
        )

    async def clear(self) -> None:
        purged = await asyncio.to_thread(self.app.control.purge)
        logger.info("Purged %s message(s) from the broker", purged)

    async def _pending_requests(self) -> List[Dict[str, Any]]:
        inspect = self.app.control.inspect()
        requests: List[Dict[str, Any]] = []
        for method in (inspect.active, inspect.reserved, inspect.scheduled):
            requests.extend(self._requests(await self._inspect(method)))
        return requests

    async def _inspect(self, method) -> Optional[Dict[str, List[Dict[str, Any]]]]:
        try:
            return await asyncio.to_thread(method)
        except OperationalError as e:
            raise QueueError(f"Could not inspect workers: {e}") from e

    def _requests(self, replies: Optional[Dict[str, List[Dict[str, Any]]]]) -> List[Dict[str, Any]]:
        # scheduled() wraps each request as {"eta": ..., "request": {...}}
        requests: List[Dict[str, Any]] = []
        for entries in (replies or {}).values():
            for entry in entries:
                request = entry.get("request", entry)
                if request.get("name") == self._celery_task.name:
                    requests.append(request)
        return requests

    def _to_job(self, request: Dict[str, Any], status: JobStatus, now: datetime) -> QueueJob:
        return QueueJob(id=request.get("id", ""), task_id=str(_task_id_of(request)), status=status, run_at=now)


def _task_id_of(request: Dict[str, Any]) -> Optional[str]:
    args = request.get("args") or [None]
    return args[0]
