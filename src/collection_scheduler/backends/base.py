from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from collection_scheduler.clock import Clock, utcnow
from collection_scheduler.domain.execution import ExecutionRecord
from collection_scheduler.domain.job import QueueJob
from collection_scheduler.errors import QueueError
from collection_scheduler.retry import RetryPolicy

JobHandler = Callable[[str], Awaitable[Optional[ExecutionRecord]]]


class QueueStatus(BaseModel):
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    recent_jobs: Dict[str, List[QueueJob]] = Field(default_factory=dict)


class JobQueue(ABC):
    """
    Retryable work queue of "run task X" jobs.

    Delivery is at-least-once. A job whose handler raises is retried with the queue's
    retry policy and marked failed once the retries are used up.
    """

    def __init__(self, retry_policy: RetryPolicy = RetryPolicy(), clock: Clock = utcnow):
        self.retry_policy: RetryPolicy = retry_policy
        self._clock: Clock = clock
        self._handler: Optional[JobHandler] = None

    def set_handler(self, handler: JobHandler) -> None:
        self._handler = handler

    def _require_handler(self) -> JobHandler:
        if self._handler is None:
            raise QueueError("No job handler registered")
        return self._handler

    async def start(self):
        pass

    async def stop(self):
        pass

    @abstractmethod
    async def enqueue(self, task_id: str, delay: float = 0) -> QueueJob:
        """
        Queue a run of the task after ``delay`` seconds.
        """

    @abstractmethod
    async def has_pending(self, task_id: str) -> bool:
        """
        Whether a waiting or active job exists for the task.
        """

    @abstractmethod
    async def discard_waiting(self, task_id: str) -> int:
        """
        Drop jobs for the task that have not started yet. Active jobs run to completion.
        """

    @abstractmethod
    async def status(self) -> QueueStatus:
        ...

    @abstractmethod
    async def clear(self) -> None:
        ...
