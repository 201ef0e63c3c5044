import uuid
from enum import Enum
from typing import Optional
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from .execution import ExecutionRecord


class JobStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueJob(BaseModel):
    """
    Represents one queued request to run a task, including its retries.
    """
    id: str = Field(default_factory=lambda: f"job_{uuid.uuid4().hex[:8]}", description="Unique job identifier")
    task_id: str = Field(..., description="The task this job runs")
    status: JobStatus = JobStatus.WAITING
    attempts_made: int = Field(0, ge=0, description="Handler invocations so far")
    run_at: datetime = Field(..., description="Earliest time the job may start")
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    result: Optional[ExecutionRecord] = None
    error: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status in (JobStatus.WAITING, JobStatus.ACTIVE)

    def set_status(self, status: JobStatus, now: Optional[datetime] = None):
        """
        Update the status of the job.
        """
        now = now or datetime.now(timezone.utc)
        self.status = status
        if status == JobStatus.ACTIVE and self.start_time is None:
            self.start_time = now
        elif status in [JobStatus.COMPLETED, JobStatus.FAILED]:
            self.end_time = now

    def set_result(self, result: Optional[ExecutionRecord], now: Optional[datetime] = None):
        self.result = result
        self.error = None
        self.set_status(JobStatus.COMPLETED, now)

    def set_failed(self, error: str, now: Optional[datetime] = None):
        self.error = error
        self.set_status(JobStatus.FAILED, now)
