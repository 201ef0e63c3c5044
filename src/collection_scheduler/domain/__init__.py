from .task import Task, ScheduleWindow, CollectionSettings
from .execution import ExecutionRecord, ExecutionStatus, SuccessRecord, PartialRecord, ErrorRecord, execution_record_adapter
from .entity import Entity
from .job import QueueJob, JobStatus

__all__ = [
    "Task", "ScheduleWindow", "CollectionSettings",
    "ExecutionRecord", "ExecutionStatus", "SuccessRecord", "PartialRecord", "ErrorRecord", "execution_record_adapter",
    "Entity", "QueueJob", "JobStatus",
]
