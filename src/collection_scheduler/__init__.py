"""
Collection Scheduling Engine

This package runs periodic data-collection tasks against a rate-limited external API.

Core Concepts:

Task:
    A Task is a configured periodic collection job. It names the entities to collect for,
    the data source settings to use, and a schedule window (days of week plus start hour)
    that determines when it is next eligible to run.

Job:
    A Job is one queued request to run a Task. The job queue retries a job whose run
    crashes, with exponential backoff, before marking it failed.

ExecutionRecord:
    The outcome of one run of a Task: success, partial or error, with item and entity counts.

Flow:
    TriggerLoop -> JobQueue -> TaskRunner -> (DataSource + EntityRegistry)
    -> execution history + next-run calculation -> task store update.
"""

from .domain import Task, ScheduleWindow, CollectionSettings, ExecutionRecord, Entity
from .schedule import next_run
from .service import SchedulerService

__all__ = ["Task", "ScheduleWindow", "CollectionSettings", "ExecutionRecord", "Entity", "next_run", "SchedulerService"]
