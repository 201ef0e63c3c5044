from datetime import datetime
from typing import List, Optional, Protocol

from collection_scheduler.domain.task import Task
from collection_scheduler.domain.entity import Entity
from collection_scheduler.domain.execution import ExecutionRecord


class Storage(Protocol):
    async def create_task(self, task: Task) -> str:
        """Create a new task and return its ID."""
        ...

    async def get_task(self, task_id: str) -> Optional[Task]:
        """Retrieve a task by its ID."""
        ...

    async def update_task(self, task: Task) -> bool:
        """
        Update an existing task's definition (name, description, owner, schedule, collection
        settings and entities). Run state is left untouched. Return True if successful, False otherwise.
        """
        ...

    async def delete_task(self, task_id: str) -> bool:
        """Delete a task and its execution history. Return True if successful, False otherwise."""
        ...

    async def list_tasks(
        self,
        limit: int = 10,
        offset: int = 0,
        search: Optional[str] = None,
        owner_id: Optional[str] = None,
        is_active: Optional[bool] = None,
    ) -> List[Task]:
        """List tasks newest first, optionally filtered by name substring, owner and active flag."""
        ...

    async def list_due_tasks(self, now: datetime) -> List[Task]:
        """List active tasks whose next run is at or before now."""
        ...

    async def set_active(self, task_id: str, is_active: bool, next_run: Optional[datetime]) -> bool:
        """Start or stop a task. A stopped task never keeps a next run."""
        ...

    async def set_next_run(self, task_id: str, next_run: Optional[datetime]) -> bool:
        """Set the next run, which only sticks if the task is active when the write happens."""
        ...

    async def set_run_times(self, task_id: str, last_run: Optional[datetime], next_run: Optional[datetime]) -> bool:
        """
        Record a finished run in one write: ``last_run`` always, ``next_run`` only if the task
        is still active at that moment.
        """
        ...

    async def add_execution(self, task_id: str, record: ExecutionRecord) -> None:
        """Append an execution record to the task's history."""
        ...

    async def list_executions(self, task_id: str, limit: int = 50) -> List[ExecutionRecord]:
        """List execution records for a task, newest first."""
        ...


class EntityRegistry(Protocol):
    async def get_entity(self, entity_id: str) -> Optional[Entity]:
        """Retrieve an entity by its ID, or None if it is not registered."""
        ...

    async def add_entity(self, entity: Entity) -> str:
        """Register an entity and return its ID."""
        ...
