import asyncio
import logging

from collection_scheduler.config import Settings
from collection_scheduler.domain.entity import Entity
from collection_scheduler.domain.task import Task, ScheduleWindow, CollectionSettings
from collection_scheduler.service import SchedulerService

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

# Set up the service with SQLite storage, the EA API client and the in-process queue
settings = Settings(database_url="sqlite+aiosqlite:///./collection_scheduler.db", trigger_interval=30)
service = SchedulerService.from_settings(settings)


async def main() -> None:
    await service.startup()

    await service.storage.add_entity(Entity(entity_id="19963", name="Ice Wolves"))
    task = await service.create_task(
        Task(
            name="League nights",
            owner_id="admin",
            schedule=ScheduleWindow(start_hour=20, end_hour=23, days_of_week=[2, 3], timezone="EST"),
            collection=CollectionSettings(task_type="club_private", retry_attempts=2),
            entity_ids=["19963"],
        )
    )
    print(task.readable_string)
    print(f"Next run: {task.next_run}")

    # Run once right away instead of waiting for the window
    record = await service.run_now(task.id)
    print(f"Manual run: {record.status}, {record.items_collected} items")

    for entry in await service.history(task.id, limit=5):
        print(f"  {entry.timestamp} {entry.status} {entry.error_message or ''}")

    health = await service.health()
    print(f"Healthy: {health.overall}")

    try:
        await asyncio.sleep(120)
    finally:
        await service.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
