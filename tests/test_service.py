import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from collection_scheduler.backends.in_memory import InMemoryJobQueue
from collection_scheduler.config import Settings
from collection_scheduler.domain.execution import SuccessRecord
from collection_scheduler.domain.task import ScheduleWindow
from collection_scheduler.errors import ConfigurationError, NotFoundError
from collection_scheduler.service import SchedulerService

# Tuesday 2024-01-02 20:00 EST
TUESDAY_20_EST = datetime(2024, 1, 3, 1, 0, tzinfo=timezone.utc)
# Wednesday 2024-01-03 20:00 EST
WEDNESDAY_20_EST = datetime(2024, 1, 4, 1, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_service(storage, make_source, clock):
    def _make_service(preschedule: bool = False) -> SchedulerService:
        settings = Settings(preschedule_next_run=preschedule, trigger_interval=3600)
        queue = InMemoryJobQueue(clock=clock)
        source = make_source(items={"club_1": ["m1", "m2"], "club_2": ["m3"]})
        service = SchedulerService(storage, storage, source, queue, settings=settings, clock=clock)
        return service

    return _make_service


@pytest_asyncio.fixture
async def service(make_service):
    service = make_service()
    yield service
    await service.shutdown()


@pytest.mark.asyncio
async def test_create_task_computes_next_run(service: SchedulerService, storage, make_task):
    task = await service.create_task(make_task())

    assert task.next_run == TUESDAY_20_EST
    assert (await storage.get_task(task.id)).next_run == TUESDAY_20_EST


@pytest.mark.asyncio
async def test_create_inactive_task_has_no_next_run(service: SchedulerService, make_task):
    task = await service.create_task(make_task(is_active=False))

    assert task.next_run is None


@pytest.mark.asyncio
async def test_create_task_without_days_is_rejected(service: SchedulerService, storage, make_task):
    window = ScheduleWindow(start_hour=20, end_hour=23, days_of_week=[], timezone="EST")

    with pytest.raises(ConfigurationError):
        await service.create_task(make_task(schedule=window))

    assert await storage.list_tasks() == []


@pytest.mark.asyncio
async def test_stopped_task_is_not_triggered(service: SchedulerService, storage, make_task, clock):
    task = await service.create_task(make_task())

    stopped = await service.stop_task(task.id)
    clock.now = TUESDAY_20_EST + timedelta(minutes=1)

    assert stopped.is_active is False
    assert (await storage.get_task(task.id)).next_run is None
    assert await service.trigger.tick() == 0


@pytest.mark.asyncio
async def test_start_task_schedules_next_run(service: SchedulerService, make_task):
    task = await service.create_task(make_task(is_active=False))

    started = await service.start_task(task.id)

    assert started.is_active is True
    assert started.next_run == TUESDAY_20_EST


@pytest.mark.asyncio
async def test_unknown_task_raises_not_found(service: SchedulerService):
    with pytest.raises(NotFoundError):
        await service.start_task("tsk_missing")
    with pytest.raises(NotFoundError):
        await service.stop_task("tsk_missing")
    with pytest.raises(NotFoundError):
        await service.run_now("tsk_missing")
    with pytest.raises(NotFoundError):
        await service.history("tsk_missing")
    with pytest.raises(NotFoundError):
        await service.delete_task("tsk_missing")


@pytest.mark.asyncio
async def test_run_now_records_history(service: SchedulerService, entities, make_task, clock):
    task = await service.create_task(make_task(entity_ids=["club_1", "club_2"]))

    record = await service.run_now(task.id)

    assert isinstance(record, SuccessRecord)
    assert record.items_collected == 3
    assert record.entities_processed == 2
    history = await service.history(task.id)
    assert len(history) == 1
    assert history[0].items_collected == 3


@pytest.mark.asyncio
async def test_run_now_on_stopped_task(service: SchedulerService, make_task):
    task = await service.create_task(make_task(is_active=False))

    with pytest.raises(NotFoundError, match="inactive"):
        await service.run_now(task.id)


@pytest.mark.asyncio
async def test_history_is_newest_first_and_bounded(service: SchedulerService, storage, make_task, clock):
    task = await service.create_task(make_task())
    for hours in range(3):
        await storage.add_execution(task.id, SuccessRecord(timestamp=clock.now + timedelta(hours=hours), items_collected=hours))

    history = await service.history(task.id, limit=2)

    assert [record.items_collected for record in history] == [2, 1]


@pytest.mark.asyncio
async def test_delete_task_removes_history(service: SchedulerService, storage, make_task):
    task = await service.create_task(make_task())
    await service.run_now(task.id)

    await service.delete_task(task.id)

    assert await storage.get_task(task.id) is None
    assert await storage.list_executions(task.id) == []
    with pytest.raises(NotFoundError):
        await service.history(task.id)


@pytest.mark.asyncio
async def test_update_schedule_recomputes_next_run(service: SchedulerService, make_task):
    task = await service.create_task(make_task())

    updated = await service.update_task(
        task.id,
        {"schedule": {"start_hour": 9, "end_hour": 12, "days_of_week": [5], "timezone": "EST"}},
    )

    # Friday 2024-01-05 09:00 EST
    assert updated.next_run == datetime(2024, 1, 5, 14, 0, tzinfo=timezone.utc)
    assert updated.schedule.days_of_week == [5]


@pytest.mark.asyncio
async def test_update_without_schedule_keeps_next_run(service: SchedulerService, storage, make_task):
    task = await service.create_task(make_task())

    updated = await service.update_task(task.id, {"description": "Playoffs", "entity_ids": ["club_2"]})

    assert updated.next_run == TUESDAY_20_EST
    stored = await storage.get_task(task.id)
    assert stored.description == "Playoffs"
    assert stored.entity_ids == ["club_2"]


@pytest.mark.asyncio
async def test_update_rejects_invalid_changes(service: SchedulerService, make_task):
    task = await service.create_task(make_task())

    with pytest.raises(ConfigurationError):
        await service.update_task(task.id, {"is_active": False})
    with pytest.raises(ConfigurationError):
        await service.update_task(task.id, {"schedule": {"start_hour": 30, "end_hour": 23, "days_of_week": [1]}})
    with pytest.raises(ConfigurationError):
        await service.update_task(task.id, {"schedule": {"start_hour": 8, "end_hour": 23, "days_of_week": []}})
    with pytest.raises(NotFoundError):
        await service.update_task("tsk_missing", {"description": "x"})


@pytest.mark.asyncio
async def test_list_tasks_pages(service: SchedulerService, make_task):
    for _ in range(3):
        await service.create_task(make_task())

    assert len(await service.list_tasks(page=1, limit=2)) == 2
    assert len(await service.list_tasks(page=2, limit=2)) == 1


@pytest.mark.asyncio
async def test_health(service: SchedulerService):
    before = await service.health()
    assert before.trigger_healthy is False
    assert before.queue_healthy is True
    assert before.overall is False

    await service.startup()
    after = await service.health()

    assert after.trigger_healthy is True
    assert after.overall is True
    assert after.queue.waiting == 0


@pytest.mark.asyncio
async def test_due_task_runs_through_queue(make_service, storage, entities, make_task, clock):
    service = make_service(preschedule=True)
    await service.startup()
    try:
        task = await service.create_task(make_task(entity_ids=["club_1"]))
        clock.now = TUESDAY_20_EST

        assert await service.trigger.trigger_manual_check() == 1
        for _ in range(200):
            if (await storage.get_task(task.id)).last_run is not None:
                break
            await asyncio.sleep(0.01)

        history = await service.history(task.id)
        assert [record.items_collected for record in history] == [2]
        stored = await storage.get_task(task.id)
        assert stored.last_run == TUESDAY_20_EST
        assert stored.next_run == WEDNESDAY_20_EST
        # The next run is already waiting on the queue
        assert await service.queue.has_pending(task.id) is True
        assert await service.trigger.tick() == 0
    finally:
        await service.shutdown()


@pytest.mark.asyncio
async def test_stop_landing_after_run_is_recorded_wins(service: SchedulerService, storage, entities, make_task, clock, monkeypatch):
    task = await service.create_task(make_task(entity_ids=["club_1"]))
    add_execution = storage.add_execution

    async def add_execution_then_stop(task_id, record):
        await add_execution(task_id, record)
        await service.stop_task(task_id)

    monkeypatch.setattr(storage, "add_execution", add_execution_then_stop)

    record = await service.run_now(task.id)

    assert record.status == "success"
    stored = await storage.get_task(task.id)
    assert stored.is_active is False
    assert stored.next_run is None
    assert stored.last_run == clock.now


@pytest.mark.asyncio
async def test_run_finishing_during_stop_keeps_its_last_run(service: SchedulerService, storage, entities, make_task, clock, monkeypatch):
    task = await service.create_task(make_task(entity_ids=["club_1"]))
    set_active = storage.set_active

    async def run_then_set_active(task_id, is_active, next_run):
        await service.runner.run(task_id)
        return await set_active(task_id, is_active, next_run)

    monkeypatch.setattr(storage, "set_active", run_then_set_active)

    stopped = await service.stop_task(task.id)

    assert len(await service.history(task.id)) == 1
    assert stopped.is_active is False
    assert stopped.next_run is None
    assert stopped.last_run == clock.now


@pytest.mark.asyncio
async def test_run_finishing_during_update_keeps_its_last_run(service: SchedulerService, storage, entities, make_task, clock, monkeypatch):
    task = await service.create_task(make_task(entity_ids=["club_1"]))
    update_task = storage.update_task

    async def run_then_update(changed):
        await service.runner.run(changed.id)
        return await update_task(changed)

    monkeypatch.setattr(storage, "update_task", run_then_update)

    updated = await service.update_task(task.id, {"description": "Renamed"})

    assert updated.description == "Renamed"
    assert updated.last_run == clock.now
    assert updated.next_run == TUESDAY_20_EST
    assert updated.is_active is True
