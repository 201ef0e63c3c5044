import asyncio
from typing import List, Set

import pytest

from collection_scheduler.errors import PersistenceError
from collection_scheduler.trigger import TriggerLoop


class FakeStorage:
    def __init__(self, due=None, failures: int = 0):
        self.due = list(due or [])
        self.failures = failures
        self.checks = 0

    async def list_due_tasks(self, now):
        self.checks += 1
        if self.failures > 0:
            self.failures -= 1
            raise PersistenceError("database is locked")
        return [task for task in self.due if task.is_active and task.next_run is not None and task.next_run <= now]


class FakeQueue:
    def __init__(self):
        self.pending: Set[str] = set()
        self.enqueued: List[str] = []

    async def has_pending(self, task_id: str) -> bool:
        return task_id in self.pending

    async def enqueue(self, task_id: str, delay: float = 0):
        self.enqueued.append(task_id)
        self.pending.add(task_id)


class SteppingSleep:
    """
    Lets the loop through ``steps`` intervals, then blocks until cancelled.
    """

    def __init__(self, steps: int):
        self.steps = steps
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if len(self.delays) > self.steps:
            await asyncio.Event().wait()
        await asyncio.sleep(0)


async def wait_for_sleeps(sleep: SteppingSleep, count: int) -> None:
    for _ in range(200):
        if len(sleep.delays) >= count:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("Trigger loop did not advance")


@pytest.fixture
def queue() -> FakeQueue:
    return FakeQueue()


@pytest.fixture
def make_trigger(queue, clock):
    def _make_trigger(storage, sleep=asyncio.sleep, **kwargs) -> TriggerLoop:
        return TriggerLoop(storage, queue, clock=clock, sleep=sleep, **kwargs)
    return _make_trigger


@pytest.mark.asyncio
async def test_tick_enqueues_due_tasks(make_trigger, make_task, queue, clock):
    due = make_task(next_run=clock.now)
    overdue = make_task(next_run=clock.now.replace(hour=1))
    later = make_task(next_run=clock.now.replace(hour=23))
    trigger = make_trigger(FakeStorage(due=[due, overdue, later]))

    assert await trigger.tick() == 2

    assert queue.enqueued == [due.id, overdue.id]
    assert trigger.last_tick == clock.now


@pytest.mark.asyncio
async def test_tick_skips_tasks_with_pending_jobs(make_trigger, make_task, queue, clock):
    task = make_task(next_run=clock.now)
    trigger = make_trigger(FakeStorage(due=[task]))

    assert await trigger.tick() == 1
    assert await trigger.tick() == 0
    assert queue.enqueued == [task.id]


@pytest.mark.asyncio
async def test_tick_ignores_stopped_tasks(make_trigger, make_task, queue):
    stopped = make_task(is_active=False)
    trigger = make_trigger(FakeStorage(due=[stopped]))

    assert await trigger.tick() == 0
    assert queue.enqueued == []


@pytest.mark.asyncio
async def test_start_and_stop_are_idempotent(make_trigger, make_task, queue, clock):
    task = make_task(next_run=clock.now)
    trigger = make_trigger(FakeStorage(due=[task]), interval=3600)

    assert await trigger.start() is True
    assert await trigger.start() is False
    assert trigger.is_running is True
    # The first check happens immediately on start
    assert queue.enqueued == [task.id]

    assert await trigger.stop() is True
    assert await trigger.stop() is False
    assert trigger.is_running is False


@pytest.mark.asyncio
async def test_loop_checks_every_interval(make_trigger):
    storage = FakeStorage()
    sleep = SteppingSleep(steps=2)
    trigger = make_trigger(storage, sleep=sleep, interval=60)

    await trigger.start()
    try:
        await wait_for_sleeps(sleep, 3)
    finally:
        await trigger.stop()

    assert sleep.delays == [60, 60, 60]
    assert storage.checks == 3


@pytest.mark.asyncio
async def test_loop_halts_after_consecutive_errors(make_trigger):
    storage = FakeStorage(failures=100)
    trigger = make_trigger(storage, interval=3600, max_consecutive_errors=5)

    assert await trigger.start() is True
    assert trigger.error_count == 1

    for _ in range(4):
        with pytest.raises(PersistenceError):
            await trigger.trigger_manual_check()

    assert trigger.error_count == 5
    assert trigger.is_running is False

    # An explicit restart resets the counter
    storage.failures = 0
    assert await trigger.start() is True
    assert trigger.error_count == 0
    await trigger.stop()


@pytest.mark.asyncio
async def test_successful_check_resets_error_count(make_trigger):
    trigger = make_trigger(FakeStorage(failures=2), interval=3600)

    await trigger.start()
    with pytest.raises(PersistenceError):
        await trigger.trigger_manual_check()
    assert trigger.error_count == 2

    assert await trigger.trigger_manual_check() == 0
    assert trigger.error_count == 0
    assert trigger.is_running is True
    await trigger.stop()


@pytest.mark.asyncio
async def test_status_reports_next_check(make_trigger, clock):
    trigger = make_trigger(FakeStorage(), interval=60)

    status = trigger.status()
    assert status.is_running is False
    assert status.next_check_in is None

    await trigger.start()
    clock.advance(seconds=20)
    status = trigger.status()
    await trigger.stop()

    assert status.is_running is True
    assert status.error_count == 0
    assert status.next_check_in == 40.0
