import asyncio
import itertools
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional

import pytest
import pytest_asyncio

from collection_scheduler.domain.entity import Entity
from collection_scheduler.domain.task import Task, ScheduleWindow, CollectionSettings
from collection_scheduler.errors import ExternalFetchError
from collection_scheduler.storages.sqlalchemy import InMemoryStorage


# Monday 2024-01-01 10:00 EST
MONDAY_10_EST = datetime(2024, 1, 1, 15, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingSleep:
    """
    Stand-in for asyncio.sleep that records the requested delay and only yields to the loop.
    """

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeDataSource:
    def __init__(self, items: Optional[Dict[str, List[Any]]] = None, failing: Iterable[str] = ()):
        self.items = items or {}
        self.failing = set(failing)
        self.calls: List[str] = []

    async def lookup(self, name: str, platform: str) -> Optional[Dict[str, Any]]:
        return None

    async def fetch_items(self, entity_id: str, platform: str, task_type: str) -> List[Any]:
        self.calls.append(entity_id)
        if entity_id in self.failing:
            raise ExternalFetchError(f"upstream unavailable for {entity_id}", status=503)
        return list(self.items.get(entity_id, []))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(MONDAY_10_EST)


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest_asyncio.fixture
async def storage():
    storage = InMemoryStorage()
    await storage.create_tables()
    yield storage
    await storage.close()


@pytest_asyncio.fixture
async def entities(storage: InMemoryStorage) -> List[str]:
    ids = ["club_1", "club_2", "club_3"]
    for entity_id in ids:
        await storage.add_entity(Entity(entity_id=entity_id, name=f"Club {entity_id[-1]}"))
    return ids


@pytest.fixture
def make_task():
    counter = itertools.count(1)

    def _make_task(**overrides) -> Task:
        fields: Dict[str, Any] = dict(
            name=f"Collector {next(counter)}",
            owner_id="admin_1",
            schedule=ScheduleWindow(start_hour=20, end_hour=23, days_of_week=[2, 3], timezone="EST"),
            collection=CollectionSettings(retry_attempts=0),
            entity_ids=[],
        )
        fields.update(overrides)
        return Task(**fields)
    return _make_task


@pytest.fixture
def make_source():
    def _make_source(items: Optional[Dict[str, List[Any]]] = None, failing: Iterable[str] = ()) -> FakeDataSource:
        return FakeDataSource(items=items, failing=failing)
    return _make_source
