import os
import tempfile
from typing import Any, List, Tuple

from pytest_asyncio import fixture

from buffer_table.adaptors.sqlite import sqlite_store_factory


class RecordingScheduler:
    """Remembers what was scheduled instead of running it."""

    def __init__(self):
        self.scheduled: List[Tuple[Any, Tuple[Any, ...]]] = []
        self.timers: List[Tuple[float, Any]] = []

    def schedule(self, task, *args):
        self.scheduled.append((task, args))

    def schedule_timer(self, interval, task):
        self.timers.append((interval, task))

    async def drain(self):
        pass

    async def stop(self):
        pass


@fixture
def db_path():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield os.path.join(tmpdir, "buffer.db")


@fixture
async def store(db_path):
    """Provides a store on a fresh file database for each test function."""
    async with sqlite_store_factory(db_path, pool_size=4) as store:
        yield store


@fixture
def scheduler():
    return RecordingScheduler()


async def enqueue_many(store, count: int, kind: str = "contact_activity") -> List[int]:
    event_ids = []
    for i in range(count):
        _, event_id = await store.enqueue(kind, f"payload-{i}".encode())
        event_ids.append(event_id)
    return event_ids
