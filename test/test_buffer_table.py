import asyncio
import logging
import random

import pytest

from buffer_table import (
    BufferTable,
    BufferTableSettings,
    BulkOperationTotalFailure,
    BulkResult,
    open_buffer_table,
)

from conftest import enqueue_many


def fast_settings(**overrides):
    values = dict(retry_backoff_initial=0, retry_backoff_max=0, orphan_timeout=None)
    values.update(overrides)
    return BufferTableSettings(**values)


class RecordingBulkApi:
    def __init__(self, fail_rate=0.0, seed=7):
        self.batches = []
        self.fail_rate = fail_rate
        self.rng = random.Random(seed)

    async def __call__(self, items):
        self.batches.append((items[0].event.group_id, [item.event.id for item in items]))
        return BulkResult(
            failed={
                item.event.id: "rejected"
                for item in items
                if self.rng.random() < self.fail_rate
            }
        )


@pytest.mark.asyncio
async def test_backlog_is_split_into_batches(store):
    api = RecordingBulkApi()
    table = BufferTable(store, api, settings=fast_settings(batch_size=1000, max_batches_per_tick=10))
    event_ids = await enqueue_many(store, 2500)

    assert await table.run_once() == 3

    sizes = sorted(len(ids) for _, ids in api.batches)
    assert sizes == [500, 1000, 1000]
    assert len({group_id for group_id, _ in api.batches}) == 3
    assert sorted(i for _, ids in api.batches for i in ids) == event_ids
    metrics = await table.metrics()
    assert metrics["unclaimed"] == 0
    assert metrics["claimed"] == 0
    assert metrics["batches"] == 0
    # Payloads added through `enqueue` leave with their events.
    assert metrics["records"] == 0


@pytest.mark.asyncio
async def test_cap_defers_the_rest_to_later_ticks(store):
    api = RecordingBulkApi()
    table = BufferTable(store, api, settings=fast_settings(batch_size=10, max_batches_per_tick=2))
    await enqueue_many(store, 45)

    assert await table.run_once() == 2
    assert await store.count_unclaimed() == 25
    assert await table.run_once() == 2
    assert await table.run_once() == 1
    assert await store.count_unclaimed() == 0


@pytest.mark.asyncio
async def test_terminal_failure_through_scheduler(store, caplog):
    async def reject_all(items):
        return BulkResult.all_failed(items, "rejected")

    abandoned = []
    table = BufferTable(
        store,
        reject_all,
        settings=fast_settings(batch_size=100, max_retry_attempts=3),
        archiver=store,
        on_abandoned=abandoned.append,
    )
    await enqueue_many(store, 50)

    with caplog.at_level(logging.WARNING, logger="buffer_table"):
        await table.run_once()

    [failure] = abandoned
    assert failure.attempts == 3
    assert len(failure.deleted) == 50
    metrics = await table.metrics()
    assert metrics["claimed"] == 0
    assert metrics["batches"] == 0
    assert metrics["dead_letters"] == 50
    assert metrics["records"] == 0

    errors = [r for r in caplog.records if r.levelno == logging.ERROR]
    assert len(errors) == 1
    [dead] = table.scheduler.dead_letters
    assert dead.error_type == "BulkOperationTotalFailure"
    assert dead.group_id == failure.group_id
    assert sorted(dead.deleted) == sorted(failure.deleted)


class FailsFirstLoad:
    """A store whose first `load_batch` fails before any failure is recorded."""

    def __init__(self, store):
        self._store = store
        self.load_failures = 1

    def __getattr__(self, name):
        return getattr(self._store, name)

    async def load_batch(self, group_id):
        if self.load_failures:
            self.load_failures -= 1
            raise ConnectionError("database is locked")
        return await self._store.load_batch(group_id)


@pytest.mark.asyncio
async def test_store_error_does_not_strand_the_batch(store):
    async def reject_all(items):
        return BulkResult.all_failed(items, "rejected")

    abandoned = []
    table = BufferTable(
        FailsFirstLoad(store),
        reject_all,
        settings=fast_settings(batch_size=10, max_retry_attempts=2),
        on_abandoned=abandoned.append,
    )
    await enqueue_many(store, 5)

    await table.run_once()

    [failure] = abandoned
    assert isinstance(failure, BulkOperationTotalFailure)
    assert failure.attempts == 2
    metrics = await store.metrics()
    assert metrics["claimed"] == 0
    assert metrics["batches"] == 0
    assert metrics["records"] == 0


@pytest.mark.asyncio
async def test_every_event_is_sent_or_abandoned(store):
    """Each event ends up either delivered or dead-lettered, never both and never neither."""
    api = RecordingBulkApi(fail_rate=0.3)
    table = BufferTable(
        store,
        api,
        settings=fast_settings(batch_size=25, max_batches_per_tick=10, max_retry_attempts=3),
        archiver=store,
    )
    event_ids = await enqueue_many(store, 200)

    while await store.count_unclaimed():
        await table.run_once()

    metrics = await table.metrics()
    assert metrics["claimed"] == 0
    assert metrics["batches"] == 0

    abandoned = {e for dead in table.scheduler.dead_letters for e in dead.deleted}
    assert metrics["dead_letters"] == len(abandoned)
    attempted = {i for _, ids in api.batches for i in ids}
    assert attempted == set(event_ids)


@pytest.mark.asyncio
async def test_start_installs_timers_and_stop_cancels_them(store):
    api = RecordingBulkApi()
    table = BufferTable(
        store,
        api,
        settings=fast_settings(batch_size=10, distribution_interval=0.01, orphan_timeout=60, sweep_interval=0.01),
    )
    await enqueue_many(store, 15)

    await table.start()
    await table.start()
    assert table.running
    assert len(table._timers) == 2

    for _ in range(100):
        if await store.count_unclaimed() == 0 and (await table.metrics())["batches"] == 0:
            break
        await asyncio.sleep(0.01)
    await table.stop()

    assert not table.running
    assert sum(len(ids) for _, ids in api.batches) == 15


@pytest.mark.asyncio
async def test_open_buffer_table_with_overrides(db_path):
    api = RecordingBulkApi()
    async with open_buffer_table(
        api, url=f"sqlite:///{db_path}", batch_size=4, retry_backoff_initial=0, retry_backoff_max=0
    ) as table:
        assert table.settings.batch_size == 4
        for i in range(10):
            await table.enqueue("contact_activity", f"{i}".encode())
        assert await table.run_once() == 3

    assert sorted(len(ids) for _, ids in api.batches) == [2, 4, 4]


@pytest.mark.asyncio
async def test_open_buffer_table_in_memory_with_encryption():
    from buffer_table.crypto import PayloadCipher

    seen = []

    async def collect(items):
        seen.extend(item.record.data for item in items)
        return BulkResult()

    async with open_buffer_table(
        collect, url="sqlite://", encryption_key=PayloadCipher.generate_key()
    ) as table:
        await table.enqueue("contact_activity", b"hello")
        await table.run_once()

    assert seen == [b"hello"]


@pytest.mark.asyncio
async def test_open_buffer_table_merges_overrides_into_settings(db_path):
    settings = BufferTableSettings(url=f"sqlite:///{db_path}", batch_size=50)
    async with open_buffer_table(RecordingBulkApi(), settings, max_batches_per_tick=2) as table:
        assert table.settings.batch_size == 50
        assert table.settings.max_batches_per_tick == 2


@pytest.mark.asyncio
async def test_open_buffer_table_rejects_unsupported_scheme():
    with pytest.raises(ValueError, match="Unsupported scheme"):
        async with open_buffer_table(RecordingBulkApi(), url="mysql://localhost/db"):
            pass


def test_scheduler_is_built_from_settings(store):
    table = BufferTable(
        store, RecordingBulkApi(), settings=fast_settings(max_retry_attempts=4, dead_letter_limit=7)
    )
    assert table.scheduler.max_attempts == 5
    assert table.scheduler.dead_letters.maxlen == 7
