import asyncio
from datetime import datetime

import pytest

from buffer_table import CandidateEvent, IntegrityError, PayloadDecryptError
from buffer_table.adaptors.sqlite import sqlite_store_factory
from buffer_table.crypto import PayloadCipher

from conftest import enqueue_many


async def total_changes(store) -> int:
    async with store.write_conn.execute("SELECT total_changes()") as cursor:
        (changes,) = await cursor.fetchone()
    return changes


@pytest.mark.asyncio
async def test_enqueue_and_count(store):
    await enqueue_many(store, 5)
    assert await store.count_unclaimed() == 5


@pytest.mark.asyncio
async def test_insert_within_producer_transaction(store):
    async with store.transaction() as tx:
        record_id = await tx.add_record("contact_activity", b"opened")
        event_id = await tx.insert(CandidateEvent(payload_ref=record_id))
    assert event_id > 0
    assert await store.count_unclaimed() == 1


@pytest.mark.asyncio
async def test_producer_rollback_leaves_no_event(store):
    """The event exists if and only if the domain write committed."""
    with pytest.raises(RuntimeError, match="domain write failed"):
        async with store.transaction() as tx:
            record_id = await tx.add_record("contact_activity", b"opened")
            await tx.insert(CandidateEvent(payload_ref=record_id))
            raise RuntimeError("domain write failed")

    assert await store.count_unclaimed() == 0
    metrics = await store.metrics()
    assert metrics["unclaimed"] == 0


@pytest.mark.asyncio
async def test_insert_with_unknown_record_is_an_integrity_error(store):
    with pytest.raises(IntegrityError):
        await store.insert(CandidateEvent(payload_ref=12345))
    assert await store.count_unclaimed() == 0


@pytest.mark.asyncio
async def test_referenced_record_cannot_be_deleted(store):
    record_id, _ = await store.enqueue("contact_activity", b"x")
    with pytest.raises(IntegrityError):
        await store.delete_record(record_id)


@pytest.mark.asyncio
async def test_retained_record_can_be_deleted_once_unreferenced(store):
    async with store.transaction() as tx:
        record_id = await tx.add_record("contact_activity", b"x", retain=True)
        event_id = await tx.insert(CandidateEvent(payload_ref=record_id))
    await store.delete([event_id])
    assert (await store.metrics())["records"] == 1

    await store.delete_record(record_id)
    assert (await store.metrics())["records"] == 0


@pytest.mark.asyncio
async def test_record_is_removed_with_its_last_event(store):
    record_id, first = await store.enqueue("contact_activity", b"x")
    second = await store.insert(CandidateEvent(payload_ref=record_id))

    await store.delete([first])
    assert (await store.metrics())["records"] == 1

    await store.delete([second])
    assert (await store.metrics())["records"] == 0


@pytest.mark.asyncio
async def test_processed_batch_leaves_no_records(store):
    await enqueue_many(store, 300)
    for _ in range(3):
        batch = await store.claim_batch(100)
        await store.delete(batch.event_ids, group_id=batch.group_id)

    metrics = await store.metrics()
    assert metrics["unclaimed"] == 0
    assert metrics["records"] == 0


@pytest.mark.asyncio
async def test_invalid_record_is_an_integrity_error(store):
    with pytest.raises(IntegrityError):
        async with store.transaction() as tx:
            await tx.add_record(None, b"x")
    assert (await store.metrics())["records"] == 0


@pytest.mark.asyncio
async def test_duplicate_payload_ref_allowed_without_single_flight(store):
    record_id, _ = await store.enqueue("contact_activity", b"x")
    await store.insert(CandidateEvent(payload_ref=record_id))
    assert await store.count_unclaimed() == 2


@pytest.mark.asyncio
async def test_single_flight_rejects_second_outstanding_event(db_path):
    async with sqlite_store_factory(db_path, pool_size=2, single_flight=True) as store:
        record_id, _ = await store.enqueue("contact_activity", b"x")
        with pytest.raises(IntegrityError):
            await store.insert(CandidateEvent(payload_ref=record_id))
        assert await store.count_unclaimed() == 1


@pytest.mark.asyncio
async def test_single_flight_allows_new_event_after_delete(db_path):
    async with sqlite_store_factory(db_path, pool_size=2, single_flight=True) as store:
        async with store.transaction() as tx:
            record_id = await tx.add_record("contact_activity", b"x", retain=True)
            event_id = await tx.insert(CandidateEvent(payload_ref=record_id))
        await store.delete([event_id])
        await store.insert(CandidateEvent(payload_ref=record_id))
        assert await store.count_unclaimed() == 1


@pytest.mark.asyncio
async def test_claim_on_empty_store_performs_no_writes(store):
    changes_before = await total_changes(store)
    assert await store.claim_batch(10) is None
    assert await total_changes(store) == changes_before
    metrics = await store.metrics()
    assert metrics["batches"] == 0


@pytest.mark.asyncio
async def test_claim_respects_limit_and_order(store):
    event_ids = await enqueue_many(store, 7)

    first = await store.claim_batch(5)
    second = await store.claim_batch(5)
    third = await store.claim_batch(5)

    assert first.event_ids == event_ids[:5]
    assert second.event_ids == event_ids[5:]
    assert third is None
    assert first.group_id != second.group_id
    assert len(first.group_id) == 32
    assert await store.count_unclaimed() == 0


@pytest.mark.asyncio
async def test_load_batch_joins_records(store):
    await enqueue_many(store, 3, kind="deal_update")
    batch = await store.claim_batch(10)

    items = await store.load_batch(batch.group_id)
    assert [item.event.id for item in items] == batch.event_ids
    assert [item.record.data for item in items] == [b"payload-0", b"payload-1", b"payload-2"]
    assert all(item.record.kind == "deal_update" for item in items)
    assert all(item.event.group_id == batch.group_id for item in items)
    assert all(isinstance(item.event.claimed_at, datetime) for item in items)


@pytest.mark.asyncio
async def test_load_unknown_batch_is_empty(store):
    assert await store.load_batch("0" * 32) == []


@pytest.mark.asyncio
async def test_delete_empty_set_is_a_noop(store):
    await enqueue_many(store, 2)
    changes_before = await total_changes(store)
    await store.delete([])
    await store.delete(set())
    assert await total_changes(store) == changes_before
    assert await store.count_unclaimed() == 2


@pytest.mark.asyncio
async def test_batch_row_removed_with_last_member(store):
    await enqueue_many(store, 3)
    batch = await store.claim_batch(10)

    await store.delete(batch.event_ids[:2], group_id=batch.group_id)
    assert (await store.metrics())["batches"] == 1

    await store.delete(batch.event_ids[2:], group_id=batch.group_id)
    metrics = await store.metrics()
    assert metrics["batches"] == 0
    assert metrics["claimed"] == 0


@pytest.mark.asyncio
async def test_record_failure_counts_attempts(store):
    await enqueue_many(store, 2)
    batch = await store.claim_batch(10)

    assert await store.record_failure(batch.group_id, "timeout") == 1
    assert await store.record_failure(batch.group_id, "rate limited") == 2

    stale = await store.stale_batches(0)
    assert len(stale) == 1
    assert stale[0].attempts == 2
    assert stale[0].last_error == "rate limited"
    assert stale[0].size == 2


@pytest.mark.asyncio
async def test_stale_batches_respects_threshold(store):
    await enqueue_many(store, 1)
    batch = await store.claim_batch(10)

    assert await store.stale_batches(3600) == []
    await asyncio.sleep(0.05)
    stale = await store.stale_batches(0.01)
    assert [b.group_id for b in stale] == [batch.group_id]

    await store.touch_batch(batch.group_id)
    assert await store.stale_batches(0.5) == []


@pytest.mark.asyncio
async def test_archive_writes_dead_letters(store):
    await enqueue_many(store, 3)
    batch = await store.claim_batch(10)
    items = await store.load_batch(batch.group_id)

    await store.archive(batch.group_id, items, "abandoned")
    await store.archive(batch.group_id, [], "nothing")

    metrics = await store.metrics()
    assert metrics["dead_letters"] == 3


@pytest.mark.asyncio
async def test_metrics(store):
    metrics = await store.metrics()
    assert metrics == {
        "unclaimed": 0,
        "claimed": 0,
        "batches": 0,
        "dead_letters": 0,
        "records": 0,
        "oldest_unclaimed": None,
    }

    await enqueue_many(store, 4)
    await store.claim_batch(3)
    metrics = await store.metrics()
    assert metrics["unclaimed"] == 1
    assert metrics["claimed"] == 3
    assert metrics["batches"] == 1
    assert isinstance(metrics["oldest_unclaimed"], datetime)


@pytest.mark.asyncio
async def test_in_memory_store():
    async with sqlite_store_factory(":memory:") as store:
        await enqueue_many(store, 3)
        batch = await store.claim_batch(2)
        assert batch.size == 2
        assert len(await store.load_batch(batch.group_id)) == 2
        assert await store.count_unclaimed() == 1


@pytest.mark.asyncio
async def test_file_persistence(db_path):
    # Session 1: enqueue and claim
    async with sqlite_store_factory(db_path, pool_size=2) as store:
        await enqueue_many(store, 3)
        batch = await store.claim_batch(2)

    # Session 2: the claim and the backlog survived
    async with sqlite_store_factory(db_path, pool_size=2) as store:
        assert await store.count_unclaimed() == 1
        items = await store.load_batch(batch.group_id)
        assert [item.event.id for item in items] == batch.event_ids


@pytest.mark.asyncio
async def test_encrypted_payloads_round_trip(db_path):
    cipher = PayloadCipher(PayloadCipher.generate_key())
    async with sqlite_store_factory(db_path, pool_size=2, cipher=cipher) as store:
        await store.enqueue("contact_activity", b"secret")
        async with store.write_conn.execute("SELECT data FROM records") as cursor:
            (stored,) = await cursor.fetchone()
        assert stored != b"secret"

        batch = await store.claim_batch(10)
        items = await store.load_batch(batch.group_id)
        assert items[0].record.data == b"secret"


@pytest.mark.asyncio
async def test_wrong_key_cannot_load_batch(db_path):
    async with sqlite_store_factory(
        db_path, pool_size=2, cipher=PayloadCipher(PayloadCipher.generate_key())
    ) as store:
        await store.enqueue("contact_activity", b"secret")
        batch = await store.claim_batch(10)

    async with sqlite_store_factory(
        db_path, pool_size=2, cipher=PayloadCipher(PayloadCipher.generate_key())
    ) as store:
        with pytest.raises(PayloadDecryptError):
            await store.load_batch(batch.group_id)
