"""
PostgreSQL event store.

This is the backend the lock-and-skip claim was designed for: each claimer
selects its rows with `FOR UPDATE SKIP LOCKED`, so concurrent claimers never
wait on each other's row locks. A row locked by one claimer is simply
invisible to the others until that claim commits, after which it is no longer
unclaimed.
"""
from typing import Any, AsyncIterator, Dict, Iterable, List, Tuple
from contextlib import asynccontextmanager
import logging

import asyncpg

from buffer_table.crypto import PayloadCipher
from buffer_table.errors import IntegrityError
from buffer_table.models import (
    BatchInfo,
    BatchItem,
    CandidateEvent,
    ClaimedBatch,
    SourceRecord,
    StoredEvent,
    new_group_id,
)
from buffer_table.protocols import EventStore, ProducerTransaction

logger = logging.getLogger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS records (
        id BIGSERIAL PRIMARY KEY,
        kind TEXT NOT NULL,
        data BYTEA NOT NULL,
        retain BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS events (
        id BIGSERIAL PRIMARY KEY,
        payload_ref BIGINT NOT NULL REFERENCES records (id) ON DELETE RESTRICT,
        group_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        claimed_at TIMESTAMPTZ
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_events_unclaimed ON events (id) WHERE group_id IS NULL",
    "CREATE INDEX IF NOT EXISTS idx_events_group ON events (group_id) WHERE group_id IS NOT NULL",
    """
    CREATE TABLE IF NOT EXISTS batches (
        group_id TEXT PRIMARY KEY,
        size INTEGER NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        claimed_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS dead_letters (
        id BIGSERIAL PRIMARY KEY,
        event_id BIGINT NOT NULL,
        group_id TEXT NOT NULL,
        payload_ref BIGINT NOT NULL,
        kind TEXT NOT NULL,
        data BYTEA NOT NULL,
        reason TEXT NOT NULL,
        archived_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
]

SINGLE_FLIGHT_ON = [
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_events_single_flight ON events (payload_ref)",
]

SINGLE_FLIGHT_OFF = [
    "DROP INDEX IF EXISTS idx_events_single_flight",
    "CREATE INDEX IF NOT EXISTS idx_events_payload_ref ON events (payload_ref)",
]


async def create_schema(conn: asyncpg.Connection, single_flight: bool = False):
    async with conn.transaction():
        for statement in SCHEMA + (SINGLE_FLIGHT_ON if single_flight else SINGLE_FLIGHT_OFF):
            await conn.execute(statement)


def _integrity_error(message: str, exc: Exception) -> IntegrityError:
    return IntegrityError(f"{message}: {exc}")


class PostgresTransaction(ProducerTransaction):
    def __init__(self, conn: asyncpg.Connection, cipher: PayloadCipher | None):
        self.conn = conn
        self.cipher = cipher

    async def add_record(self, kind: str, data: bytes, retain: bool = False) -> int:
        stored = self.cipher.encrypt(data) if self.cipher else data
        try:
            return await self.conn.fetchval(
                "INSERT INTO records (kind, data, retain) VALUES ($1, $2, $3) RETURNING id",
                kind,
                stored,
                retain,
            )
        except asyncpg.IntegrityConstraintViolationError as e:
            raise _integrity_error(f"Cannot add record of kind {kind!r}", e) from e

    async def insert(self, event: CandidateEvent) -> int:
        try:
            return await self.conn.fetchval(
                "INSERT INTO events (payload_ref) VALUES ($1) RETURNING id", event.payload_ref
            )
        except asyncpg.IntegrityConstraintViolationError as e:
            raise _integrity_error(f"Cannot enqueue event for record {event.payload_ref}", e) from e


class PostgresEventStore(EventStore):
    """An `EventStore` backed by an asyncpg connection pool."""

    def __init__(self, pool: asyncpg.Pool, cipher: PayloadCipher | None = None):
        self.pool = pool
        self.cipher = cipher

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[PostgresTransaction]:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield PostgresTransaction(conn, self.cipher)

    async def insert(self, event: CandidateEvent) -> int:
        async with self.transaction() as tx:
            return await tx.insert(event)

    async def enqueue(self, kind: str, data: bytes) -> Tuple[int, int]:
        async with self.transaction() as tx:
            record_id = await tx.add_record(kind, data)
            event_id = await tx.insert(CandidateEvent(payload_ref=record_id))
            return record_id, event_id

    async def delete_record(self, record_id: int):
        try:
            await self.pool.execute("DELETE FROM records WHERE id = $1", record_id)
        except asyncpg.IntegrityConstraintViolationError as e:
            raise _integrity_error(f"Record {record_id} is still referenced", e) from e

    async def count_unclaimed(self) -> int:
        return await self.pool.fetchval("SELECT COUNT(*) FROM events WHERE group_id IS NULL")

    async def claim_batch(self, limit: int) -> ClaimedBatch | None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    SELECT id FROM events
                    WHERE group_id IS NULL
                    ORDER BY id
                    LIMIT $1
                    FOR UPDATE SKIP LOCKED
                    """,
                    limit,
                )
                if not rows:
                    return None
                ids = [row["id"] for row in rows]
                group_id = new_group_id()
                await conn.execute(
                    "UPDATE events SET group_id = $1, claimed_at = now() WHERE id = ANY($2::bigint[])",
                    group_id,
                    ids,
                )
                await conn.execute(
                    "INSERT INTO batches (group_id, size) VALUES ($1, $2)", group_id, len(ids)
                )
        return ClaimedBatch(group_id=group_id, event_ids=ids)

    async def load_batch(self, group_id: str) -> List[BatchItem]:
        rows = await self.pool.fetch(
            """
            SELECT e.id, e.payload_ref, e.group_id, e.created_at, e.claimed_at,
                   r.id AS record_id, r.kind, r.data, r.created_at AS record_created_at
            FROM events e JOIN records r ON r.id = e.payload_ref
            WHERE e.group_id = $1
            ORDER BY e.id
            """,
            group_id,
        )
        items = []
        for row in rows:
            data = bytes(row["data"])
            if self.cipher:
                data = self.cipher.decrypt(data, row["record_id"])
            items.append(
                BatchItem(
                    event=StoredEvent(
                        id=row["id"],
                        payload_ref=row["payload_ref"],
                        group_id=row["group_id"],
                        created_at=row["created_at"],
                        claimed_at=row["claimed_at"],
                    ),
                    record=SourceRecord(
                        id=row["record_id"],
                        kind=row["kind"],
                        data=data,
                        created_at=row["record_created_at"],
                    ),
                )
            )
        return items

    async def delete(self, ids: Iterable[int], group_id: str | None = None):
        ids = list(ids)
        if not ids and group_id is None:
            return
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                if ids:
                    refs = await conn.fetch(
                        "DELETE FROM events WHERE id = ANY($1::bigint[]) RETURNING payload_ref", ids
                    )
                    # Records that are not retained go with their last event.
                    await conn.execute(
                        """
                        DELETE FROM records r
                        WHERE r.id = ANY($1::bigint[]) AND NOT r.retain
                          AND NOT EXISTS (SELECT 1 FROM events e WHERE e.payload_ref = r.id)
                        """,
                        list({row["payload_ref"] for row in refs}),
                    )
                if group_id is not None:
                    await conn.execute(
                        "DELETE FROM batches b WHERE b.group_id = $1 AND NOT EXISTS (SELECT 1 FROM events e WHERE e.group_id = $1)",
                        group_id,
                    )

    async def record_failure(self, group_id: str, error: str) -> int:
        return await self.pool.fetchval(
            """
            INSERT INTO batches (group_id, size, attempts, last_error)
            VALUES ($1, (SELECT COUNT(*) FROM events WHERE group_id = $1), 1, $2)
            ON CONFLICT (group_id) DO UPDATE SET
                attempts = batches.attempts + 1,
                last_error = EXCLUDED.last_error,
                updated_at = now()
            RETURNING attempts
            """,
            group_id,
            error,
        )

    async def archive(self, group_id: str, items: List[BatchItem], reason: str):
        if not items:
            return
        await self.pool.executemany(
            "INSERT INTO dead_letters (event_id, group_id, payload_ref, kind, data, reason) VALUES ($1, $2, $3, $4, $5, $6)",
            [
                (
                    item.event.id,
                    group_id,
                    item.event.payload_ref,
                    item.record.kind,
                    self.cipher.encrypt(item.record.data) if self.cipher else item.record.data,
                    reason,
                )
                for item in items
            ],
        )

    async def stale_batches(self, older_than: float) -> List[BatchInfo]:
        rows = await self.pool.fetch(
            """
            SELECT group_id, size, attempts, last_error, claimed_at, updated_at
            FROM batches
            WHERE updated_at < now() - make_interval(secs => $1)
            ORDER BY updated_at
            """,
            float(older_than),
        )
        return [BatchInfo(**dict(row)) for row in rows]

    async def touch_batch(self, group_id: str):
        await self.pool.execute("UPDATE batches SET updated_at = now() WHERE group_id = $1", group_id)

    async def metrics(self) -> Dict[str, Any]:
        row = await self.pool.fetchrow(
            """
            SELECT
                (SELECT COUNT(*) FROM events WHERE group_id IS NULL) AS unclaimed,
                (SELECT COUNT(*) FROM events WHERE group_id IS NOT NULL) AS claimed,
                (SELECT COUNT(*) FROM batches) AS batches,
                (SELECT COUNT(*) FROM dead_letters) AS dead_letters,
                (SELECT COUNT(*) FROM records) AS records,
                (SELECT MIN(created_at) FROM events WHERE group_id IS NULL) AS oldest_unclaimed
            """
        )
        return dict(row)

    async def close(self):
        await self.pool.close()


@asynccontextmanager
async def postgres_store_factory(
    dsn: str,
    *,
    min_size: int = 1,
    max_size: int = 10,
    single_flight: bool = False,
    cipher: PayloadCipher | None = None,
) -> AsyncIterator[PostgresEventStore]:
    """Creates the pool and the schema, and closes the pool on exit."""
    pool = await asyncpg.create_pool(
        dsn=dsn,
        min_size=min(min_size, max_size),
        max_size=max_size,
        server_settings={"application_name": "buffer-table"},
    )
    try:
        async with pool.acquire() as conn:
            await create_schema(conn, single_flight=single_flight)
    except Exception:
        await pool.close()
        raise

    store = PostgresEventStore(pool, cipher=cipher)
    logger.info("PostgreSQL event store connected")
    try:
        yield store
    finally:
        await store.close()
