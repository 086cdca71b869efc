from typing import Any, AsyncIterator, Dict, Iterable, List, Tuple
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
import asyncio
import json
import logging

import aiosqlite

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
    utcnow,
)
from buffer_table.protocols import EventStore, ProducerTransaction

logger = logging.getLogger(__name__)


def _ts(value: datetime) -> str:
    # Fixed-width ISO strings so that timestamps compare correctly as text.
    return value.isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteTransaction(ProducerTransaction):
    """The producer's handle on an open write transaction."""

    def __init__(self, conn: aiosqlite.Connection, cipher: PayloadCipher | None):
        self.conn = conn
        self.cipher = cipher

    async def add_record(self, kind: str, data: bytes, retain: bool = False) -> int:
        stored = self.cipher.encrypt(data) if self.cipher else data
        try:
            cursor = await self.conn.execute(
                "INSERT INTO records (kind, data, retain, created_at) VALUES (?, ?, ?, ?)",
                (kind, stored, int(retain), _ts(utcnow())),
            )
        except aiosqlite.IntegrityError as e:
            raise IntegrityError(f"Cannot add record of kind {kind!r}: {e}") from e
        record_id = cursor.lastrowid
        await cursor.close()
        return record_id

    async def insert(self, event: CandidateEvent) -> int:
        try:
            cursor = await self.conn.execute(
                "INSERT INTO events (payload_ref, created_at) VALUES (?, ?)",
                (event.payload_ref, _ts(utcnow())),
            )
        except aiosqlite.IntegrityError as e:
            raise IntegrityError(
                f"Cannot enqueue event for record {event.payload_ref}: {e}"
            ) from e
        event_id = cursor.lastrowid
        await cursor.close()
        return event_id


class SQLiteEventStore(EventStore):
    """
    A concrete implementation of the `EventStore` protocol for SQLite.

    All writes go through one dedicated write connection guarded by an
    `asyncio.Lock`, so every claim runs as a single serialized write
    transaction: two claimers can never stamp the same row. Reads are served
    from a pool of read-only connections; an in-memory database has no pool
    and reads through the write connection instead.
    """

    def __init__(
        self,
        write_conn: aiosqlite.Connection,
        write_lock: asyncio.Lock,
        read_pool: asyncio.Queue | None = None,
        cipher: PayloadCipher | None = None,
    ):
        self.write_conn = write_conn
        self.write_lock = write_lock
        self.read_pool = read_pool
        self.cipher = cipher

    @asynccontextmanager
    async def _read_conn(self) -> AsyncIterator[aiosqlite.Connection]:
        """Provides a connection from the read pool."""
        if self.read_pool is None:
            async with self.write_lock:
                yield self.write_conn
            return
        conn = await self.read_pool.get()
        try:
            yield conn
        finally:
            await self.read_pool.put(conn)

    @asynccontextmanager
    async def _write(self, begin: str = "BEGIN") -> AsyncIterator[aiosqlite.Connection]:
        """
        Runs the body as one transaction on the write connection. It begins a
        transaction on entry and commits on successful exit.
        """
        async with self.write_lock:
            await self.write_conn.execute(begin)
            try:
                yield self.write_conn
                await self.write_conn.commit()
            except BaseException:
                # Includes cancellation: the shared connection must never be
                # left inside an open transaction.
                await self.write_conn.rollback()
                raise

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SQLiteTransaction]:
        async with self._write() as conn:
            yield SQLiteTransaction(conn, self.cipher)

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
            async with self._write() as conn:
                await conn.execute("DELETE FROM records WHERE id = ?", (record_id,))
        except aiosqlite.IntegrityError as e:
            raise IntegrityError(f"Record {record_id} is still referenced: {e}") from e

    async def count_unclaimed(self) -> int:
        async with self._read_conn() as conn:
            async with conn.execute("SELECT COUNT(*) FROM events WHERE group_id IS NULL") as cursor:
                row = await cursor.fetchone()
                return row[0] if row else 0

    async def claim_batch(self, limit: int) -> ClaimedBatch | None:
        # IMMEDIATE takes the database write lock up front, so the select and
        # the update below see the same set of unclaimed rows.
        async with self._write(begin="BEGIN IMMEDIATE") as conn:
            async with conn.execute(
                "SELECT id FROM events WHERE group_id IS NULL ORDER BY id LIMIT ?",
                (limit,),
            ) as cursor:
                ids = [row[0] for row in await cursor.fetchall()]
            if not ids:
                return None

            group_id = new_group_id()
            now = _ts(utcnow())
            await conn.executemany(
                "UPDATE events SET group_id = ?, claimed_at = ? WHERE id = ? AND group_id IS NULL",
                [(group_id, now, event_id) for event_id in ids],
            )
            await conn.execute(
                "INSERT INTO batches (group_id, size, attempts, claimed_at, updated_at) VALUES (?, ?, 0, ?, ?)",
                (group_id, len(ids), now, now),
            )
        return ClaimedBatch(group_id=group_id, event_ids=ids)

    async def load_batch(self, group_id: str) -> List[BatchItem]:
        query = """
            SELECT e.id, e.payload_ref, e.group_id, e.created_at, e.claimed_at,
                   r.id, r.kind, r.data, r.created_at
            FROM events e JOIN records r ON r.id = e.payload_ref
            WHERE e.group_id = ?
            ORDER BY e.id
        """
        items = []
        async with self._read_conn() as conn:
            async with conn.execute(query, (group_id,)) as cursor:
                async for row in cursor:
                    (
                        event_id,
                        payload_ref,
                        event_group_id,
                        created_at,
                        claimed_at,
                        record_id,
                        kind,
                        data,
                        record_created_at,
                    ) = row
                    if self.cipher:
                        data = self.cipher.decrypt(data, record_id)
                    items.append(
                        BatchItem(
                            event=StoredEvent(
                                id=event_id,
                                payload_ref=payload_ref,
                                group_id=event_group_id,
                                created_at=_parse_ts(created_at),
                                claimed_at=_parse_ts(claimed_at),
                            ),
                            record=SourceRecord(
                                id=record_id,
                                kind=kind,
                                data=data,
                                created_at=_parse_ts(record_created_at),
                            ),
                        )
                    )
        return items

    async def delete(self, ids: Iterable[int], group_id: str | None = None):
        ids = list(ids)
        if not ids and group_id is None:
            return
        async with self._write() as conn:
            if ids:
                async with conn.execute(
                    "SELECT DISTINCT payload_ref FROM events WHERE id IN (SELECT value FROM json_each(?))",
                    (json.dumps(ids),),
                ) as cursor:
                    refs = [(ref, ref) async for (ref,) in cursor]
                await conn.executemany(
                    "DELETE FROM events WHERE id = ?", [(event_id,) for event_id in ids]
                )
                # Records that are not retained go with their last event.
                await conn.executemany(
                    "DELETE FROM records WHERE id = ? AND retain = 0 AND NOT EXISTS (SELECT 1 FROM events WHERE payload_ref = ?)",
                    refs,
                )
            if group_id is not None:
                # The batch row lives exactly as long as its last member.
                await conn.execute(
                    "DELETE FROM batches WHERE group_id = ? AND NOT EXISTS (SELECT 1 FROM events WHERE group_id = ?)",
                    (group_id, group_id),
                )

    async def record_failure(self, group_id: str, error: str) -> int:
        now = _ts(utcnow())
        async with self._write() as conn:
            await conn.execute(
                """
                INSERT INTO batches (group_id, size, attempts, last_error, claimed_at, updated_at)
                VALUES (?, (SELECT COUNT(*) FROM events WHERE group_id = ?), 1, ?, ?, ?)
                ON CONFLICT (group_id) DO UPDATE SET
                    attempts = attempts + 1,
                    last_error = excluded.last_error,
                    updated_at = excluded.updated_at
                """,
                (group_id, group_id, error, now, now),
            )
            async with conn.execute(
                "SELECT attempts FROM batches WHERE group_id = ?", (group_id,)
            ) as cursor:
                row = await cursor.fetchone()
        return row[0]

    async def archive(self, group_id: str, items: List[BatchItem], reason: str):
        if not items:
            return
        now = _ts(utcnow())
        rows = [
            (
                item.event.id,
                group_id,
                item.event.payload_ref,
                item.record.kind,
                self.cipher.encrypt(item.record.data) if self.cipher else item.record.data,
                reason,
                now,
            )
            for item in items
        ]
        async with self._write() as conn:
            await conn.executemany(
                "INSERT INTO dead_letters (event_id, group_id, payload_ref, kind, data, reason, archived_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                rows,
            )

    async def stale_batches(self, older_than: float) -> List[BatchInfo]:
        threshold = _ts(utcnow() - timedelta(seconds=older_than))
        async with self._read_conn() as conn:
            async with conn.execute(
                "SELECT group_id, size, attempts, last_error, claimed_at, updated_at FROM batches WHERE updated_at < ? ORDER BY updated_at",
                (threshold,),
            ) as cursor:
                return [
                    BatchInfo(
                        group_id=group_id,
                        size=size,
                        attempts=attempts,
                        last_error=last_error,
                        claimed_at=_parse_ts(claimed_at),
                        updated_at=_parse_ts(updated_at),
                    )
                    async for group_id, size, attempts, last_error, claimed_at, updated_at in cursor
                ]

    async def touch_batch(self, group_id: str):
        async with self._write() as conn:
            await conn.execute(
                "UPDATE batches SET updated_at = ? WHERE group_id = ?",
                (_ts(utcnow()), group_id),
            )

    async def metrics(self) -> Dict[str, Any]:
        async with self._read_conn() as conn:
            async with conn.execute(
                """
                SELECT
                    (SELECT COUNT(*) FROM events WHERE group_id IS NULL),
                    (SELECT COUNT(*) FROM events WHERE group_id IS NOT NULL),
                    (SELECT COUNT(*) FROM batches),
                    (SELECT COUNT(*) FROM dead_letters),
                    (SELECT COUNT(*) FROM records),
                    (SELECT MIN(created_at) FROM events WHERE group_id IS NULL)
                """
            ) as cursor:
                unclaimed, claimed, batches, dead_letters, records, oldest = await cursor.fetchone()
        return {
            "unclaimed": unclaimed,
            "claimed": claimed,
            "batches": batches,
            "dead_letters": dead_letters,
            "records": records,
            "oldest_unclaimed": _parse_ts(oldest),
        }

    async def close(self):
        """Closes the write connection and every pooled read connection."""
        connection_tasks = [self.write_conn.close()]
        if self.read_pool is not None:
            while not self.read_pool.empty():
                conn = await self.read_pool.get()
                connection_tasks.append(conn.close())
        await asyncio.gather(*connection_tasks)
