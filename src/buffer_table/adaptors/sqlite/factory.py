from typing import AsyncIterator
from contextlib import asynccontextmanager
import asyncio
import logging

import aiosqlite

from buffer_table.adaptors.sqlite.schema import create_schema
from buffer_table.adaptors.sqlite.store import SQLiteEventStore
from buffer_table.crypto import PayloadCipher

logger = logging.getLogger(__name__)


@asynccontextmanager
async def sqlite_store_factory(
    db_path: str,
    *,
    pool_size: int = 10,
    busy_timeout_ms: int = 5000,
    cache_size_kib: int = -16384,
    single_flight: bool = False,
    cipher: PayloadCipher | None = None,
) -> AsyncIterator[SQLiteEventStore]:
    """
    Opens a SQLite-backed event store and closes all of its connections on
    exit. A file database gets one dedicated write connection and a pool of
    read-only connections in WAL mode; `:memory:` gets a single connection.
    """
    if not db_path:
        raise ValueError("`db_path` must be provided.")

    is_memory_db = db_path == ":memory:"

    write_conn = await aiosqlite.connect(db_path)
    try:
        if not is_memory_db:
            await write_conn.execute("PRAGMA journal_mode=WAL;")
            await write_conn.execute("PRAGMA synchronous = NORMAL;")
        await write_conn.execute(f"PRAGMA cache_size = {cache_size_kib};")
        await write_conn.execute(f"PRAGMA busy_timeout = {busy_timeout_ms};")
        await write_conn.execute("PRAGMA foreign_keys = ON;")
        await create_schema(write_conn, single_flight=single_flight)
    except Exception:
        await write_conn.close()
        raise

    read_pool: asyncio.Queue[aiosqlite.Connection] | None = None
    if not is_memory_db:
        read_pool = asyncio.Queue(maxsize=pool_size)
        for _ in range(pool_size):
            conn = await aiosqlite.connect(f"file:{db_path}?mode=ro", uri=True)
            await conn.execute(f"PRAGMA cache_size = {cache_size_kib};")
            await conn.execute(f"PRAGMA busy_timeout = {busy_timeout_ms};")
            await read_pool.put(conn)

    store = SQLiteEventStore(
        write_conn=write_conn,
        write_lock=asyncio.Lock(),
        read_pool=read_pool,
        cipher=cipher,
    )
    logger.info(f"SQLite event store opened at {db_path}")
    try:
        yield store
    finally:
        await store.close()
        logger.info(f"SQLite event store closed at {db_path}")
