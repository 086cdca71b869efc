import aiosqlite


async def create_schema(conn: aiosqlite.Connection, single_flight: bool = False):
    """
    Creates the buffer table schema if it does not exist yet. Schema management
    is centralized here; every factory calls it on its write connection before
    any other statement runs.
    """
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS records (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            kind TEXT NOT NULL,
            data BLOB NOT NULL,
            -- 0: removed together with the last event that references it.
            retain INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        )
    """
    )
    # RESTRICT keeps a referenced record from being deleted out from under
    # an outstanding event.
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            payload_ref INTEGER NOT NULL REFERENCES records (id) ON DELETE RESTRICT,
            group_id TEXT,
            created_at TEXT NOT NULL,
            claimed_at TEXT
        )
    """
    )
    # Partial indexes: the claimer only ever scans unclaimed rows, the
    # processor only ever looks rows up by their batch.
    await conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_events_unclaimed ON events (id) WHERE group_id IS NULL
        """
    )
    await conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_events_group ON events (group_id) WHERE group_id IS NOT NULL
        """
    )
    if single_flight:
        await conn.execute(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_events_single_flight ON events (payload_ref)
            """
        )
    else:
        await conn.execute("DROP INDEX IF EXISTS idx_events_single_flight")
        await conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_events_payload_ref ON events (payload_ref)
            """
        )
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS batches (
            group_id TEXT PRIMARY KEY,
            size INTEGER NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            claimed_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
    """
    )
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS dead_letters (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            event_id INTEGER NOT NULL,
            group_id TEXT NOT NULL,
            payload_ref INTEGER NOT NULL,
            kind TEXT NOT NULL,
            data BLOB NOT NULL,
            reason TEXT NOT NULL,
            archived_at TEXT NOT NULL
        )
    """
    )
    await conn.commit()
