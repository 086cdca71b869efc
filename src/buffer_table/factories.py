"""
This module implements the factory for opening a buffer table from settings.

`open_buffer_table` picks the store adaptor from the URL scheme, owns the
store's resources for the lifetime of the context, and yields a ready
`BufferTable` whose abandoned batches are archived into the store's
dead-letter table.
"""
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from .adaptors.postgres import postgres_store_factory
from .adaptors.sqlite import sqlite_store_factory
from .buffer import BufferTable
from .config import BufferTableSettings, sqlite_path_from_url
from .crypto import PayloadCipher
from .processor import AbandonedCallback
from .protocols import BulkOperation, EventStore, TaskScheduler


@asynccontextmanager
async def open_store(settings: BufferTableSettings) -> AsyncIterator[EventStore]:
    cipher = PayloadCipher.from_key(settings.encryption_key)
    if settings.scheme == "sqlite":
        store_context = sqlite_store_factory(
            sqlite_path_from_url(settings.url),
            pool_size=settings.pool_size,
            busy_timeout_ms=settings.busy_timeout_ms,
            single_flight=settings.single_flight,
            cipher=cipher,
        )
    elif settings.scheme == "postgresql":
        store_context = postgres_store_factory(
            settings.url,
            max_size=settings.pool_size,
            single_flight=settings.single_flight,
            cipher=cipher,
        )
    else:
        raise ValueError(f"Unsupported scheme: {settings.scheme}.")

    async with store_context as store:
        yield store


@asynccontextmanager
async def open_buffer_table(
    operation: BulkOperation,
    settings: BufferTableSettings | None = None,
    *,
    scheduler: TaskScheduler | None = None,
    on_abandoned: AbandonedCallback | None = None,
    **overrides: Any,
) -> AsyncIterator[BufferTable]:
    """
    Usage::

        async with open_buffer_table(send_bulk, url="sqlite:///var/lib/app/buffer.db") as table:
            await table.enqueue("contact_activity", payload)
            await table.start()
    """
    if settings is None:
        settings = BufferTableSettings(**overrides)
    elif overrides:
        settings = BufferTableSettings(**{**settings.model_dump(), **overrides})

    async with open_store(settings) as store:
        table = BufferTable(
            store,
            operation,
            settings=settings,
            scheduler=scheduler,
            archiver=store,
            on_abandoned=on_abandoned,
        )
        try:
            yield table
        finally:
            await table.stop()
