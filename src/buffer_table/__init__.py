# buffer_table package

from .models import (
    BatchInfo,
    BatchItem,
    BatchOutcome,
    BatchReport,
    BulkOutcome,
    BulkResult,
    CandidateEvent,
    ClaimedBatch,
    SourceRecord,
    StoredEvent,
)
from .errors import (
    BufferTableError,
    BulkOperationFailure,
    BulkOperationPartialFailure,
    BulkOperationTotalFailure,
    IntegrityError,
    PayloadDecryptError,
    RetryableBatchError,
    TerminalError,
)
from .config import BufferTableSettings
from .claimer import Claimer
from .processor import BatchProcessor
from .distributor import Distributor, plan_claims
from .scheduler import AsyncioTaskScheduler, DeadLetter
from .sweeper import OrphanSweeper
from .routing import BulkOperationRouter
from .buffer import BufferTable
from .factories import open_buffer_table, open_store
from .adaptors.sqlite import sqlite_store_factory
from .adaptors.postgres import postgres_store_factory

__all__ = [
    "AsyncioTaskScheduler",
    "BatchInfo",
    "BatchItem",
    "BatchOutcome",
    "BatchProcessor",
    "BatchReport",
    "BufferTable",
    "BufferTableError",
    "BufferTableSettings",
    "BulkOperationFailure",
    "BulkOperationPartialFailure",
    "BulkOperationRouter",
    "BulkOperationTotalFailure",
    "BulkOutcome",
    "BulkResult",
    "CandidateEvent",
    "ClaimedBatch",
    "Claimer",
    "DeadLetter",
    "Distributor",
    "IntegrityError",
    "OrphanSweeper",
    "PayloadDecryptError",
    "RetryableBatchError",
    "SourceRecord",
    "StoredEvent",
    "TerminalError",
    "open_buffer_table",
    "open_store",
    "plan_claims",
    "postgres_store_factory",
    "sqlite_store_factory",
]
