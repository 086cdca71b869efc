"""
This module defines the core data models for the buffer table using Pydantic.
These models are the data transfer objects passed between the store, the
claimer, the batch processor and the injected bulk operation, and ensure that
all event and batch data is well-structured and validated.
"""
import uuid
from enum import Enum
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set


class CandidateEvent(BaseModel):
    # The id of the source record this event concerns.
    payload_ref: int


class StoredEvent(BaseModel):
    id: int
    payload_ref: int
    group_id: Optional[str] = None  # None means "unclaimed"
    created_at: datetime
    claimed_at: Optional[datetime] = None


class SourceRecord(BaseModel):
    id: int
    # Routing key for the bulk operation, e.g. "contact_activity".
    kind: str
    data: bytes
    created_at: datetime


class BatchItem(BaseModel):
    """One member of a batch, joined with the record it references."""
    event: StoredEvent
    record: SourceRecord


class ClaimedBatch(BaseModel):
    group_id: str
    event_ids: List[int]

    @property
    def size(self) -> int:
        return len(self.event_ids)


class BatchInfo(BaseModel):
    group_id: str
    size: int
    attempts: int = 0
    last_error: Optional[str] = None
    claimed_at: datetime
    updated_at: datetime


class BulkOutcome(str, Enum):
    ALL_SUCCEEDED = "all_succeeded"
    PARTIAL = "partial"
    ALL_FAILED = "all_failed"


class BulkResult(BaseModel):
    """
    The per-item answer of a bulk operation. Only failures are listed, keyed
    by event id; every item not listed is considered to have succeeded.
    """
    failed: Dict[int, str] = Field(default_factory=dict)

    @classmethod
    def all_failed(cls, items: List[BatchItem], error: str) -> "BulkResult":
        return cls(failed={item.event.id: error for item in items})

    def succeeded_ids(self, items: List[BatchItem]) -> Set[int]:
        return {item.event.id for item in items if item.event.id not in self.failed}

    def outcome(self, items: List[BatchItem]) -> BulkOutcome:
        failed_count = sum(1 for item in items if item.event.id in self.failed)
        if failed_count == 0:
            return BulkOutcome.ALL_SUCCEEDED
        if failed_count == len(items):
            return BulkOutcome.ALL_FAILED
        return BulkOutcome.PARTIAL


class BatchOutcome(str, Enum):
    EMPTY = "empty"
    SUCCEEDED = "succeeded"
    ABANDONED = "abandoned"


class BatchReport(BaseModel):
    group_id: str
    outcome: BatchOutcome
    processed: int = 0
    deleted: int = 0
    failed: Dict[int, str] = Field(default_factory=dict)


def new_group_id() -> str:
    """A fresh, collision-resistant batch token (128 random bits)."""
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
