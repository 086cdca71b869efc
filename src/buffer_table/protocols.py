"""
This module defines the abstract protocols for storage, scheduling and the
downstream bulk operation.

By using `Protocol`-based interfaces, the claimer, batch processor and
distributor are decoupled from the concrete backend. Any storage engine that
can atomically "lock a bounded row set, skipping rows that are already locked"
satisfies `EventStore`, and any concurrent task runner satisfies
`TaskScheduler`. The SQLite and PostgreSQL adaptors are two such backends.
"""
from typing import (
    Any,
    AsyncContextManager,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Protocol,
    Tuple,
)
import asyncio

from .models import BatchInfo, BatchItem, BulkResult, CandidateEvent, ClaimedBatch


class ProducerTransaction(Protocol):
    """
    The producer's view of an open store transaction. The domain write and the
    event that accompanies it commit or roll back together.
    """

    async def add_record(self, kind: str, data: bytes, retain: bool = False) -> int:
        """
        Stores a payload. Unless `retain` is set, the record is deleted together
        with the last event that references it.
        """
        ...

    async def insert(self, event: CandidateEvent) -> int:
        ...


class EventStore(Protocol):
    """
    Defines the contract that all storage adaptors must implement.
    The store exclusively owns event rows; other components go through these
    operations only.
    """

    def transaction(self) -> AsyncContextManager[ProducerTransaction]:
        ...

    async def insert(self, event: CandidateEvent) -> int:
        ...

    async def enqueue(self, kind: str, data: bytes) -> Tuple[int, int]:
        ...

    async def delete_record(self, record_id: int):
        ...

    async def count_unclaimed(self) -> int:
        ...

    async def claim_batch(self, limit: int) -> ClaimedBatch | None:
        ...

    async def load_batch(self, group_id: str) -> List[BatchItem]:
        ...

    async def delete(self, ids: Iterable[int], group_id: str | None = None):
        ...

    async def record_failure(self, group_id: str, error: str) -> int:
        ...

    async def archive(self, group_id: str, items: List[BatchItem], reason: str):
        ...

    async def stale_batches(self, older_than: float) -> List[BatchInfo]:
        ...

    async def touch_batch(self, group_id: str):
        ...

    async def metrics(self) -> Dict[str, Any]:
        ...

    async def close(self):
        ...


class BulkOperation(Protocol):
    """
    The downstream side effect, e.g. a bulk call to a rate-limited third-party
    API. Raising counts as every item of the batch failing this attempt.
    """

    async def __call__(self, items: List[BatchItem]) -> BulkResult:
        ...


class Archiver(Protocol):
    """Receives the members of an abandoned batch before they are deleted."""

    async def archive(self, group_id: str, items: List[BatchItem], reason: str):
        ...


class TaskScheduler(Protocol):
    """
    Defines the contract for launching claimer and batch processor work.
    Implementations are expected to retry failing tasks with backoff and to
    dead-letter tasks that keep failing.
    """

    def schedule(self, task: Callable[..., Awaitable[Any]], *args: Any) -> "asyncio.Task":
        ...

    def schedule_timer(self, interval: float, task: Callable[[], Awaitable[Any]]) -> "asyncio.Task":
        ...

    async def drain(self):
        ...

    async def stop(self):
        ...
