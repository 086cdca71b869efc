"""
The batch processor: runs the bulk operation for one claimed batch and
removes the events it completed.

Retries are keyed on `group_id` rather than on single events. Every failed
attempt first deletes whatever did succeed, so each retry only resends the
members that are still outstanding. The attempt counter lives in the store's
batch row, which keeps the retry budget intact across restarts and across
whichever worker picks the batch up next.
"""
from typing import Any, Awaitable, Callable, List
import inspect
import logging

from .errors import BulkOperationFailure, BulkOperationPartialFailure, BulkOperationTotalFailure
from .models import BatchItem, BatchOutcome, BatchReport, BulkOutcome, BulkResult
from .protocols import Archiver, BulkOperation, EventStore

logger = logging.getLogger(__name__)

AbandonedCallback = Callable[[BulkOperationTotalFailure], Any | Awaitable[Any]]


def _summarize(failed: dict) -> str:
    errors = sorted(set(failed.values()))
    summary = "; ".join(errors[:3])
    if len(errors) > 3:
        summary += f"; and {len(errors) - 3} more"
    return summary


class BatchProcessor:
    def __init__(
        self,
        store: EventStore,
        operation: BulkOperation,
        max_retry_attempts: int = 3,
        archiver: Archiver | None = None,
        on_abandoned: AbandonedCallback | None = None,
    ):
        if max_retry_attempts < 1:
            raise ValueError("max_retry_attempts must be at least 1")
        self.store = store
        self.operation = operation
        self.max_retry_attempts = max_retry_attempts
        self.archiver = archiver
        self.on_abandoned = on_abandoned

    async def process(self, group_id: str) -> BatchReport:
        """
        Processes one batch.

        Returns a report when the batch is done (or was already gone). Raises
        `BulkOperationPartialFailure` or `BulkOperationFailure` when some
        members are left for another attempt, and `BulkOperationTotalFailure`
        once the retry budget is spent and the leftovers were deleted.
        """
        items = await self.store.load_batch(group_id)
        if not items:
            # Another run got here first and finished the batch.
            await self.store.delete([], group_id=group_id)
            logger.debug(f"Batch {group_id} is empty, nothing to do")
            return BatchReport(group_id=group_id, outcome=BatchOutcome.EMPTY)

        try:
            result = await self.operation(items)
        except Exception as e:
            logger.warning(f"Bulk operation raised for batch {group_id}: {e!r}")
            result = BulkResult.all_failed(items, repr(e))

        outcome = result.outcome(items)
        succeeded = result.succeeded_ids(items)
        await self.store.delete(succeeded, group_id=group_id)

        if outcome is BulkOutcome.ALL_SUCCEEDED:
            logger.info(f"Batch {group_id} succeeded, deleted {len(succeeded)} event(s)")
            return BatchReport(
                group_id=group_id,
                outcome=BatchOutcome.SUCCEEDED,
                processed=len(items),
                deleted=len(succeeded),
            )

        remaining = [item for item in items if item.event.id not in succeeded]
        failed = {item.event.id: result.failed[item.event.id] for item in remaining}
        error = _summarize(failed)
        attempts = await self.store.record_failure(group_id, error)

        if attempts >= self.max_retry_attempts:
            await self._abandon(group_id, remaining, attempts, error)

        if outcome is BulkOutcome.PARTIAL:
            logger.warning(
                f"Batch {group_id}: {len(succeeded)} succeeded, {len(failed)} failed "
                f"(attempt {attempts}/{self.max_retry_attempts}), will retry"
            )
            raise BulkOperationPartialFailure(group_id, attempts, failed)
        logger.warning(
            f"Batch {group_id}: all {len(failed)} item(s) failed "
            f"(attempt {attempts}/{self.max_retry_attempts}), will retry"
        )
        raise BulkOperationFailure(group_id, attempts, error)

    async def _abandon(self, group_id: str, remaining: List[BatchItem], attempts: int, error: str):
        """
        Deletes the members the claimer will never select again, since their
        `group_id` is already set. This is a deliberate data-loss point and is
        always reported before it is raised.
        """
        reason = f"abandoned after {attempts} attempt(s): {error}"
        if self.archiver is not None:
            await self.archiver.archive(group_id, remaining, reason)
        deleted = [item.event.id for item in remaining]
        await self.store.delete(deleted, group_id=group_id)

        failure = BulkOperationTotalFailure(group_id, attempts, deleted, error)
        logger.error(
            f"Batch {group_id} abandoned after {attempts} attempt(s), "
            f"deleted {len(deleted)} event(s): {error}"
        )
        if self.on_abandoned is not None:
            callback_result = self.on_abandoned(failure)
            if inspect.isawaitable(callback_result):
                await callback_result
        raise failure
