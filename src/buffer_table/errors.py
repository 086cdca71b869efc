"""
Exception hierarchy for the buffer table.

Retryable errors are raised back to the task scheduler so that it re-runs the
same batch; terminal errors are reported once and never retried.
"""
from typing import Dict, Iterable


class BufferTableError(Exception):
    """Base class for all buffer table errors."""


class IntegrityError(BufferTableError):
    """An insert or delete violated a referential or uniqueness constraint."""


class PayloadDecryptError(BufferTableError):
    """A stored record payload could not be decrypted with the configured key."""


class RetryableBatchError(BufferTableError):
    def __init__(self, group_id: str, attempts: int, message: str):
        super().__init__(message)
        self.group_id = group_id
        self.attempts = attempts


class BulkOperationPartialFailure(RetryableBatchError):
    """Some members of a batch failed; the succeeded ones are already deleted."""

    def __init__(self, group_id: str, attempts: int, failed: Dict[int, str]):
        super().__init__(
            group_id,
            attempts,
            f"Batch {group_id}: {len(failed)} item(s) failed on attempt {attempts}",
        )
        self.failed = failed


class BulkOperationFailure(RetryableBatchError):
    """Every member of a batch failed this attempt."""

    def __init__(self, group_id: str, attempts: int, error: str):
        super().__init__(
            group_id, attempts, f"Batch {group_id} failed on attempt {attempts}: {error}"
        )
        self.error = error


class TerminalError(BufferTableError):
    """Errors the task scheduler must not retry."""


class BulkOperationTotalFailure(TerminalError):
    """A batch exhausted its retry budget and its remaining members were deleted."""

    def __init__(self, group_id: str, attempts: int, deleted: Iterable[int], error: str):
        self.group_id = group_id
        self.attempts = attempts
        self.deleted = sorted(deleted)
        self.error = error
        super().__init__(
            f"Batch {group_id} abandoned after {attempts} attempt(s); "
            f"deleted {len(self.deleted)} event(s): {error}"
        )
