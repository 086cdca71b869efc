import logging

from .models import ClaimedBatch
from .processor import BatchProcessor
from .protocols import EventStore, TaskScheduler

logger = logging.getLogger(__name__)


class Claimer:
    """
    Turns up to `batch_size` unclaimed events into exactly one new batch and
    hands it to the batch processor.

    The claim itself is one atomic store operation, so any number of claimers
    may run at once. A claimer that finds nothing writes nothing, which makes
    surplus invocations cheap no-ops. If the claim fails, no event is marked
    and the whole invocation can simply be retried.
    """

    def __init__(
        self,
        store: EventStore,
        scheduler: TaskScheduler,
        processor: BatchProcessor,
        batch_size: int,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.store = store
        self.scheduler = scheduler
        self.processor = processor
        self.batch_size = batch_size

    async def __call__(self) -> ClaimedBatch | None:
        batch = await self.store.claim_batch(self.batch_size)
        if batch is None:
            logger.debug("Nothing to claim")
            return None
        logger.info(f"Claimed batch {batch.group_id} with {batch.size} event(s)")
        # Only after the claim has committed.
        self.scheduler.schedule(self.processor.process, batch.group_id)
        return batch
