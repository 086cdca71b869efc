import logging
from typing import List

from .models import BatchInfo
from .processor import BatchProcessor
from .protocols import EventStore, TaskScheduler

logger = logging.getLogger(__name__)


class OrphanSweeper:
    """
    Recovers batches whose processor crashed or was cancelled.

    The claimer never selects an event whose `group_id` is set, so such a batch
    would otherwise sit in the table forever. A batch whose row has not been
    updated for `orphan_timeout` seconds is handed to the processor again under
    its original `group_id`; events are reprocessed, never released back to
    the unclaimed pool.
    """

    def __init__(
        self,
        store: EventStore,
        scheduler: TaskScheduler,
        processor: BatchProcessor,
        orphan_timeout: float,
    ):
        self.store = store
        self.scheduler = scheduler
        self.processor = processor
        self.orphan_timeout = orphan_timeout

    async def sweep(self) -> List[BatchInfo]:
        orphans = await self.store.stale_batches(self.orphan_timeout)
        for batch in orphans:
            logger.warning(
                f"Orphaned batch {batch.group_id} ({batch.size} event(s), {batch.attempts} "
                f"failed attempt(s)) idle since {batch.updated_at.isoformat()}, reprocessing"
            )
            # Restart the staleness clock so the next sweep leaves it alone.
            await self.store.touch_batch(batch.group_id)
            self.scheduler.schedule(self.processor.process, batch.group_id)
        return orphans
