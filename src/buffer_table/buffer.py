from typing import Any, Dict, List, Tuple
import asyncio
import logging

from .claimer import Claimer
from .config import BufferTableSettings
from .distributor import Distributor
from .processor import AbandonedCallback, BatchProcessor
from .protocols import Archiver, BulkOperation, EventStore, TaskScheduler
from .scheduler import AsyncioTaskScheduler
from .sweeper import OrphanSweeper

logger = logging.getLogger(__name__)


class BufferTable:
    """
    Wires a store, a bulk operation and a scheduler into a running buffer
    table: a distribution timer that sizes the backlog and launches claimers,
    claimers that launch one batch processor per batch, and an optional sweep
    timer for orphaned batches.
    """

    def __init__(
        self,
        store: EventStore,
        operation: BulkOperation,
        settings: BufferTableSettings | None = None,
        scheduler: TaskScheduler | None = None,
        archiver: Archiver | None = None,
        on_abandoned: AbandonedCallback | None = None,
    ):
        self.settings = settings or BufferTableSettings()
        self.store = store
        # One attempt more than the processor allows: a run that fails before
        # recording a failure must not use up the attempt that abandons the batch.
        self.scheduler = scheduler or AsyncioTaskScheduler(
            max_attempts=self.settings.max_retry_attempts + 1,
            backoff_initial=self.settings.retry_backoff_initial,
            backoff_max=self.settings.retry_backoff_max,
            max_concurrency=self.settings.max_concurrency,
            max_dead_letters=self.settings.dead_letter_limit,
        )
        self.processor = BatchProcessor(
            store,
            operation,
            max_retry_attempts=self.settings.max_retry_attempts,
            archiver=archiver,
            on_abandoned=on_abandoned,
        )
        self.claimer = Claimer(store, self.scheduler, self.processor, self.settings.batch_size)
        self.distributor = Distributor(
            store, self.scheduler, self.claimer, self.settings.max_batches_per_tick
        )
        self.sweeper: OrphanSweeper | None = None
        if self.settings.orphan_timeout is not None:
            self.sweeper = OrphanSweeper(
                store, self.scheduler, self.processor, self.settings.orphan_timeout
            )
        self._timers: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._timers)

    async def start(self):
        """Installs the distribution timer and, if enabled, the sweep timer."""
        if self._timers:
            return
        self._timers.append(
            self.scheduler.schedule_timer(self.settings.distribution_interval, self.distributor.tick)
        )
        if self.sweeper is not None:
            self._timers.append(
                self.scheduler.schedule_timer(self.settings.sweep_interval, self.sweeper.sweep)
            )
        logger.info(
            f"Buffer table started (batch_size={self.settings.batch_size}, "
            f"max_batches_per_tick={self.settings.max_batches_per_tick}, "
            f"interval={self.settings.distribution_interval}s)"
        )

    async def stop(self):
        self._timers.clear()
        await self.scheduler.stop()
        logger.info("Buffer table stopped")

    async def run_once(self) -> int:
        """Runs one distributor tick and waits for every task it caused."""
        scheduled = await self.distributor.tick()
        await self.scheduler.drain()
        return scheduled

    async def enqueue(self, kind: str, data: bytes) -> Tuple[int, int]:
        return await self.store.enqueue(kind, data)

    async def metrics(self) -> Dict[str, Any]:
        return await self.store.metrics()
