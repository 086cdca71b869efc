import logging
import math

from .claimer import Claimer
from .protocols import EventStore, TaskScheduler

logger = logging.getLogger(__name__)


def plan_claims(unclaimed: int, batch_size: int, max_batches_per_tick: int) -> int:
    """Number of claimers to launch: `min(ceil(unclaimed / batch_size), cap)`."""
    if unclaimed <= 0:
        return 0
    return min(math.ceil(unclaimed / batch_size), max_batches_per_tick)


class Distributor:
    """
    Decides, once per tick, how many claimers to launch.

    The unclaimed count is only a snapshot: more events may arrive and
    claimers from an earlier tick may still be running. Overestimating costs
    a few no-op claims and underestimating is corrected on the next tick,
    because claiming itself is safe under races. The cap keeps a sudden spike
    from flooding the scheduler.
    """

    def __init__(
        self,
        store: EventStore,
        scheduler: TaskScheduler,
        claimer: Claimer,
        max_batches_per_tick: int,
    ):
        if max_batches_per_tick < 1:
            raise ValueError("max_batches_per_tick must be at least 1")
        self.store = store
        self.scheduler = scheduler
        self.claimer = claimer
        self.max_batches_per_tick = max_batches_per_tick

    async def tick(self) -> int:
        unclaimed = await self.store.count_unclaimed()
        actual = plan_claims(unclaimed, self.claimer.batch_size, self.max_batches_per_tick)
        for _ in range(actual):
            self.scheduler.schedule(self.claimer)
        if actual:
            logger.info(f"Scheduled {actual} claimer(s) for {unclaimed} unclaimed event(s)")
        else:
            logger.debug("No unclaimed events")
        return actual
