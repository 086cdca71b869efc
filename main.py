import argparse
import asyncio
import json
import logging
import random
from typing import List

from buffer_table import BatchItem, BulkResult, open_buffer_table


class FakeBulkApi:
    """Stands in for a rate-limited third-party bulk endpoint."""

    def __init__(self, fail_rate: float, latency: float):
        self.fail_rate = fail_rate
        self.latency = latency
        self.calls = 0
        self.delivered = 0

    async def __call__(self, items: List[BatchItem]) -> BulkResult:
        self.calls += 1
        await asyncio.sleep(self.latency)
        failed = {
            item.event.id: "rejected by remote"
            for item in items
            if random.random() < self.fail_rate
        }
        self.delivered += len(items) - len(failed)
        return BulkResult(failed=failed)


async def run(args: argparse.Namespace):
    api = FakeBulkApi(fail_rate=args.fail_rate, latency=args.latency)
    async with open_buffer_table(
        api,
        url=args.url,
        batch_size=args.batch_size,
        max_batches_per_tick=args.max_batches,
        max_retry_attempts=args.max_retries,
        retry_backoff_initial=0.1,
        retry_backoff_max=1.0,
        orphan_timeout=None,
    ) as table:
        for i in range(args.events):
            payload = json.dumps({"contact_id": i, "activity": "email_opened"}).encode()
            await table.enqueue("contact_activity", payload)
        print(f"Enqueued {args.events} events: {await table.metrics()}")

        ticks = 0
        while (await table.store.count_unclaimed()) > 0:
            ticks += 1
            scheduled = await table.run_once()
            print(f"Tick {ticks}: scheduled {scheduled} claimer(s)")

        print(f"Bulk calls: {api.calls}, items delivered: {api.delivered}")
        print(f"Dead-lettered tasks: {len(table.scheduler.dead_letters)}")
        print(f"Final state: {await table.metrics()}")


def main():
    parser = argparse.ArgumentParser(description="Run the buffer table end to end against a fake bulk API.")
    parser.add_argument("--url", default="sqlite://")
    parser.add_argument("--events", type=int, default=2500)
    parser.add_argument("--batch-size", type=int, default=1000)
    parser.add_argument("--max-batches", type=int, default=10)
    parser.add_argument("--max-retries", type=int, default=3)
    parser.add_argument("--fail-rate", type=float, default=0.0)
    parser.add_argument("--latency", type=float, default=0.05)
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    asyncio.run(run(args))


if __name__ == "__main__":
    main()
