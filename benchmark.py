import argparse
import asyncio
import os
import tempfile
import time
from typing import List

from buffer_table import BatchItem, BulkResult, open_buffer_table


async def noop_bulk(items: List[BatchItem]) -> BulkResult:
    return BulkResult()


async def benchmark(num_events: int, batch_size: int):
    print(f"Benchmarking with {num_events} events, batch size {batch_size}...")

    async def run_mode(url: str):
        async with open_buffer_table(
            noop_bulk,
            url=url,
            batch_size=batch_size,
            max_batches_per_tick=max(1, num_events // batch_size + 1),
            orphan_timeout=None,
        ) as table:
            # --- Enqueue benchmark ---
            # One transaction per event, as a producer would do it.
            start_enqueue = time.perf_counter()
            for i in range(num_events):
                await table.enqueue("bench", f"data{i}".encode())
            enqueue_time = time.perf_counter() - start_enqueue

            # --- Claim + process benchmark ---
            start_drain = time.perf_counter()
            await table.run_once()
            drain_time = time.perf_counter() - start_drain

            metrics = await table.metrics()
            assert metrics["unclaimed"] == 0 and metrics["claimed"] == 0

        return enqueue_time, drain_time

    mem_enqueue, mem_drain = await run_mode("sqlite://")

    with tempfile.TemporaryDirectory() as tmpdir:
        db_path = os.path.join(tmpdir, "bench.db")
        file_enqueue, file_drain = await run_mode(f"sqlite:///{db_path}")

    def rate(seconds: float) -> float:
        return num_events / seconds if seconds > 0 else 0

    print(f"\n--- Results for {num_events} events ---")
    print(f"In-memory SQLite  - Enqueue: {mem_enqueue:.4f}s ({rate(mem_enqueue):,.0f} events/s), Claim+process: {mem_drain:.4f}s ({rate(mem_drain):,.0f} events/s)")
    print(f"File-based SQLite - Enqueue: {file_enqueue:.4f}s ({rate(file_enqueue):,.0f} events/s), Claim+process: {file_drain:.4f}s ({rate(file_drain):,.0f} events/s)")


async def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--num-events", type=int, default=5000)
    parser.add_argument("--batch-size", type=int, default=1000)
    args = parser.parse_args()
    await benchmark(args.num_events, args.batch_size)


if __name__ == "__main__":
    asyncio.run(main())
