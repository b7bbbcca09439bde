"""
Benchmark for the cache read path and request coalescing.

Compares:
- No cache (every read hits the slow fetcher)
- AdvancedCache.get_or_set (default and compressed strategies)
- RequestOptimizer with and without deduplication

Scenarios:
1. Hot cache (repeated access)
2. Mixed workload (varying keys, some misses)
3. Burst of identical requests (dedup)

Run with: python tests/benchmark.py
"""

import asyncio
import random
import time
from statistics import mean, median, stdev
from typing import List

from tripcache import AdvancedCache, BatchConfig, RequestOptimizer

# ============================================================================
# Benchmark Configuration
# ============================================================================

WORK_DURATION_MS = 10  # Simulated backend latency


async def slow_fetch(trip_id: int) -> dict:
    """Simulate a slow backend read."""
    await asyncio.sleep(WORK_DURATION_MS / 1000.0)
    return {
        "id": trip_id,
        "title": f"Trip {trip_id}",
        "days": [{"day": d, "city": "Kyoto"} for d in range(7)],
    }


class SlowTransport:
    """Transport that sleeps once per batch."""

    def __init__(self):
        self.calls = 0

    async def request(self, endpoint, method="GET", data=None):
        return (await self.batch(endpoint, method, [data]))[0]

    async def batch(self, endpoint, method, payloads):
        self.calls += 1
        await asyncio.sleep(WORK_DURATION_MS / 1000.0)
        return [{"endpoint": endpoint, "data": data} for data in payloads]


# ============================================================================
# Benchmark Utilities
# ============================================================================


class BenchmarkResult:
    """Timings for one scenario, in milliseconds."""

    def __init__(self, name: str, times: List[float], notes: str = ""):
        self.name = name
        self.times = times
        self.notes = notes

    @property
    def median_ms(self) -> float:
        return median(self.times)

    @property
    def mean_ms(self) -> float:
        return mean(self.times)

    @property
    def stdev_ms(self) -> float:
        return stdev(self.times) if len(self.times) > 1 else 0.0

    def print_row(self):
        print(
            f"  {self.name:<34} {self.median_ms:>9.4f}ms {self.mean_ms:>9.4f}ms "
            f"{self.stdev_ms:>9.4f}ms  {self.notes}"
        )


def print_header(title: str):
    print(f"\n{title}")
    print(f"  {'Scenario':<34} {'Median':>11} {'Mean':>11} {'Stdev':>11}  Notes")
    print(f"  {'-' * 84}")


async def timed(coro_factory, iterations: int) -> List[float]:
    times = []
    for i in range(iterations):
        start = time.perf_counter()
        await coro_factory(i)
        times.append((time.perf_counter() - start) * 1000)
    return times


# ============================================================================
# Scenarios
# ============================================================================


async def bench_hot_cache(iterations: int = 1000) -> List[BenchmarkResult]:
    print_header("Scenario 1: Hot cache (same key)")
    results = []

    no_cache = await timed(lambda i: slow_fetch(1), max(iterations // 50, 5))
    results.append(BenchmarkResult("No cache", no_cache, "backend every time"))

    for strategy in ("default", "static"):
        cache = AdvancedCache()
        await cache.get_or_set("trip:1", lambda: slow_fetch(1), strategy)
        times = await timed(
            lambda i: cache.get_or_set("trip:1", lambda: slow_fetch(1), strategy),
            iterations,
        )
        hit_rate = cache.get_analytics().hit_rate
        results.append(
            BenchmarkResult(f"get_or_set ({strategy})", times, f"hit rate {hit_rate:.1%}")
        )

    for result in results:
        result.print_row()
    return results


async def bench_mixed_workload(iterations: int = 1000, keys: int = 100) -> BenchmarkResult:
    print_header(f"Scenario 2: Mixed workload ({keys} keys)")
    cache = AdvancedCache(max_size=keys // 2)
    rng = random.Random(42)

    async def read(i):
        trip_id = rng.randrange(keys)
        return await cache.get_or_set(f"trip:{trip_id}", lambda: slow_fetch(trip_id))

    times = await timed(read, iterations)
    analytics = cache.get_analytics()
    result = BenchmarkResult(
        "get_or_set (LRU bound = keys/2)",
        times,
        f"hit rate {analytics.hit_rate:.1%}, {analytics.entry_count} entries",
    )
    result.print_row()
    return result


async def bench_request_burst(burst: int = 50, rounds: int = 20) -> List[BenchmarkResult]:
    print_header(f"Scenario 3: Burst of {burst} identical requests")
    results = []

    for deduplicate in (False, True):
        transport = SlowTransport()
        optimizer = RequestOptimizer(transport, BatchConfig(batch_timeout=0.001))

        async def one_burst(i):
            await asyncio.gather(
                *(
                    optimizer.optimized_request(
                        "/search", data={"q": f"paris-{i}"}, deduplicate=deduplicate
                    )
                    for _ in range(burst)
                )
            )

        times = await timed(one_burst, rounds)
        label = "dedup on" if deduplicate else "dedup off"
        results.append(
            BenchmarkResult(
                f"optimized_request ({label})",
                times,
                f"{transport.calls} transport calls",
            )
        )
        await optimizer.close()

    for result in results:
        result.print_row()
    return results


async def main():
    print("=" * 90)
    print("tripcache benchmark")
    print("=" * 90)
    await bench_hot_cache()
    await bench_mixed_workload()
    await bench_request_burst()


if __name__ == "__main__":
    asyncio.run(main())
