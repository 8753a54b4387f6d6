"""Load generator that measures put and get latency against a running server."""

from __future__ import annotations

import argparse
import logging
import random
import sys
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from typing import Callable, Sequence

DEFAULT_TIMEOUT = 30.0

_log = logging.getLogger(__name__)


def _format_duration(seconds: float) -> str:
    """Render a duration the way durations are usually shown: 12ns, 3.5µs, 2ms, 1.25s."""
    nanos = round(seconds * 1e9)
    if nanos == 0:
        return "0s"
    magnitude = abs(nanos)
    if magnitude < 1_000:
        return f"{nanos}ns"
    if magnitude < 1_000_000:
        value, unit, places = nanos / 1e3, "µs", 3
    elif magnitude < 1_000_000_000:
        value, unit, places = nanos / 1e6, "ms", 6
    else:
        value, unit, places = nanos / 1e9, "s", 9
    text = f"{value:.{places}f}".rstrip("0").rstrip(".")
    return f"{text}{unit}"


class LatencyStats:
    """Thread-safe collector of operation latencies and error counts."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.operations = 0
        self.total_latency = 0.0
        self.min_latency = float("inf")
        self.max_latency = 0.0
        self.error_count = 0
        self.latencies: list[float] = []
        self.start_time = time.perf_counter()

    def _elapsed(self) -> float:
        return time.perf_counter() - self.start_time

    def record_latency(self, seconds: float) -> None:
        """Count one successful operation that took ``seconds``."""
        with self._lock:
            self.operations += 1
            self.total_latency += seconds
            self.min_latency = min(self.min_latency, seconds)
            self.max_latency = max(self.max_latency, seconds)
            self.latencies.append(seconds)

    def record_error(self) -> None:
        """Count one failed operation."""
        with self._lock:
            self.error_count += 1

    def percentiles(self) -> tuple[float, float]:
        """The 95th and 99th percentile latencies, or zeros when nothing was recorded."""
        with self._lock:
            if not self.latencies:
                return 0.0, 0.0
            self.latencies.sort()
            count = len(self.latencies)
            return self.latencies[int(count * 0.95)], self.latencies[int(count * 0.99)]

    def report(self, operation: str) -> str:
        """A multi-line summary of the collected statistics."""
        with self._lock:
            ops = self.operations
        if ops == 0:
            return f"{operation}: No operations performed"
        p95, p99 = self.percentiles()
        duration = self._elapsed()
        throughput = ops / duration if duration > 0 else 0.0
        with self._lock:
            average = self.total_latency / ops
            minimum = self.min_latency
            maximum = self.max_latency
            errors = self.error_count
        lines = [
            f"{operation} Statistics:",
            f"  Operations:    {ops}",
            f"  Runtime:       {_format_duration(round(duration, 3))}",
            f"  Throughput:    {throughput:.2f} ops/sec",
            f"  Avg Latency:   {_format_duration(average)}",
            f"  Min Latency:   {_format_duration(minimum)}",
            f"  Max Latency:   {_format_duration(maximum)}",
            f"  P95 Latency:   {_format_duration(p95)}",
            f"  P99 Latency:   {_format_duration(p99)}",
            f"  Error Count:   {errors}",
        ]
        return "\n".join(lines)


def _request(method: str, url: str, body: bytes | None, timeout: float) -> tuple[int, bytes]:
    request = urllib.request.Request(url, data=body, method=method)
    try:
        with urllib.request.urlopen(request, timeout=timeout) as response:
            return response.status, response.read()
    except urllib.error.HTTPError as exc:
        try:
            return exc.code, exc.read()
        finally:
            exc.close()


def _key_url(server: str, endpoint: str, key: str) -> str:
    return f"{server}/{endpoint}?key={urllib.parse.quote(key, safe='')}"


def put_key(server: str, key: str, value: bytes, timeout: float = DEFAULT_TIMEOUT) -> None:
    """Store ``value`` under ``key`` on the server; raises RuntimeError on a non-200 reply."""
    status, _ = _request("POST", _key_url(server, "put", key), bytes(value), timeout)
    if status != 200:
        raise RuntimeError(f"unexpected status code: {status}")


def get_key(server: str, key: str, timeout: float = DEFAULT_TIMEOUT) -> bytes:
    """Fetch the value of ``key``; raises LookupError when the server does not have it."""
    status, body = _request("GET", _key_url(server, "get", key), None, timeout)
    if status == 404:
        raise LookupError("key not found")
    if status != 200:
        raise RuntimeError(f"unexpected status code: {status}")
    return body


def _run_workers(
    stats: LatencyStats,
    total: int,
    threads: int,
    interval: int,
    label: str,
    operation: Callable[[int], object],
    describe: Callable[[int], str],
) -> None:
    if threads < 1:
        raise ValueError(f"threads must be at least 1: {threads}")
    interval = max(1, interval)
    per_thread = -(-total // threads)

    def worker(start: int, end: int) -> None:
        for item in range(start, end):
            started = time.perf_counter()
            try:
                operation(item)
            except Exception as exc:
                stats.record_error()
                _log.warning("%s: %s", describe(item), exc)
            else:
                stats.record_latency(time.perf_counter() - started)
            ops = stats.operations
            if ops % interval == 0:
                elapsed = stats._elapsed()
                throughput = ops / elapsed if elapsed > 0 else 0.0
                print(f"\r{label}: {ops}/{total} ({throughput:.2f} ops/sec)", end="", flush=True)

    workers = [
        threading.Thread(
            target=worker,
            args=(t * per_thread, min((t + 1) * per_thread, total)),
            name=f"bench-{t}",
        )
        for t in range(threads)
    ]
    for thread in workers:
        thread.start()
    for thread in workers:
        thread.join()
    print()


def run_insert_benchmark(
    server: str,
    keys: Sequence[str],
    values: Sequence[bytes],
    threads: int = 4,
    report_interval: int = 1000,
) -> LatencyStats:
    """Put every key with its value, spread over ``threads`` threads."""
    if len(keys) != len(values):
        raise ValueError("keys and values must have the same length")
    stats = LatencyStats()
    _run_workers(
        stats,
        len(keys),
        threads,
        report_interval,
        "Inserts",
        lambda item: put_key(server, keys[item], values[item]),
        lambda item: f"Error putting key {keys[item]}",
    )
    return stats


def run_query_benchmark(
    server: str,
    keys: Sequence[str],
    num_queries: int,
    threads: int = 4,
    report_interval: int = 1000,
) -> LatencyStats:
    """Get ``num_queries`` keys chosen at random from ``keys``."""
    if num_queries > 0 and not keys:
        raise ValueError("no keys to query")
    query_keys = [random.choice(keys) for _ in range(num_queries)]
    stats = LatencyStats()
    _run_workers(
        stats,
        num_queries,
        threads,
        report_interval // 10,
        "Queries",
        lambda item: get_key(server, query_keys[item]),
        lambda item: f"Error getting key {query_keys[item]}",
    )
    return stats


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Benchmark a key-value server")
    parser.add_argument("-server", "--server", default="http://localhost:8080",
                        help="Server address")
    parser.add_argument("-inserts", "--inserts", type=int, default=1_000_000,
                        help="Number of inserts to perform")
    parser.add_argument("-queries", "--queries", type=int, default=1000,
                        help="Number of queries to perform")
    parser.add_argument("-threads", "--threads", type=int, default=4,
                        help="Number of threads")
    parser.add_argument("-value-size", "--value-size", dest="value_size", type=int, default=100,
                        help="Size of values in bytes")
    parser.add_argument("-report-interval", "--report-interval", dest="report_interval",
                        type=int, default=1000, help="Report progress every N operations")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Run the insert benchmark and then the query benchmark."""
    args = _parse_args(argv)
    print("Generating random data...")
    keys = [f"key-{i}" for i in range(args.inserts)]
    values = [random.randbytes(args.value_size) for _ in keys]

    try:
        print(f"Running insert benchmark with {args.threads} threads...")
        insert_stats = run_insert_benchmark(
            args.server, keys, values, args.threads, args.report_interval
        )
        print("\n" + insert_stats.report("Insert"))

        print(f"\nRunning query benchmark with {args.threads} threads...")
        query_stats = run_query_benchmark(
            args.server, keys, args.queries, args.threads, args.report_interval
        )
        print("\n" + query_stats.report("Query"))
    except ValueError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    sys.exit(main())