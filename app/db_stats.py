"""
Query Statistics
Running counters for the data-access layer; derived ratios are computed on
read and never stored.
"""

import threading
from dataclasses import asdict, dataclass
from typing import Dict


@dataclass
class Stats:
    queries_executed: int = 0
    failed_queries: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    total_execution_time_ms: float = 0.0


class StatsCollector:
    """Thread-safe counters; only the manager's components mutate them"""

    def __init__(self):
        self._stats = Stats()
        self._lock = threading.Lock()

    def record_query(self, execution_time_ms: float):
        with self._lock:
            self._stats.queries_executed += 1
            self._stats.total_execution_time_ms += execution_time_ms

    def record_failure(self):
        with self._lock:
            self._stats.failed_queries += 1

    def record_cache_hit(self):
        with self._lock:
            self._stats.cache_hits += 1

    def record_cache_miss(self):
        with self._lock:
            self._stats.cache_misses += 1

    def counters(self) -> Stats:
        with self._lock:
            return Stats(**asdict(self._stats))

    def snapshot(self) -> Dict[str, float]:
        """Counters plus average time, cache-hit ratio and error rate"""
        stats = self.counters()
        lookups = stats.cache_hits + stats.cache_misses

        result: Dict[str, float] = asdict(stats)
        result["total_execution_time_ms"] = round(stats.total_execution_time_ms, 2)
        result["average_execution_time"] = (
            round(stats.total_execution_time_ms / stats.queries_executed, 2)
            if stats.queries_executed > 0 else 0
        )
        result["cache_hit_ratio"] = (
            round(stats.cache_hits / lookups * 100, 2) if lookups > 0 else 0
        )
        result["error_rate"] = (
            round(stats.failed_queries / stats.queries_executed * 100, 2)
            if stats.queries_executed > 0 else 0
        )
        return result
