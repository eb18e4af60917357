"""Prometheus metrics and the per-crawl performance monitor."""

from __future__ import annotations

import resource
import sys
import threading

import structlog
from prometheus_client import Counter, Histogram

logger = structlog.get_logger(__name__)

crawl_tasks = Counter("crawler_tasks_total", "Crawl tasks by outcome", ["outcome"])
task_latency = Histogram("crawler_task_latency_seconds", "Crawl task latency in seconds")
rate_limit_hits = Counter("crawler_rate_limit_hits_total", "Fetches rejected by the rate limiter")


def _rss_megabytes() -> float:
    usage = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # ru_maxrss is bytes on macOS, kilobytes elsewhere
    if sys.platform == "darwin":
        return usage / (1024 * 1024)
    return usage / 1024


class PerformanceMonitor:
    """Counters for one crawl run; also feeds the process-wide Prometheus metrics."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.total_requests = 0
        self.successful_requests = 0
        self.failed_requests = 0
        self.rate_limit_hits = 0
        self._response_time_total = 0.0
        self.peak_memory_mb = _rss_megabytes()

    def record(self, *, success: bool, response_time_ms: float = 0.0, rate_limited: bool = False) -> None:
        with self._lock:
            self.total_requests += 1
            if success:
                self.successful_requests += 1
            else:
                self.failed_requests += 1
            if rate_limited:
                self.rate_limit_hits += 1
            self._response_time_total += response_time_ms
            self.peak_memory_mb = max(self.peak_memory_mb, _rss_megabytes())

        outcome = "success" if success else ("rate_limited" if rate_limited else "failed")
        crawl_tasks.labels(outcome).inc()
        task_latency.observe(response_time_ms / 1000)
        if rate_limited:
            rate_limit_hits.inc()

    @property
    def average_response_time(self) -> float:
        if not self.total_requests:
            return 0.0
        return self._response_time_total / self.total_requests

    def snapshot(self) -> dict[str, float]:
        with self._lock:
            return {
                "total_requests": self.total_requests,
                "successful_requests": self.successful_requests,
                "failed_requests": self.failed_requests,
                "rate_limit_hits": self.rate_limit_hits,
                "average_response_time": round(self.average_response_time, 2),
                "peak_memory_usage": round(self.peak_memory_mb, 2),
            }

    def log_metrics(self, **context) -> dict[str, float]:
        data = self.snapshot()
        logger.info("crawler_performance_metrics", **context, **data)
        return data
