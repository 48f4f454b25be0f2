"""Work queue metrics: depth, adds, latency, work duration, unfinished work and retries."""

from __future__ import annotations

import threading
import time
from typing import Any, Callable, Hashable


class NoMetrics:
    """Metrics for queues without a name: plain tallies that are never exported."""

    def __init__(self) -> None:
        self.adds = 0
        self.gets = 0
        self.dones = 0
        self.retries = 0
        self.unfinished_updates = 0

    def add(self, item):
        self.adds += 1

    def get(self, item):
        self.gets += 1

    def done(self, item):
        self.dones += 1

    def update_unfinished_work(self):
        self.unfinished_updates += 1

    def retry(self):
        self.retries += 1


class DefaultQueueMetrics:
    """Records queue metrics through the metrics a provider creates for one queue name."""

    def __init__(self, provider: Any, name: str, clock: Callable[[], float]) -> None:
        self._clock = clock
        self.depth = provider.new_depth_metric(name)
        self.adds = provider.new_adds_metric(name)
        self.latency = provider.new_latency_metric(name)
        self.work_duration = provider.new_work_duration_metric(name)
        self.unfinished_work_seconds = provider.new_unfinished_work_seconds_metric(name)
        self.longest_running_processor = provider.new_longest_running_processor_seconds_metric(name)
        self.retries = provider.new_retries_metric(name)
        self._lock = threading.Lock()
        self._add_times: dict[Hashable, float] = {}
        self._processing_start_times: dict[Hashable, float] = {}

    def _since(self, start: float) -> float:
        return self._clock() - start

    def add(self, item):
        """Record that ``item`` became ready in the queue."""
        self.adds.inc()
        self.depth.inc()
        with self._lock:
            self._add_times.setdefault(item, self._clock())

    def get(self, item):
        """Record that ``item`` was handed out for processing."""
        self.depth.dec()
        with self._lock:
            self._processing_start_times[item] = self._clock()
            start = self._add_times.pop(item, None)
            if start is not None:
                self.latency.observe(self._since(start))

    def done(self, item):
        """Record that processing of ``item`` finished."""
        with self._lock:
            start = self._processing_start_times.pop(item, None)
            if start is not None:
                self.work_duration.observe(self._since(start))

    def update_unfinished_work(self):
        with self._lock:
            ages = [self._since(start) for start in self._processing_start_times.values()]
        self.unfinished_work_seconds.set(sum(ages))
        self.longest_running_processor.set(max(ages, default=0.0))

    def retry(self):
        self.retries.inc()


def new_queue_metrics(provider, name, clock):
    """Return metrics for queue ``name``; a queue without a name exports none."""
    if not name:
        return NoMetrics()
    return DefaultQueueMetrics(provider, name, clock or time.monotonic)