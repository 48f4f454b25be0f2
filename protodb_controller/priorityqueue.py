"""A de-duplicating work queue ordered by readiness, priority and insertion."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Hashable

from sortedcontainers import SortedKeyList

from .log import Logger
from .metrics import WorkqueueMetricsProvider
from .queuemetrics import NoMetrics, new_queue_metrics
from .ratelimiter import ItemExponentialFailureRateLimiter

_UNFINISHED_WORK_INTERVAL = 0.5
_LOG_STATE_INTERVAL = 10.0


@dataclass(frozen=True)
class AddOpts:
    """How items are added: after a delay (seconds), rate limited, and with what priority."""

    after: float = 0.0
    rate_limited: bool = False
    priority: int = 0


@dataclass
class _Item:
    key: Hashable
    added_counter: int
    priority: int
    ready_at: float | None = None


def _order(item: _Item) -> tuple:
    if item.ready_at is None:
        return (0, 0.0, -item.priority, item.added_counter)
    return (1, item.ready_at, -item.priority, item.added_counter)


class PriorityQueue:
    """A work queue that de-duplicates items, keeping the highest priority and the earliest readiness.

    Ready items come out highest priority first, then in the order they were
    added. An item handed out by :meth:`get` is not handed out again until
    :meth:`done` is called for it.
    """

    def __init__(
        self,
        name: str = "",
        *,
        rate_limiter: Any = None,
        metric_provider: Any = None,
        log: Logger | None = None,
        now: Callable[[], float] | None = None,
    ) -> None:
        self.name = name
        self._rate_limiter = rate_limiter or ItemExponentialFailureRateLimiter(0.005, 1000.0)
        self._now = now or time.monotonic
        self._log = log if log is not None else Logger()
        self._metrics = new_queue_metrics(
            metric_provider or WorkqueueMetricsProvider(), name, self._now
        )
        self._cond = threading.Condition(threading.Lock())
        self._items: dict[Hashable, _Item] = {}
        self._queue: SortedKeyList = SortedKeyList(key=_order)
        self._added_counter = 0
        self._became_ready: set[Hashable] = set()
        self._locked: set[Hashable] = set()
        self._shutdown = False
        self._stopped = threading.Event()

        threading.Thread(target=self._log_state, daemon=True).start()
        if not isinstance(self._metrics, NoMetrics):
            threading.Thread(target=self._update_unfinished_work_loop, daemon=True).start()

    def add_with_opts(self, opts, *args):
        """Add each item with ``opts``; an item already queued keeps its place unless moved earlier."""
        with self._cond:
            for key in args:
                after = opts.after
                if opts.rate_limited:
                    limited = self._rate_limiter.when(key)
                    if after == 0 or limited < after:
                        after = limited

                ready_at = None
                if after > 0:
                    ready_at = self._now() + after
                    self._metrics.retry()

                existing = self._items.get(key)
                if existing is None:
                    item = _Item(key, self._added_counter, opts.priority, ready_at)
                    self._items[key] = item
                    self._queue.add(item)
                    if ready_at is None:
                        self._metrics.add(key)
                    self._added_counter += 1
                    continue

                self._queue.remove(existing)
                existing.priority = max(existing.priority, opts.priority)
                if existing.ready_at is not None and (ready_at is None or ready_at < existing.ready_at):
                    if ready_at is None and key not in self._became_ready:
                        self._metrics.add(key)
                    existing.ready_at = ready_at
                self._queue.add(existing)

            if args:
                self._cond.notify_all()

    def add(self, item):
        self.add_with_opts(AddOpts(), item)

    def add_after(self, item, after):
        self.add_with_opts(AddOpts(after=after), item)

    def add_rate_limited(self, item):
        self.add_with_opts(AddOpts(rate_limited=True), item)

    def _take(self) -> tuple[_Item | None, float | None]:
        """Pick the first ready, unlocked item; also return how long until the next one is ready."""
        now = self._now()
        chosen = None
        wait = None
        for item in self._queue:
            if item.ready_at is not None:
                remaining = item.ready_at - now
                if remaining > 0:
                    wait = remaining
                    break
                if item.key not in self._became_ready:
                    self._metrics.add(item.key)
                    self._became_ready.add(item.key)
            if chosen is None and item.key not in self._locked:
                chosen = item

        if chosen is not None:
            self._metrics.get(chosen.key)
            self._locked.add(chosen.key)
            del self._items[chosen.key]
            self._queue.remove(chosen)
            self._became_ready.discard(chosen.key)
        return chosen, wait

    def get_with_priority(self):
        """Block until an item is ready; return ``(item, priority, shutdown)``."""
        with self._cond:
            while True:
                if self._shutdown:
                    return None, 0, True
                item, wait = self._take()
                if item is not None:
                    return item.key, item.priority, False
                self._cond.wait(wait)

    def get(self):
        """Block until an item is ready; return ``(item, shutdown)``."""
        key, _, shutdown = self.get_with_priority()
        return key, shutdown

    def forget(self, item):
        self._rate_limiter.forget(item)

    def num_requeues(self, item):
        return self._rate_limiter.num_requeues(item)

    def shutting_down(self):
        return self._shutdown

    def done(self, item):
        """Mark ``item`` as processed, so that it can be handed out again."""
        with self._cond:
            self._locked.discard(item)
            self._metrics.done(item)
            self._cond.notify_all()

    def shut_down(self):
        with self._cond:
            self._shutdown = True
            self._stopped.set()
            self._cond.notify_all()

    def shut_down_with_drain(self):
        self.shut_down()

    def __len__(self):
        """Number of items ready to be picked up; delayed items that are not yet ready are left out."""
        with self._cond:
            now = self._now()
            count = 0
            for item in self._queue:
                if item.ready_at is not None and item.ready_at > now:
                    break
                count += 1
            return count

    def _log_state(self) -> None:
        while not self._stopped.wait(_LOG_STATE_INTERVAL):
            verbose = self._log.v(5)
            if not verbose.enabled():
                continue
            with self._cond:
                items = [
                    {
                        "key": item.key,
                        "addedCounter": item.added_counter,
                        "priority": item.priority,
                        "readyAt": item.ready_at,
                    }
                    for item in self._queue
                ]
            verbose.info("workqueue_items", "items", items)

    def _update_unfinished_work_loop(self) -> None:
        while not self._stopped.wait(_UNFINISHED_WORK_INTERVAL):
            self._metrics.update_unfinished_work()