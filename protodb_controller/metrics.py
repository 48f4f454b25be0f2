"""Metric primitives, a registry, and the metrics recorded by controllers and work queues."""

from __future__ import annotations

import bisect
import functools
import math
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterator, Sequence

WORK_QUEUE_SUBSYSTEM = "workqueue"
DEPTH_KEY = "depth"
ADDS_KEY = "adds_total"
QUEUE_LATENCY_KEY = "queue_duration_seconds"
WORK_DURATION_KEY = "work_duration_seconds"
UNFINISHED_WORK_KEY = "unfinished_work_seconds"
LONGEST_RUNNING_PROCESSOR_KEY = "longest_running_processor_seconds"
RETRIES_KEY = "retries_total"

DEFAULT_BUCKETS = (0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0)


def exponential_buckets(start, factor, count):
    """Return ``count`` bucket bounds, the first ``start``, each ``factor`` times the last."""
    if count < 1:
        raise ValueError("exponential_buckets needs a positive count")
    if start <= 0:
        raise ValueError("exponential_buckets needs a positive start value")
    if factor <= 1:
        raise ValueError("exponential_buckets needs a factor greater than 1")
    buckets = []
    value = float(start)
    for _ in range(count):
        buckets.append(value)
        value *= factor
    return buckets


@dataclass(frozen=True)
class Sample:
    """One exported value of a metric."""

    name: str
    labels: dict[str, str]
    value: float


@dataclass(frozen=True)
class MetricFamily:
    """All samples of one named metric, as returned by :meth:`Registry.gather`."""

    name: str
    help: str
    type: str
    samples: list[Sample] = field(default_factory=list)


def _format_bound(bound: float) -> str:
    return "+Inf" if math.isinf(bound) else repr(float(bound))


class Counter:
    """A monotonically increasing value."""

    _type = "counter"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0.0

    @property
    def value(self) -> float:
        with self._lock:
            return self._value

    def inc(self):
        self.add(1.0)

    def add(self, value):
        if value < 0:
            raise ValueError("counter cannot decrease in value")
        with self._lock:
            self._value += value

    def _samples(self, name: str, labels: dict[str, str]) -> Iterator[Sample]:
        yield Sample(name, labels, self.value)


class Gauge:
    """A value that can go up and down."""

    _type = "gauge"

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._value = 0.0

    @property
    def value(self) -> float:
        with self._lock:
            return self._value

    def inc(self):
        self.add(1.0)

    def dec(self):
        self.add(-1.0)

    def add(self, value):
        with self._lock:
            self._value += value

    def set(self, value):
        with self._lock:
            self._value = float(value)

    def _samples(self, name: str, labels: dict[str, str]) -> Iterator[Sample]:
        yield Sample(name, labels, self.value)


class Histogram:
    """Counts observations into cumulative buckets."""

    _type = "histogram"

    def __init__(self, buckets: Sequence[float] | None = None) -> None:
        bounds = list(DEFAULT_BUCKETS if buckets is None else buckets)
        if bounds and math.isinf(bounds[-1]) and bounds[-1] > 0:
            bounds.pop()
        if any(b >= a for b, a in zip(bounds, bounds[1:]) if not b < a):
            raise ValueError("histogram buckets must be in strictly increasing order")
        self._bounds = tuple(float(b) for b in bounds)
        self._lock = threading.Lock()
        self._counts = [0] * len(self._bounds)
        self._count = 0
        self._sum = 0.0

    def observe(self, value):
        with self._lock:
            index = bisect.bisect_left(self._bounds, value)
            if index < len(self._counts):
                self._counts[index] += 1
            self._count += 1
            self._sum += value

    @property
    def count(self) -> int:
        with self._lock:
            return self._count

    @property
    def sum(self) -> float:
        with self._lock:
            return self._sum

    @property
    def buckets(self) -> list[tuple[float, int]]:
        """Cumulative ``(upper bound, count)`` pairs, ending with ``+Inf``."""
        with self._lock:
            result = []
            running = 0
            for bound, count in zip(self._bounds, self._counts):
                running += count
                result.append((bound, running))
            result.append((math.inf, self._count))
            return result

    def _samples(self, name: str, labels: dict[str, str]) -> Iterator[Sample]:
        for bound, count in self.buckets:
            yield Sample(f"{name}_bucket", {**labels, "le": _format_bound(bound)}, float(count))
        yield Sample(f"{name}_sum", labels, self.sum)
        yield Sample(f"{name}_count", labels, float(self.count))


class MetricVec:
    """A family of metrics of one kind, partitioned by label values."""

    def __init__(
        self,
        name: str,
        help: str,
        label_names: Sequence[str],
        factory: Callable[[], Counter | Gauge | Histogram] = Counter,
        *,
        subsystem: str = "",
    ) -> None:
        self.name = f"{subsystem}_{name}" if subsystem else name
        self.help = help
        self.label_names = tuple(label_names)
        self._factory = factory
        self.type = factory()._type
        self._lock = threading.Lock()
        self._children: dict[tuple[str, ...], Counter | Gauge | Histogram] = {}

    def with_label_values(self, *args):
        if len(args) != len(self.label_names):
            raise ValueError(
                f"{self.name}: expected {len(self.label_names)} label values "
                f"but got {len(args)} in {args!r}"
            )
        for value in args:
            if not isinstance(value, str):
                raise TypeError(f"{self.name}: label value {value!r} is not a string")
        with self._lock:
            child = self._children.get(args)
            if child is None:
                child = self._factory()
                self._children[args] = child
            return child

    def _collect(self) -> MetricFamily:
        with self._lock:
            children = sorted(self._children.items())
        samples = [
            sample
            for values, child in children
            for sample in child._samples(self.name, dict(zip(self.label_names, values)))
        ]
        return MetricFamily(self.name, self.help, self.type, samples)


class Registry:
    """Holds metric vectors by name and gathers their current values."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._collectors: dict[str, MetricVec] = {}

    def register(self, *args):
        """Register each collector in turn; a name registered twice raises ValueError."""
        with self._lock:
            for collector in args:
                if collector.name in self._collectors:
                    raise ValueError(f"duplicate metrics collector registration attempted: {collector.name}")
                self._collectors[collector.name] = collector

    def gather(self):
        """Return the families that hold samples, sorted by name."""
        with self._lock:
            collectors = sorted(self._collectors.items())
        families = (collector._collect() for _, collector in collectors)
        return [family for family in families if family.samples]


REGISTRY = Registry()

_WORKQUEUE_BUCKETS = exponential_buckets(10e-9, 10, 12)

_depth = MetricVec(
    DEPTH_KEY,
    "Current depth of workqueue by workqueue and priority",
    ("name", "controller", "priority"),
    Gauge,
    subsystem=WORK_QUEUE_SUBSYSTEM,
)
_adds = MetricVec(
    ADDS_KEY,
    "Total number of adds handled by workqueue",
    ("name", "controller"),
    Counter,
    subsystem=WORK_QUEUE_SUBSYSTEM,
)
_latency = MetricVec(
    QUEUE_LATENCY_KEY,
    "How long in seconds an item stays in workqueue before being requested",
    ("name", "controller"),
    functools.partial(Histogram, _WORKQUEUE_BUCKETS),
    subsystem=WORK_QUEUE_SUBSYSTEM,
)
_work_duration = MetricVec(
    WORK_DURATION_KEY,
    "How long in seconds processing an item from workqueue takes.",
    ("name", "controller"),
    functools.partial(Histogram, _WORKQUEUE_BUCKETS),
    subsystem=WORK_QUEUE_SUBSYSTEM,
)
_unfinished = MetricVec(
    UNFINISHED_WORK_KEY,
    "How many seconds of work has been done that is in progress and hasn't been "
    "observed by work_duration. Large values indicate stuck threads. One can deduce "
    "the number of stuck threads by observing the rate at which this increases.",
    ("name", "controller"),
    Gauge,
    subsystem=WORK_QUEUE_SUBSYSTEM,
)
_longest_running_processor = MetricVec(
    LONGEST_RUNNING_PROCESSOR_KEY,
    "How many seconds has the longest running processor for workqueue been running.",
    ("name", "controller"),
    Gauge,
    subsystem=WORK_QUEUE_SUBSYSTEM,
)
_retries = MetricVec(
    RETRIES_KEY,
    "Total number of retries handled by workqueue",
    ("name", "controller"),
    Counter,
    subsystem=WORK_QUEUE_SUBSYSTEM,
)

RECONCILE_TOTAL = MetricVec(
    "protodb_controller_reconcile_total",
    "Total number of reconciliations per controller",
    ("controller", "result"),
    Counter,
)
RECONCILE_ERRORS = MetricVec(
    "protodb_controller_reconcile_errors_total",
    "Total number of reconciliation errors per controller",
    ("controller",),
    Counter,
)
TERMINAL_RECONCILE_ERRORS = MetricVec(
    "protodb_controller_terminal_reconcile_errors_total",
    "Total number of terminal reconciliation errors per controller",
    ("controller",),
    Counter,
)
RECONCILE_PANICS = MetricVec(
    "protodb_controller_reconcile_panics_total",
    "Total number of reconciliation panics per controller",
    ("controller",),
    Counter,
)
RECONCILE_TIME = MetricVec(
    "protodb_controller_reconcile_time_seconds",
    "Length of time per reconciliation per controller",
    ("controller",),
    functools.partial(
        Histogram,
        [0.005, 0.01, 0.025, 0.05, 0.1, 0.15, 0.2, 0.25, 0.3, 0.35, 0.4, 0.45, 0.5, 0.6, 0.7,
         0.8, 0.9, 1.0, 1.25, 1.5, 1.75, 2.0, 2.5, 3.0, 3.5, 4.0, 4.5, 5, 6, 7, 8, 9, 10, 15,
         20, 25, 30, 40, 50, 60],
    ),
)
WORKER_COUNT = MetricVec(
    "protodb_controller_max_concurrent_reconciles",
    "Maximum number of concurrent reconciles per controller",
    ("controller",),
    Gauge,
)
ACTIVE_WORKERS = MetricVec(
    "protodb_controller_active_workers",
    "Number of currently used workers per controller",
    ("controller",),
    Gauge,
)

REGISTRY.register(
    _depth,
    _adds,
    _latency,
    _work_duration,
    _unfinished,
    _longest_running_processor,
    _retries,
)
REGISTRY.register(
    RECONCILE_TOTAL,
    RECONCILE_ERRORS,
    TERMINAL_RECONCILE_ERRORS,
    RECONCILE_PANICS,
    RECONCILE_TIME,
    WORKER_COUNT,
    ACTIVE_WORKERS,
)


class DepthMetricWithPriority:
    """Queue depth metric split by item priority."""

    def __init__(self, name: str) -> None:
        self._label_values = (name, name)

    def inc(self, priority):
        _depth.with_label_values(*self._label_values, str(priority)).inc()

    def dec(self, priority):
        _depth.with_label_values(*self._label_values, str(priority)).dec()


class WorkqueueMetricsProvider:
    """Creates the per-queue metrics, labelled with the queue's name."""

    def new_depth_metric(self, name):
        return _depth.with_label_values(name, name, "")

    def new_adds_metric(self, name):
        return _adds.with_label_values(name, name)

    def new_latency_metric(self, name):
        return _latency.with_label_values(name, name)

    def new_work_duration_metric(self, name):
        return _work_duration.with_label_values(name, name)

    def new_unfinished_work_seconds_metric(self, name):
        return _unfinished.with_label_values(name, name)

    def new_longest_running_processor_seconds_metric(self, name):
        return _longest_running_processor.with_label_values(name, name)

    def new_retries_metric(self, name):
        return _retries.with_label_values(name, name)

    def new_depth_metric_with_priority(self, name):
        return DepthMetricWithPriority(name)