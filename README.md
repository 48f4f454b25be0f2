# protodb-controller

A small library for writing reconcile loops. A controller watches a store and
turns every change into a request key. It puts the keys into a de-duplicating
priority work queue. Worker threads then hand each key to your reconciler. A
failed reconcile is retried with rate-limited exponential back-off.

## Installation

```
pip install protodb-controller
```

For the test suite:

```
pip install "protodb-controller[test]"
```

## Modules

| Module | Contents |
| --- | --- |
| `protodb_controller.store` | `new_controller`, `StoreController`, `StoreSource`, `Event`, `EventType`, `KeyFunc` |
| `protodb_controller.controller` | `ControllerOptions`, `new_unmanaged`, `check_name` |
| `protodb_controller.engine` | `Controller`, `PriorityQueueWrapper`, `reconcile_id_from_context` |
| `protodb_controller.reconcile` | `Result`, `ReconcilerFunc`, `TerminalError`, `terminal_error`, `is_terminal_error` |
| `protodb_controller.source` | `Source`, `SyncingSource`, `FuncSource` |
| `protodb_controller.priorityqueue` | `PriorityQueue`, `AddOpts` |
| `protodb_controller.ratelimiter` | `ItemExponentialFailureRateLimiter`, `BucketRateLimiter`, `MaxOfRateLimiter`, `default_controller_rate_limiter` |
| `protodb_controller.queuemetrics` | `DefaultQueueMetrics`, `NoMetrics`, `new_queue_metrics` |
| `protodb_controller.metrics` | `Counter`, `Gauge`, `Histogram`, `MetricVec`, `Registry`, `REGISTRY`, `WorkqueueMetricsProvider` |
| `protodb_controller.log` | `Logger`, `NullLogSink`, `StdlibLogSink`, `DelegatingLogSink`, `APIWarningLogger`, `set_logger`, `standard_logger`, `from_context`, `into_context` |

## Reconcilers and results

A reconciler is either an object with a `reconcile(request)` method or a plain
callable. `ReconcilerFunc` wraps a function. The reconciler returns a `Result`.
Returning `None` counts as an empty `Result()`.

- `Result()`: the request is done. Its back-off history is forgotten.
- `Result(requeue=True)`: the request is added again, rate limited.
- `Result(requeue_after=seconds)`: the request is added again after that
  delay. Its back-off history is forgotten first.

If the reconciler raises an exception, the request is added again, rate
limited, with the same priority. If the exception is a `TerminalError`, or
has one in its `__cause__` chain, it is logged and counted but not requeued.
You can build a `TerminalError` with `terminal_error(exc)`.

## Watching a store

`new_controller(name, db, message_type, key, options)` builds a
`StoreController`. The `db` object must provide two methods:

- `watch(message_type, stop)`: returns an iterable of `Event`. The iterable
  ends when the watch closes.
- `get(message_type)`: returns all records of that type.

`key` is a `KeyFunc` or any callable that turns a record into a request key.

`StoreSource` puts keys into the queue as follows:

- For an `ENTER` or `UPDATE` event, it adds the key of `event.new`.
- For a `LEAVE` event, it adds the key of `event.old`.
- Events that are `None` or carry an `err` are skipped.
- A full resync adds the key of every record from `get`. One resync runs on
  start, and another each time `sync()` is called. Requests for a resync made
  while one is still pending are merged into it.

When the watch ends, or a resync fails, the queue is shut down.

```python
import threading
from dataclasses import dataclass
from queue import Empty, Queue

from protodb_controller.controller import ControllerOptions
from protodb_controller.reconcile import ReconcilerFunc, Result
from protodb_controller.store import Event, EventType, KeyFunc, new_controller


@dataclass
class Resource:
    id: str


class MemoryStore:
    def __init__(self):
        self.records = {}
        self.events = Queue()

    def put(self, record):
        old = self.records.get(record.id)
        self.records[record.id] = record
        kind = EventType.ENTER if old is None else EventType.UPDATE
        self.events.put(Event(kind, new=record, old=old))

    def get(self, message_type):
        return list(self.records.values())

    def watch(self, message_type, stop):
        while not stop.is_set():
            try:
                yield self.events.get(timeout=0.1)
            except Empty:
                continue


def reconcile(request):
    print("reconciling", request)
    return Result()


db = MemoryStore()
options = ControllerOptions(reconciler=ReconcilerFunc(reconcile))
ctrl = new_controller("resources", db, Resource, KeyFunc(lambda r: r.id), options)

stop = threading.Event()
runner = threading.Thread(target=ctrl.start, args=(stop,))
runner.start()

db.put(Resource("a"))
ctrl.sync()   # enqueue every stored record again
stop.set()    # shut the queue down; start() returns once the workers finish
runner.join()
```

For a record type with a protobuf `DESCRIPTOR`, the source is named
`protodb/<full name>`. Otherwise it uses the type's qualified name.

## Options

`ControllerOptions` fields, with the defaults that `new_unmanaged` fills in:

- `reconciler`: required. If it is missing, `ValueError` is raised.
- `max_concurrent_reconciles`: 1 if zero or negative.
- `cache_sync_timeout`: 120 seconds if zero. This is how long a source may
  take to start, or a `SyncingSource` to sync. If it runs out, `start` raises
  `TimeoutError`.
- `rate_limiter`: `default_controller_rate_limiter()` if unset.
- `new_queue`: a callable `(name, rate_limiter)` that returns a queue.
  Defaults to a `PriorityQueue`. A queue without `add_with_opts` and
  `get_with_priority` is wrapped in `PriorityQueueWrapper`.
- `log_constructor`: a callable `(request or None)` that returns a `Logger`.
- `need_leader_election`: reported by `Controller.need_leader_election()`.
  When unset, that method returns `True`.
- `skip_name_validation`: set it to bypass `check_name`.

Controller names must be unique within the process. `check_name` raises
`ValueError` for a name that is already used. An empty name is rejected. A
`Controller` can be started only once; a second `start` raises
`RuntimeError`.

## Work queue

`PriorityQueue` can also be used on its own:

```python
from protodb_controller.priorityqueue import AddOpts, PriorityQueue

queue = PriorityQueue()
queue.add("a")
queue.add_with_opts(AddOpts(priority=10), "b")
queue.add_after("c", 5.0)

item, shutdown = queue.get()   # "b": highest priority first
queue.done(item)
len(queue)                      # items ready now (1: "a")
queue.shut_down()
```

How the queue behaves:

- It keeps each key only once. When a key is added again, it keeps the
  higher priority and the earlier ready time.
- Ready items come out by priority, then in the order they were added.
- A key handed out by `get` or `get_with_priority` is not handed out again
  until `done` is called for it.
- After `shut_down`, `get_with_priority` returns `(None, 0, True)`.
- `add_rate_limited` delays a key by what the rate limiter gives. `forget`
  clears that key's back-off history.

## Rate limiters

- `ItemExponentialFailureRateLimiter(base_delay, max_delay)`: waits
  `base_delay * 2**failures` per item, capped at `max_delay`.
- `BucketRateLimiter(qps, burst)`: an overall token bucket.
- `MaxOfRateLimiter(*limiters)`: uses the longest delay of its limiters.

`default_controller_rate_limiter()` combines a 5 ms to 1000 s per-item
back-off with a bucket of 10 per second and a burst of 100.

## Logging

`standard_logger()` returns a `Logger` that writes to the `logging` logger
named `protodb_controller`. Verbosity level 0 is logged at INFO and higher
levels at DEBUG. Controllers built with `new_unmanaged` or `new_controller`
use it by default, so configure `logging` to see their output.

The root logger `LOG` is inert until a sink is installed:

```python
from protodb_controller.log import set_logger, standard_logger

set_logger(standard_logger())
```

If `set_logger` has not been called after 30 seconds, a notice is written to
stderr the next time the root logger is used. The root logger then stays
silent.

Each reconcile runs in its own context. Inside a reconciler, `from_context()`
returns the controller's logger. That logger also carries a `reconcileID`
value, and `reconcile_id_from_context()` returns that ID. The logger from
`new_controller` also carries the controller name and `<type>/<key>`.

`APIWarningLogger` logs warning messages that have code 299. It can drop
repeated messages.

## Metrics

Metrics are recorded in the in-process `REGISTRY`:

- Per controller: reconcile totals by result, errors, terminal errors,
  reconcile time, maximum and active workers.
- Per named work queue: depth, adds, latency, work duration, unfinished work
  and retries.

`REGISTRY.gather()` returns `MetricFamily` objects sorted by name, each with
its `Sample` values.

## What this package does not do

- It contains no store. You bring the object that provides `watch` and `get`.
- It runs no metrics endpoint. Metrics are only available through `gather()`.
- It does no leader election. The option is only reported, never acted on.
- It installs no command-line program.