"""The controller engine: starts sources, runs workers and reconciles queued requests."""

from __future__ import annotations

import contextvars
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Hashable

from .log import LOG, Logger, into_context
from .metrics import (
    ACTIVE_WORKERS,
    RECONCILE_ERRORS,
    RECONCILE_PANICS,
    RECONCILE_TIME,
    RECONCILE_TOTAL,
    TERMINAL_RECONCILE_ERRORS,
    WORKER_COUNT,
)
from .priorityqueue import AddOpts, PriorityQueue
from .ratelimiter import default_controller_rate_limiter
from .reconcile import Result, is_terminal_error
from .source import SyncingSource

_LABEL_ERROR = "error"
_LABEL_REQUEUE_AFTER = "requeue_after"
_LABEL_REQUEUE = "requeue"
_LABEL_SUCCESS = "success"

_POLL_INTERVAL = 0.05

_reconcile_id: contextvars.ContextVar[str] = contextvars.ContextVar("protodb_controller_reconcile_id")


def reconcile_id_from_context():
    """Return the ID of the reconciliation running in the current context, or ``""``."""
    return _reconcile_id.get("")


class PriorityQueueWrapper:
    """Gives a plain rate-limiting work queue the interface of a priority queue."""

    def __init__(self, queue: Any) -> None:
        self.queue = queue

    def __getattr__(self, name: str) -> Any:
        return getattr(self.queue, name)

    def add_with_opts(self, opts, *args):
        for item in args:
            if opts.rate_limited:
                self.queue.add_rate_limited(item)
            elif opts.after > 0:
                self.queue.add_after(item, opts.after)
            else:
                self.queue.add(item)

    def get_with_priority(self):
        item, shutdown = self.queue.get()
        return item, 0, shutdown


def _default_new_queue(name: str, rate_limiter: Any) -> PriorityQueue:
    return PriorityQueue(name, rate_limiter=rate_limiter)


class Controller:
    """Runs a reconciler over the requests its sources put into a work queue.

    A reconciler reports failure by raising; a :class:`TerminalError` is
    counted and logged but never requeued.
    """

    def __init__(
        self,
        name: str,
        do: Any,
        *,
        max_concurrent_reconciles: int = 1,
        rate_limiter: Any = None,
        new_queue: Callable[[str, Any], Any] | None = None,
        cache_sync_timeout: float = 120.0,
        log_constructor: Callable[[Hashable | None], Logger] | None = None,
        leader_elected: bool | None = None,
    ) -> None:
        self.name = name
        self.do = do
        self.max_concurrent_reconciles = max_concurrent_reconciles
        self.rate_limiter = rate_limiter if rate_limiter is not None else default_controller_rate_limiter()
        self.new_queue = new_queue or _default_new_queue
        self.cache_sync_timeout = cache_sync_timeout
        if log_constructor is None:
            base = LOG.with_values("controller", name)
            log_constructor = lambda request: base  # noqa: E731
        self.log_constructor = log_constructor
        self.leader_elected = leader_elected
        self.queue: Any = None
        self.started = False
        self._lock = threading.Lock()
        self._stop: threading.Event | None = None
        self._start_watches: list[Any] = []

    def reconcile(self, request):
        """Run the reconciler for ``request``; a reconciler returning None means an empty Result."""
        fn = getattr(self.do, "reconcile", self.do)
        result = fn(request)
        return Result() if result is None else result

    def watch(self, source):
        """Start ``source`` now if the controller runs, otherwise when it starts."""
        with self._lock:
            if not self.started:
                self._start_watches.append(source)
                return None
            self.log_constructor(None).info("Starting EventSource", "source", source)
            return source.start(self._stop, self.queue)

    def need_leader_election(self):
        return True if self.leader_elected is None else bool(self.leader_elected)

    def get_logger(self):
        return self.log_constructor(None)

    def start(self, stop):
        """Start sources and workers, then block until ``stop`` is set and the workers finish."""
        workers: list[threading.Thread] = []
        with self._lock:
            if self.started:
                raise RuntimeError(
                    "controller was started more than once. This is likely to be caused "
                    "by being added to a manager multiple times"
                )
            self._init_metrics()
            self._stop = stop

            queue = self.new_queue(self.name, self.rate_limiter)
            if hasattr(queue, "add_with_opts") and hasattr(queue, "get_with_priority"):
                self.queue = queue
            else:
                self.queue = PriorityQueueWrapper(queue)
            active_queue = self.queue

            def shut_down_on_stop() -> None:
                stop.wait()
                active_queue.shut_down()

            threading.Thread(target=shut_down_on_stop, daemon=True).start()

            self._start_sources(stop)

            self.log_constructor(None).info("Starting Controller")
            self._start_watches = []

            self.log_constructor(None).info(
                "Starting workers", "worker count", self.max_concurrent_reconciles
            )
            for _ in range(self.max_concurrent_reconciles):
                worker = threading.Thread(target=self._worker, daemon=True)
                worker.start()
                workers.append(worker)
            self.started = True

        stop.wait()
        self.log_constructor(None).info("Shutdown signal received, waiting for all workers to finish")
        for worker in workers:
            worker.join()
        self.log_constructor(None).info("All workers finished")

    def _start_sources(self, stop: threading.Event) -> None:
        watches = list(self._start_watches)
        if not watches:
            return
        with ThreadPoolExecutor(max_workers=len(watches)) as pool:
            futures = [pool.submit(self._start_source, stop, watch) for watch in watches]
            errors = [future.result() for future in futures]
        for error in errors:
            if error is not None:
                raise error

    def _start_source(self, stop: threading.Event, watch: Any) -> BaseException | None:
        log = self.log_constructor(None).with_values("source", str(watch))
        sync_stop = threading.Event()
        finished = threading.Event()
        syncing = threading.Event()
        outcome: list[BaseException] = []

        def run() -> None:
            try:
                log.info("Starting EventSource")
                watch.start(stop, self.queue)
                if isinstance(watch, SyncingSource):
                    syncing.set()
                    try:
                        watch.wait_for_sync(sync_stop)
                    except Exception as exc:
                        err = RuntimeError(f"failed to wait for {self.name} caches to sync {watch}: {exc}")
                        err.__cause__ = exc
                        log.error(err, "Could not wait for Cache to sync")
                        outcome.append(err)
            except Exception as exc:
                outcome.append(exc)
            finally:
                finished.set()

        threading.Thread(target=run, daemon=True).start()

        deadline = time.monotonic() + self.cache_sync_timeout
        while not finished.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0 or stop.is_set():
                break
            finished.wait(min(remaining, _POLL_INTERVAL))
        if finished.is_set():
            return outcome[0] if outcome else None

        sync_stop.set()
        if syncing.is_set():
            finished.wait()
            return outcome[0] if outcome else None
        if stop.is_set():
            return None
        return TimeoutError(
            f"timed out waiting for source {watch} to Start. "
            "Please ensure that its Start() method is non-blocking"
        )

    def _worker(self) -> None:
        while self._process_next_work_item():
            pass

    def _process_next_work_item(self) -> bool:
        item, priority, shutdown = self.queue.get_with_priority()
        if shutdown:
            return False
        active = ACTIVE_WORKERS.with_label_values(self.name)
        active.add(1)
        try:
            contextvars.copy_context().run(self._reconcile_handler, item, priority)
        finally:
            active.add(-1)
            self.queue.done(item)
        return True

    def _init_metrics(self) -> None:
        for label in (_LABEL_ERROR, _LABEL_REQUEUE_AFTER, _LABEL_REQUEUE, _LABEL_SUCCESS):
            RECONCILE_TOTAL.with_label_values(self.name, label).add(0)
        RECONCILE_ERRORS.with_label_values(self.name).add(0)
        TERMINAL_RECONCILE_ERRORS.with_label_values(self.name).add(0)
        RECONCILE_PANICS.with_label_values(self.name).add(0)
        WORKER_COUNT.with_label_values(self.name).set(self.max_concurrent_reconciles)
        ACTIVE_WORKERS.with_label_values(self.name).set(0)

    def _reconcile_handler(self, request: Hashable, priority: int) -> None:
        started = time.perf_counter()
        try:
            reconcile_id = str(uuid.uuid1())
            log = self.log_constructor(request).with_values("reconcileID", reconcile_id)
            into_context(log)
            _reconcile_id.set(reconcile_id)

            log.v(5).info("Reconciling")
            try:
                result = self.reconcile(request)
            except Exception as err:
                if is_terminal_error(err):
                    TERMINAL_RECONCILE_ERRORS.with_label_values(self.name).inc()
                else:
                    self.queue.add_with_opts(AddOpts(rate_limited=True, priority=priority), request)
                RECONCILE_ERRORS.with_label_values(self.name).inc()
                RECONCILE_TOTAL.with_label_values(self.name, _LABEL_ERROR).inc()
                log.error(err, "Reconciler error")
                return

            if result.requeue_after > 0:
                log.v(5).info(f"Reconcile done, requeueing after {result.requeue_after}s")
                self.queue.forget(request)
                self.queue.add_with_opts(AddOpts(after=result.requeue_after, priority=priority), request)
                RECONCILE_TOTAL.with_label_values(self.name, _LABEL_REQUEUE_AFTER).inc()
            elif result.requeue:
                log.v(5).info("Reconcile done, requeueing")
                self.queue.add_with_opts(AddOpts(rate_limited=True, priority=priority), request)
                RECONCILE_TOTAL.with_label_values(self.name, _LABEL_REQUEUE).inc()
            else:
                log.v(5).info("Reconcile successful")
                self.queue.forget(request)
                RECONCILE_TOTAL.with_label_values(self.name, _LABEL_SUCCESS).inc()
        finally:
            RECONCILE_TIME.with_label_values(self.name).observe(time.perf_counter() - started)