import logging
import threading
import time
import uuid

import pytest

from protodb_controller.engine import Controller, PriorityQueueWrapper, reconcile_id_from_context
from protodb_controller.log import Logger, StdlibLogSink, from_context
from protodb_controller.metrics import TERMINAL_RECONCILE_ERRORS, WORKER_COUNT
from protodb_controller.priorityqueue import AddOpts
from protodb_controller.reconcile import ReconcilerFunc, Result, terminal_error
from protodb_controller.source import FuncSource, SyncingSource


def _name():
    return f"test-{uuid.uuid4().hex}"


def _adding_source(*items):
    def start(stop, queue):
        for item in items:
            queue.add(item)

    return FuncSource(start)


def _run(ctrl, stop):
    errors = []

    def target():
        try:
            ctrl.start(stop)
        except Exception as exc:
            errors.append(exc)

    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    return thread, errors


def _wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_reconcile_returns_result_and_defaults_none():
    ctrl = Controller(_name(), ReconcilerFunc(lambda req: Result(requeue=True)))
    assert ctrl.reconcile("a") == Result(requeue=True)
    ctrl2 = Controller(_name(), ReconcilerFunc(lambda req: None))
    assert ctrl2.reconcile("a") == Result()


def test_need_leader_election():
    assert Controller(_name(), ReconcilerFunc(lambda r: None)).need_leader_election() is True
    ctrl = Controller(_name(), ReconcilerFunc(lambda r: None), leader_elected=False)
    assert ctrl.need_leader_election() is False


def test_get_logger_uses_constructor():
    marker = Logger()
    ctrl = Controller(_name(), ReconcilerFunc(lambda r: None), log_constructor=lambda req: marker)
    assert ctrl.get_logger() is marker


def test_reconcile_id_empty_outside_reconcile():
    assert reconcile_id_from_context() == ""


def test_processes_items_from_source():
    seen = []
    done = threading.Event()

    def fn(req):
        seen.append(req)
        if len(seen) == 2:
            done.set()
        return Result()

    ctrl = Controller(_name(), ReconcilerFunc(fn))
    ctrl.watch(_adding_source("a", "b"))
    stop = threading.Event()
    thread, errors = _run(ctrl, stop)
    assert done.wait(5)
    stop.set()
    thread.join(5)
    assert not thread.is_alive()
    assert errors == []
    assert sorted(seen) == ["a", "b"]


def test_context_carries_logger_and_reconcile_id():
    name = _name()
    captured = {}
    done = threading.Event()
    py_logger = logging.getLogger("test_engine_context")

    def fn(req):
        captured["id"] = reconcile_id_from_context()
        captured["values"] = from_context().sink.values
        done.set()

    ctrl = Controller(
        name,
        ReconcilerFunc(fn),
        log_constructor=lambda req: Logger(StdlibLogSink(py_logger, values=("controller", name))),
    )
    ctrl.watch(_adding_source("x"))
    stop = threading.Event()
    thread, _ = _run(ctrl, stop)
    assert done.wait(5)
    stop.set()
    thread.join(5)
    uuid.UUID(captured["id"])
    assert captured["values"] == ("controller", name, "reconcileID", captured["id"])


def test_error_is_requeued():
    calls = []
    done = threading.Event()

    def fn(req):
        calls.append(req)
        if len(calls) == 1:
            raise ValueError("boom")
        done.set()
        return Result()

    ctrl = Controller(_name(), ReconcilerFunc(fn))
    ctrl.watch(_adding_source("k"))
    stop = threading.Event()
    thread, errors = _run(ctrl, stop)
    assert done.wait(5)
    stop.set()
    thread.join(5)
    assert errors == []
    assert ctrl.started is True
    assert ctrl.queue.shutting_down() is True
    assert calls == ["k", "k"]


def test_terminal_error_is_not_requeued():
    name = _name()
    calls = []

    def fn(req):
        calls.append(req)
        raise terminal_error(ValueError("fatal"))

    ctrl = Controller(name, ReconcilerFunc(fn))
    ctrl.watch(_adding_source("k"))
    stop = threading.Event()
    thread, _ = _run(ctrl, stop)
    counter = TERMINAL_RECONCILE_ERRORS.with_label_values(name)
    assert _wait_until(lambda: counter.value == 1.0)
    time.sleep(0.2)
    stop.set()
    thread.join(5)
    assert calls == ["k"]
    assert counter.value == 1.0


def test_requeue_after_reconciles_again():
    calls = []
    done = threading.Event()

    def fn(req):
        calls.append(req)
        if len(calls) == 1:
            return Result(requeue_after=0.01)
        done.set()
        return Result()

    ctrl = Controller(_name(), ReconcilerFunc(fn))
    ctrl.watch(_adding_source("r"))
    stop = threading.Event()
    thread, errors = _run(ctrl, stop)
    assert done.wait(5)
    stop.set()
    thread.join(5)
    assert errors == []
    assert ctrl.queue.shutting_down() is True
    assert calls == ["r", "r"]


def test_worker_count_metric_set_on_start():
    name = _name()
    ctrl = Controller(name, ReconcilerFunc(lambda r: None), max_concurrent_reconciles=3)
    stop = threading.Event()
    thread, _ = _run(ctrl, stop)
    assert _wait_until(lambda: ctrl.started)
    stop.set()
    thread.join(5)
    assert WORKER_COUNT.with_label_values(name).value == 3.0


def test_start_twice_raises():
    ctrl = Controller(_name(), ReconcilerFunc(lambda r: None))
    stop = threading.Event()
    thread, _ = _run(ctrl, stop)
    assert _wait_until(lambda: ctrl.started)
    with pytest.raises(RuntimeError, match="started more than once"):
        ctrl.start(threading.Event())
    stop.set()
    thread.join(5)


def test_source_start_error_propagates():
    def start(stop, queue):
        raise ValueError("cannot start")

    ctrl = Controller(_name(), ReconcilerFunc(lambda r: None))
    ctrl.watch(FuncSource(start))
    stop = threading.Event()
    with pytest.raises(ValueError, match="cannot start"):
        ctrl.start(stop)
    stop.set()
    assert ctrl.started is False


def test_blocking_source_times_out():
    release = threading.Event()

    def start(stop, queue):
        release.wait()

    ctrl = Controller(_name(), ReconcilerFunc(lambda r: None), cache_sync_timeout=0.1)
    ctrl.watch(FuncSource(start))
    stop = threading.Event()
    try:
        with pytest.raises(TimeoutError, match="timed out waiting for source"):
            ctrl.start(stop)
    finally:
        release.set()
        stop.set()


class _FailingSync(SyncingSource):
    def start(self, stop, queue):
        return None

    def wait_for_sync(self, stop):
        raise ValueError("not synced")

    def __str__(self):
        return "failing-sync"


def test_syncing_source_failure():
    name = _name()
    ctrl = Controller(name, ReconcilerFunc(lambda r: None))
    ctrl.watch(_FailingSync())
    stop = threading.Event()
    with pytest.raises(RuntimeError, match=f"failed to wait for {name} caches to sync failing-sync"):
        ctrl.start(stop)
    stop.set()


def test_watch_after_start_starts_immediately():
    seen = []
    done = threading.Event()

    def fn(req):
        seen.append(req)
        done.set()

    ctrl = Controller(_name(), ReconcilerFunc(fn))
    stop = threading.Event()
    thread, errors = _run(ctrl, stop)
    assert _wait_until(lambda: ctrl.started)
    assert ctrl.watch(_adding_source("late")) is None
    assert done.wait(5)
    stop.set()
    thread.join(5)
    assert errors == []
    assert ctrl.queue.shutting_down() is True
    assert seen == ["late"]


class _PlainQueue:
    def __init__(self):
        self.calls = []

    def add(self, item):
        self.calls.append(("add", item))

    def add_after(self, item, after):
        self.calls.append(("add_after", item, after))

    def add_rate_limited(self, item):
        self.calls.append(("add_rate_limited", item))

    def get(self):
        return "next", False

    def forget(self, item):
        self.calls.append(("forget", item))


def test_wrapper_routes_add_with_opts():
    plain = _PlainQueue()
    wrapper = PriorityQueueWrapper(plain)
    wrapper.add_with_opts(AddOpts(rate_limited=True, after=2.0), "a")
    wrapper.add_with_opts(AddOpts(after=2.0), "b")
    wrapper.add_with_opts(AddOpts(), "c", "d")
    assert plain.calls == [
        ("add_rate_limited", "a"),
        ("add_after", "b", 2.0),
        ("add", "c"),
        ("add", "d"),
    ]


def test_wrapper_get_with_priority_and_delegation():
    plain = _PlainQueue()
    wrapper = PriorityQueueWrapper(plain)
    assert wrapper.get_with_priority() == ("next", 0, False)
    wrapper.forget("x")
    assert plain.calls == [("forget", "x")]


def test_plain_queue_is_wrapped_on_start():
    plain = _PlainQueue()
    ctrl = Controller(
        _name(),
        ReconcilerFunc(lambda r: None),
        new_queue=lambda name, limiter: plain,
        max_concurrent_reconciles=0,
    )
    stop = threading.Event()
    plain.shut_down = stop.set
    thread, _ = _run(ctrl, stop)
    assert _wait_until(lambda: ctrl.started)
    stop.set()
    thread.join(5)
    assert isinstance(ctrl.queue, PriorityQueueWrapper)
    assert ctrl.queue.queue is plain