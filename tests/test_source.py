import threading

import pytest

from protodb_controller.priorityqueue import PriorityQueue
from protodb_controller.source import FuncSource, Source, SyncingSource


def test_func_source_feeds_queue():
    stop = threading.Event()
    q = PriorityQueue()
    try:
        def feed(event, queue):
            assert event is stop
            queue.add("item")
            return "started"

        result = FuncSource(feed).start(stop, q)
        assert result == "started"
        assert q.get() == ("item", False)
    finally:
        q.shut_down()


def test_func_source_propagates_errors():
    def fail(stop, queue):
        raise RuntimeError("cannot start")

    with pytest.raises(RuntimeError, match="cannot start"):
        FuncSource(fail).start(threading.Event(), None)


def test_func_source_str():
    def fn(stop, queue):
        return None

    text = str(FuncSource(fn))
    assert text == f"func source: {hex(id(fn))}"


def test_source_is_abstract():
    with pytest.raises(TypeError):
        Source()


def test_syncing_source_is_abstract():
    with pytest.raises(TypeError):
        SyncingSource()


def test_func_source_passes_list_queue():
    events = []

    def start(stop, queue):
        queue.append("started")

    assert FuncSource(start).start(threading.Event(), events) is None
    assert events == ["started"]