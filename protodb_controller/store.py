"""Controllers driven by the records of a store: every change enqueues the record's key."""

from __future__ import annotations

import contextlib
import dataclasses
import enum
import threading
from dataclasses import dataclass
from queue import Empty, Queue
from typing import Any, Callable

from .controller import ControllerOptions, new_unmanaged
from .log import LOG, from_context, into_context, set_logger, standard_logger
from .reconcile import ReconcilerFunc, Result
from .source import Source

__all__ = [
    "LOG",
    "ControllerOptions",
    "Event",
    "EventType",
    "KeyFunc",
    "ReconcilerFunc",
    "Result",
    "StoreController",
    "StoreSource",
    "from_context",
    "into_context",
    "new_controller",
    "set_logger",
]

_POLL_INTERVAL = 0.05
_SYNC = object()
_CLOSED = object()


class EventType(enum.Enum):
    """How a record changed relative to a watch."""

    ENTER = enum.auto()
    UPDATE = enum.auto()
    LEAVE = enum.auto()


@dataclass(frozen=True)
class Event:
    """A change to a watched record; ``err`` is set for a failed event."""

    type: EventType
    new: Any = None
    old: Any = None
    err: BaseException | None = None


@dataclass(frozen=True)
class KeyFunc:
    """Derives a request key from a record."""

    fn: Callable[[Any], Any]

    def key(self, message):
        return self.fn(message)

    def __call__(self, message):
        return self.fn(message)


def _full_name(message_type: Any) -> str:
    descriptor = getattr(message_type, "DESCRIPTOR", None)
    full_name = getattr(descriptor, "full_name", None)
    if full_name:
        return str(full_name)
    return getattr(message_type, "__qualname__", str(message_type))


class StoreSource(Source):
    """Enqueues the key of every record that enters, changes or leaves a store.

    ``db`` provides ``watch(message_type, stop)``, returning an iterable of
    :class:`Event` that ends when the watch closes, and ``get(message_type)``,
    returning all records. A full resync enqueues every record; one is done on
    start and on each :meth:`sync`, with requests made while one is pending merged.
    """

    def __init__(self, db: Any, message_type: Any, key: Callable[[Any], Any]) -> None:
        self.db = db
        self.message_type = message_type
        self.key = key
        self._inbox: Queue = Queue()
        self._lock = threading.Lock()
        self._sync_pending = False

    def __str__(self):
        return f"protodb/{_full_name(self.message_type)}"

    def sync(self):
        """Ask for every record to be enqueued again."""
        with self._lock:
            if self._sync_pending:
                return
            self._sync_pending = True
        self._inbox.put(_SYNC)

    def start(self, stop, queue):
        """Open the watch and start feeding ``queue``; the queue is shut down when feeding ends."""
        events = self.db.watch(self.message_type, stop)
        self.sync()
        threading.Thread(target=self._pump, args=(events,), daemon=True).start()
        threading.Thread(target=self._run, args=(stop, queue), daemon=True).start()

    def _pump(self, events: Any) -> None:
        try:
            with contextlib.suppress(Exception):
                for event in events:
                    self._inbox.put(event)
        finally:
            self._inbox.put(_CLOSED)

    def _run(self, stop: threading.Event, queue: Any) -> None:
        try:
            while not stop.is_set():
                try:
                    entry = self._inbox.get(timeout=_POLL_INTERVAL)
                except Empty:
                    continue
                if entry is _CLOSED:
                    return
                if entry is _SYNC:
                    with self._lock:
                        self._sync_pending = False
                    try:
                        records = self.db.get(self.message_type)
                    except Exception:
                        return
                    for record in records:
                        queue.add(self.key(record))
                    continue
                self._dispatch(entry, queue)
        finally:
            queue.shut_down()

    def _dispatch(self, event: Event | None, queue: Any) -> None:
        if event is None or event.err is not None:
            return
        if event.type in (EventType.ENTER, EventType.UPDATE):
            queue.add(self.key(event.new))
        elif event.type is EventType.LEAVE:
            queue.add(self.key(event.old))


class StoreController:
    """A controller watching one record type of a store."""

    def __init__(self, controller: Any, source: StoreSource) -> None:
        self.controller = controller
        self.source = source

    def start(self, stop):
        """Run until ``stop`` is set."""
        self.controller.watch(self.source)
        self.controller.start(stop)

    def sync(self):
        """Enqueue every record of the store again."""
        self.source.sync()


def new_controller(name, db, message_type, key, options):
    """Create a controller reconciling records of ``message_type`` by the keys ``key`` gives."""
    if db is None:
        raise ValueError("db is required")
    if key is None:
        raise ValueError("fn is required")
    type_name = _full_name(message_type)
    opts = dataclasses.replace(options)
    if opts.log_constructor is None:
        base = standard_logger()

        def log_constructor(request: Any) -> Any:
            shown = "unknown" if request is None else request
            return base.with_values("controller", name, "key", f"{type_name}/{shown}")

        opts.log_constructor = log_constructor
    controller = new_unmanaged(name, opts)
    key_fn = getattr(key, "key", key)
    return StoreController(controller, StoreSource(db, message_type, key_fn))