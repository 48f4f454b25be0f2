"""Structured loggers, a deferred root logger and helpers to carry a logger in context."""

from __future__ import annotations

import contextvars
import logging
import operator
import sys
import threading
import time
import traceback
from dataclasses import dataclass
from typing import Any

_MISSING_VALUE = "<no value>"
_ROOT_FULFIL_TIMEOUT = 30.0


@dataclass(frozen=True)
class RuntimeInfo:
    """Information a logger hands to its sink when it is created."""

    call_depth: int = 0


def _format(name: str, msg: str, values: tuple[Any, ...]) -> str:
    parts = [f"{name}: {msg}" if name else msg]
    parts.extend(f"{key}={value}" for key, value in zip(values[0::2], values[1::2]))
    if len(values) % 2:
        parts.append(f"{values[-1]}={_MISSING_VALUE}")
    return " ".join(parts)


def _join_name(base: str, name: str) -> str:
    return f"{base}/{name}" if base else name


class NullLogSink:
    """A sink that writes nothing.

    It keeps the name and values it was derived with and counts the
    messages it discarded, so that callers can inspect what was dropped.
    """

    def __init__(self, name: str = "", values: tuple[Any, ...] = ()) -> None:
        self.name = name
        self.values = tuple(values)
        self.runtime_info = RuntimeInfo()
        self.dropped = 0

    def init(self, info):
        self.runtime_info = info

    def enabled(self, level):
        operator.index(level)
        return self.runtime_info is None

    def info(self, level, msg, *args):
        operator.index(level)
        self.dropped += 1

    def error(self, err, msg, *args):
        self.dropped += 1

    def with_name(self, name):
        return NullLogSink(_join_name(self.name, name), self.values)

    def with_values(self, *args):
        return NullLogSink(self.name, self.values + args)


class StdlibLogSink:
    """A sink writing to a :mod:`logging` logger.

    Verbosity level 0 is logged at INFO, any higher level at DEBUG.
    Names are joined with ``/`` and key/value pairs are appended as ``key=value``.
    """

    def __init__(
        self,
        logger: logging.Logger | None = None,
        name: str = "",
        values: tuple[Any, ...] = (),
    ) -> None:
        self.logger = logger if logger is not None else logging.getLogger("protodb_controller")
        self.name = name
        self.values = tuple(values)
        self.runtime_info = RuntimeInfo()

    @staticmethod
    def _python_level(level: int) -> int:
        return logging.INFO if level <= 0 else logging.DEBUG

    def init(self, info):
        self.runtime_info = info

    def enabled(self, level):
        return self.logger.isEnabledFor(self._python_level(level))

    def info(self, level, msg, *args):
        self.logger.log(self._python_level(level), _format(self.name, msg, self.values + args))

    def error(self, err, msg, *args):
        self.logger.error(_format(self.name, msg, self.values + args + ("error", err)))

    def with_name(self, name):
        return StdlibLogSink(self.logger, _join_name(self.name, name), self.values)

    def with_values(self, *args):
        return StdlibLogSink(self.logger, self.name, self.values + args)


class _LoggerPromise:
    """Records how a deferred sink was derived, to rebuild it once a real sink exists."""

    def __init__(
        self,
        sink: DelegatingLogSink,
        name: str | None = None,
        tags: tuple[Any, ...] = (),
    ) -> None:
        self.sink = sink
        self.name = name
        self.tags = tags
        self._children: list[_LoggerPromise] = []
        self._lock = threading.Lock()

    def with_name(self, sink: DelegatingLogSink, name: str) -> _LoggerPromise:
        child = _LoggerPromise(sink, name=name)
        with self._lock:
            self._children.append(child)
        return child

    def with_values(self, sink: DelegatingLogSink, tags: tuple[Any, ...]) -> _LoggerPromise:
        child = _LoggerPromise(sink, tags=tags)
        with self._lock:
            self._children.append(child)
        return child

    def fulfill(self, parent_sink: Any) -> None:
        sink = parent_sink
        if self.name is not None:
            sink = sink.with_name(self.name)
        if self.tags:
            sink = sink.with_values(*self.tags)
        with self.sink._lock:
            self.sink._logger = sink
            self.sink._promise = None
        with self._lock:
            children = list(self._children)
        for child in children:
            child.fulfill(sink)


class DelegatingLogSink:
    """A sink that forwards to a placeholder until :meth:`fulfill` supplies the real one.

    Sinks derived before fulfilment are rebuilt from the real sink with the same
    names and values; sinks derived afterwards come straight from the real sink.
    """

    def __init__(self, initial: Any) -> None:
        self._lock = threading.Lock()
        self._logger = initial
        self._promise: _LoggerPromise | None = _LoggerPromise(self)
        self.runtime_info = RuntimeInfo()

    def _snapshot(self) -> tuple[Any, _LoggerPromise | None]:
        with self._lock:
            return self._logger, self._promise

    def init(self, info):
        _eventually_fulfill_root()
        with self._lock:
            self.runtime_info = info

    def enabled(self, level):
        _eventually_fulfill_root()
        logger, _ = self._snapshot()
        return logger.enabled(level)

    def info(self, level, msg, *args):
        _eventually_fulfill_root()
        logger, _ = self._snapshot()
        logger.info(level, msg, *args)

    def error(self, err, msg, *args):
        _eventually_fulfill_root()
        logger, _ = self._snapshot()
        logger.error(err, msg, *args)

    def with_name(self, name):
        _eventually_fulfill_root()
        logger, promise = self._snapshot()
        if promise is None:
            return logger.with_name(name)
        child = DelegatingLogSink(logger)
        child._promise = promise.with_name(child, name)
        return child

    def with_values(self, *args):
        _eventually_fulfill_root()
        logger, promise = self._snapshot()
        if promise is None:
            return logger.with_values(*args)
        child = DelegatingLogSink(logger)
        child._promise = promise.with_values(child, args)
        return child

    def fulfill(self, actual):
        """Switch to ``actual`` (a null sink when None), unless already fulfilled."""
        if actual is None:
            actual = NullLogSink()
        _, promise = self._snapshot()
        if promise is not None:
            promise.fulfill(actual)


class Logger:
    """A structured logger over a sink, with a verbosity level."""

    def __init__(self, sink: Any = None) -> None:
        self.sink = sink
        self.level = 0
        if sink is not None:
            sink.init(RuntimeInfo(call_depth=1))

    def _derive(self, sink: Any, level: int) -> Logger:
        derived = object.__new__(Logger)
        derived.sink = sink
        derived.level = level
        return derived

    def __repr__(self) -> str:
        return f"Logger(sink={self.sink!r}, level={self.level})"

    def enabled(self):
        return self.sink is not None and bool(self.sink.enabled(self.level))

    def v(self, level):
        """Return a logger whose messages are ``level`` steps more verbose."""
        if self.sink is None:
            return self
        return self._derive(self.sink, self.level + max(level, 0))

    def info(self, msg, *args):
        if self.enabled():
            self.sink.info(self.level, msg, *args)

    def error(self, err, msg, *args):
        if self.sink is not None:
            self.sink.error(err, msg, *args)

    def with_name(self, name):
        if self.sink is None:
            return self
        return self._derive(self.sink.with_name(name), self.level)

    def with_values(self, *args):
        if self.sink is None or not args:
            return self
        return self._derive(self.sink.with_values(*args), self.level)


class APIWarningLogger:
    """Logs API warnings (code 299), optionally writing each message only once."""

    def __init__(self, logger: Logger, deduplicate: bool = False) -> None:
        self.logger = logger
        self.deduplicate = deduplicate
        self._lock = threading.Lock()
        self._written: set[str] = set()

    def handle_warning_header(self, code, agent, message):
        if code != 299 or not message:
            return
        if self.deduplicate:
            with self._lock:
                if message in self._written:
                    return
                self._written.add(message)
        self.logger.info(message)


_fulfilled = False
_fulfilled_lock = threading.Lock()
_root_created = time.monotonic()


def _eventually_fulfill_root() -> None:
    global _fulfilled
    if _fulfilled:
        return
    if time.monotonic() - _root_created < _ROOT_FULFIL_TIMEOUT:
        return
    with _fulfilled_lock:
        if _fulfilled:
            return
        _fulfilled = True
    sep = "\n\t>  "
    stack = "".join(traceback.format_stack()).rstrip("\n").replace("\n", sep) + "\n"
    sys.stderr.write(
        "[protodb-controller] set_logger(...) was never called; logs will not be displayed.\n"
        f"Detected at:{sep}{stack}"
    )
    set_logger(Logger(NullLogSink()))


def set_logger(logger):
    """Give every deferred logger its concrete implementation."""
    global _fulfilled
    with _fulfilled_lock:
        _fulfilled = True
    ROOT_SINK.fulfill(logger.sink)


ROOT_SINK = DelegatingLogSink(NullLogSink())
LOG = Logger(ROOT_SINK)
RUNTIME_LOG = LOG.with_name("controller-runtime")

_context_logger: contextvars.ContextVar[Logger] = contextvars.ContextVar("protodb_controller_logger")


def from_context(*args):
    """Return the logger of the current context (or the root logger) with ``args`` added."""
    return _context_logger.get(LOG).with_values(*args)


def into_context(logger):
    """Make ``logger`` the current context's logger; returns a token for resetting it."""
    return _context_logger.set(logger)


def standard_logger():
    """Return a logger writing to the ``protodb_controller`` :mod:`logging` logger."""
    return Logger(StdlibLogSink(logging.getLogger("protodb_controller")))