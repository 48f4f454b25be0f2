"""Sources feed requests into a controller's queue."""

from __future__ import annotations

import abc
from dataclasses import dataclass
from typing import Any, Callable


class Source(abc.ABC):
    """A stream of requests for a controller."""

    @abc.abstractmethod
    def start(self, stop, queue):
        """Begin adding requests to ``queue`` without blocking; stop once ``stop`` is set."""


class SyncingSource(Source):
    """A source that must sync before the controller starts its workers."""

    @abc.abstractmethod
    def wait_for_sync(self, stop):
        """Block until the source has synced, raising if it cannot."""


@dataclass(frozen=True)
class FuncSource(Source):
    """A source backed by a callable taking ``(stop, queue)``."""

    fn: Callable[[Any, Any], Any]

    def start(self, stop, queue):
        return self.fn(stop, queue)

    def __str__(self):
        return f"func source: {hex(id(self.fn))}"