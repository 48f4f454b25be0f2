"""Reconciliation results, function reconcilers and terminal errors."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable


@dataclass(frozen=True)
class Result:
    """Outcome of a reconciliation.

    ``requeue`` asks for the request to be retried with back-off; a positive
    ``requeue_after`` (seconds) asks for a retry after that delay and implies
    ``requeue``.
    """

    requeue: bool = False
    requeue_after: float = 0.0

    def is_zero(self):
        return self == Result()


@dataclass(frozen=True)
class ReconcilerFunc:
    """Adapts a plain callable into a reconciler."""

    fn: Callable[[Any], Result]

    def reconcile(self, request):
        return self.fn(request)

    def __call__(self, request):
        return self.fn(request)


class TerminalError(Exception):
    """An error that is logged and counted but never retried."""

    def __init__(self, wrapped: BaseException | None = None) -> None:
        super().__init__(wrapped)
        self.wrapped = wrapped
        self.__cause__ = wrapped

    def __str__(self) -> str:
        if self.wrapped is None:
            return "nil terminal error"
        return f"terminal error: {self.wrapped}"


def terminal_error(wrapped):
    """Wrap ``wrapped`` so that the controller does not requeue the request."""
    return TerminalError(wrapped)


def is_terminal_error(err: BaseException | None) -> bool:
    """Whether ``err`` or any exception in its cause chain is a TerminalError."""
    seen: set[int] = set()
    while err is not None and id(err) not in seen:
        if isinstance(err, TerminalError):
            return True
        seen.add(id(err))
        err = err.__cause__
    return False