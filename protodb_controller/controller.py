"""Controller options, defaults and construction of unmanaged controllers."""

from __future__ import annotations

import dataclasses
import threading
from dataclasses import dataclass
from typing import Any, Callable, Hashable

from .engine import Controller, reconcile_id_from_context
from .log import Logger, standard_logger
from .priorityqueue import PriorityQueue
from .ratelimiter import default_controller_rate_limiter

__all__ = ["ControllerOptions", "check_name", "new_unmanaged", "reconcile_id_from_context"]

DEFAULT_CACHE_SYNC_TIMEOUT = 120.0

_name_lock = threading.Lock()
_used_names: set[str] = set()


@dataclass
class ControllerOptions:
    """Settings for a new controller; unset fields take their defaults in :func:`new_unmanaged`.

    ``reconciler`` is an object with a ``reconcile(request)`` method or a plain
    callable. ``cache_sync_timeout`` is in seconds.
    """

    reconciler: Any = None
    skip_name_validation: bool | None = None
    max_concurrent_reconciles: int = 0
    cache_sync_timeout: float = 0.0
    need_leader_election: bool | None = None
    rate_limiter: Any = None
    new_queue: Callable[[str, Any], Any] | None = None
    log_constructor: Callable[[Hashable | None], Logger] | None = None


def check_name(name):
    """Reserve ``name`` for a controller, raising ValueError if it is already taken."""
    with _name_lock:
        if name in _used_names:
            raise ValueError(
                f"controller with name {name} already exists. Controller names must be unique "
                "to avoid multiple controllers reporting the same metric. This validation can "
                "be disabled via the skip_name_validation option"
            )
        _used_names.add(name)


def _default_new_queue(controller_name: str, rate_limiter: Any) -> PriorityQueue:
    return PriorityQueue(controller_name, rate_limiter=rate_limiter)


def new_unmanaged(name, options):
    """Build a controller named ``name`` from ``options``, filling in defaults.

    The caller's options are left untouched.
    """
    if options.reconciler is None:
        raise ValueError("must specify Reconciler")
    if not name:
        raise ValueError("must specify Name for Controller")
    if not options.skip_name_validation:
        check_name(name)

    opts = dataclasses.replace(options)
    if opts.log_constructor is None:
        base = standard_logger().with_values("controller", name)
        opts.log_constructor = lambda request: base
    if opts.max_concurrent_reconciles <= 0:
        opts.max_concurrent_reconciles = 1
    if opts.cache_sync_timeout == 0:
        opts.cache_sync_timeout = DEFAULT_CACHE_SYNC_TIMEOUT
    if opts.rate_limiter is None:
        opts.rate_limiter = default_controller_rate_limiter()
    if opts.new_queue is None:
        opts.new_queue = _default_new_queue

    return Controller(
        name,
        opts.reconciler,
        max_concurrent_reconciles=opts.max_concurrent_reconciles,
        rate_limiter=opts.rate_limiter,
        new_queue=opts.new_queue,
        cache_sync_timeout=opts.cache_sync_timeout,
        log_constructor=opts.log_constructor,
        leader_elected=opts.need_leader_election,
    )