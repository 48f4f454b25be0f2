"""Reconcile-loop controllers driven by store watch events, with a priority work queue."""

__version__ = "0.1.0"

__all__ = [
    "controller",
    "engine",
    "log",
    "metrics",
    "priorityqueue",
    "queuemetrics",
    "ratelimiter",
    "reconcile",
    "source",
    "store",
]