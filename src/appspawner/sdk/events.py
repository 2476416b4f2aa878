"""Lifecycle hooks for application code running under appspawner.

Register listeners at import time of your application module; they are kept
by the preloader and copied into every worker it duplicates::

    from appspawner.sdk import events

    @events.on_starting_worker_process
    def reopen(forked: bool) -> None:
        if forked:
            cache_client.reconnect()
            start_metrics_thread()
"""

from __future__ import annotations

from typing import Any, Callable

from sqlalchemy.engine import Engine

from appspawner.config.const import EVENT_STARTING_WORKER, EVENT_STOPPING_WORKER
from appspawner.services.hooks import DATASTORES, LIFECYCLE, Listener, Reconnectable

__all__ = [
    "on_event",
    "on_starting_worker_process",
    "on_stopping_worker_process",
    "register_datastore",
    "register_reconnectable",
]


def on_event(name: str) -> Callable[[Listener], Listener]:
    """Decorator registering ``fn`` for the lifecycle event ``name``."""

    def deco(fn: Listener) -> Listener:
        LIFECYCLE.on(name, fn)
        return fn

    return deco


def on_starting_worker_process(fn: Callable[[bool], Any]) -> Callable[[bool], Any]:
    return on_event(EVENT_STARTING_WORKER)(fn)


def on_stopping_worker_process(fn: Callable[[], Any]) -> Callable[[], Any]:
    return on_event(EVENT_STOPPING_WORKER)(fn)


def register_datastore(engine: Engine) -> Engine:
    """Mark a SQLAlchemy engine as the app's default datastore (disposed after fork)."""
    return DATASTORES.register_engine(engine)


def register_reconnectable(client: Reconnectable) -> Reconnectable:
    return DATASTORES.register_client(client)
