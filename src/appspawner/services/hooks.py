"""Ordered lifecycle listeners fired inside worker processes.

Process duplication copies open sockets and pooled connections into every
child, where they end up shared with the preloader and with all siblings.
Threads other than the one that called ``fork()`` do not exist in the child
at all. Listeners of ``starting_worker_process`` get a chance to repair that
before the worker accepts work.

Built-in listeners always run before application listeners. The first
listener that raises stops the dispatch; the error is wrapped into
:class:`~appspawner.domain.errors.StartupHookError` by the caller.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from threading import RLock
from typing import Any, Callable, DefaultDict, List, Protocol

from sqlalchemy.engine import Engine

from appspawner.config.const import EVENT_STARTING_WORKER, EVENT_STOPPING_WORKER

logger = logging.getLogger(__name__)

Listener = Callable[..., Any]


class Reconnectable(Protocol):
    def reconnect(self) -> None: ...


class LifecycleEvents:
    """Event name -> ordered listener list, with a separate built-in tier."""

    def __init__(self) -> None:
        self._builtin: DefaultDict[str, List[Listener]] = defaultdict(list)
        self._listeners: DefaultDict[str, List[Listener]] = defaultdict(list)
        self._lock = RLock()

    def on(self, name: str, listener: Listener, *, builtin: bool = False) -> Listener:
        with self._lock:
            (self._builtin if builtin else self._listeners)[name].append(listener)
        return listener

    def remove(self, name: str, listener: Listener) -> None:
        with self._lock:
            for tier in (self._builtin, self._listeners):
                if listener in tier.get(name, ()):
                    tier[name].remove(listener)

    def listeners(self, name: str) -> list[Listener]:
        with self._lock:
            return list(self._builtin.get(name, ())) + list(self._listeners.get(name, ()))

    def clear(self, *, builtin: bool = False) -> None:
        with self._lock:
            self._listeners.clear()
            if builtin:
                self._builtin.clear()

    def fire(self, name: str, *args: Any) -> int:
        """Call every listener for ``name`` in order. Returns how many ran."""
        count = 0
        for listener in self.listeners(name):
            listener(*args)
            count += 1
        logger.debug("lifecycle.fired", extra={"extra": {"event": name, "listeners": count}})
        return count


class DatastoreRegistry:
    """Default datastore clients that must not be shared across duplicated workers.

    SQLAlchemy engines get ``dispose(close=False)``: the pool forgets the
    connections inherited from the preloader without closing them, so the
    preloader's sockets stay intact and the worker opens its own on first use.
    Anything else must expose ``reconnect()``.
    """

    def __init__(self) -> None:
        self._engines: List[Engine] = []
        self._clients: List[Reconnectable] = []
        self._lock = RLock()

    def register_engine(self, engine: Engine) -> Engine:
        if not isinstance(engine, Engine):
            raise TypeError(f"{engine!r} is not a SQLAlchemy Engine; use register_client() for other stores")
        with self._lock:
            if engine not in self._engines:
                self._engines.append(engine)
        return engine

    def register_client(self, client: Reconnectable) -> Reconnectable:
        if not callable(getattr(client, "reconnect", None)):
            raise TypeError(f"{client!r} has no reconnect() method")
        with self._lock:
            self._clients.append(client)
        return client

    def clear(self) -> None:
        with self._lock:
            self._engines.clear()
            self._clients.clear()

    def reconnect_after_fork(self, forked: bool) -> None:
        if not forked:
            return
        with self._lock:
            engines = list(self._engines)
            clients = list(self._clients)
        for engine in engines:
            engine.dispose(close=False)
        for client in clients:
            client.reconnect()
        if engines or clients:
            logger.info(
                "datastores.reconnected",
                extra={"extra": {"engines": len(engines), "clients": len(clients)}},
            )


def install_builtin_listeners(events: LifecycleEvents, datastores: DatastoreRegistry) -> None:
    events.on(EVENT_STARTING_WORKER, datastores.reconnect_after_fork, builtin=True)


# process-wide registries used by application code (see appspawner.sdk.events)
LIFECYCLE = LifecycleEvents()
DATASTORES = DatastoreRegistry()
install_builtin_listeners(LIFECYCLE, DATASTORES)


def fire_starting_worker_process(forked: bool, events: LifecycleEvents | None = None) -> int:
    return (events or LIFECYCLE).fire(EVENT_STARTING_WORKER, forked)


def fire_stopping_worker_process(events: LifecycleEvents | None = None) -> int:
    return (events or LIFECYCLE).fire(EVENT_STOPPING_WORKER)
