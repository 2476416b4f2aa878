from __future__ import annotations

import asyncio
import time
from collections import defaultdict
from threading import RLock
from typing import Any, Awaitable, Callable, DefaultDict, List

from appspawner.domain import Event
from appspawner.ports import EventBus

Handler = Callable[[Event], Any] | Callable[[Event], Awaitable[Any]]


class LocalEventBus(EventBus):
    """
    In-process bus keyed by event type prefixes.
    - subscribe(prefix, handler)
    - publish(event)
    Notes:
      * prefix "" or "*" subscribes to everything.
      * Coroutine handlers are scheduled on the running loop, or run to
        completion when there is none. Spawns are published from executor
        threads, so both cases happen.
    """

    def __init__(self) -> None:
        self._subs: DefaultDict[str, List[Handler]] = defaultdict(list)
        self._lock = RLock()

    def subscribe(self, type_prefix: str, handler: Handler) -> None:
        with self._lock:
            self._subs[type_prefix].append(handler)

    def publish(self, event: Event) -> None:
        with self._lock:
            pairs = [(p, hs[:]) for p, hs in self._subs.items()]
        for prefix, handlers in pairs:
            if prefix == "*" or prefix == "" or event.type.startswith(prefix):
                for h in handlers:
                    res = h(event)
                    if asyncio.iscoroutine(res):
                        try:
                            loop = asyncio.get_running_loop()
                        except RuntimeError:
                            asyncio.run(res)
                        else:
                            loop.create_task(res)


def emit(bus: EventBus | None, type_: str, payload: dict, source: str) -> None:
    if bus is None:
        return
    bus.publish(Event(type=type_, payload=payload, source=source, ts=time.time()))
