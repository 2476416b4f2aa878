from __future__ import annotations

import threading
from typing import TYPE_CHECKING, Callable, Optional, Protocol

from appspawner.domain import AppConfig, Event, SpawnRequest, SpawnResult

if TYPE_CHECKING:
    from appspawner.services.spawner.handle import ProcessHandle


class EventBus(Protocol):
    def publish(self, event: Event) -> None: ...
    def subscribe(self, type_prefix: str, handler: Callable[[Event], object]) -> None: ...


class Spawner(Protocol):
    app_config: AppConfig

    def spawn(self, timeout: Optional[float] = None, *, cancel: Optional[threading.Event] = None) -> ProcessHandle: ...
    async def spawn_async(self, timeout: Optional[float] = None) -> ProcessHandle: ...
    def try_spawn(self, request: SpawnRequest) -> SpawnResult: ...
    def shutdown(self) -> None: ...
