from __future__ import annotations

import logging
import os
import socket
import threading
from typing import Optional

from appspawner.domain import AppConfig, CapabilityError, PreloaderDead, SpawnStrategy, SpawnTimeout
from appspawner.ports import EventBus
from appspawner.services.settings import Settings
from appspawner.services.spawner.base import BaseSpawner, remaining
from appspawner.services.spawner.handle import ProcessHandle
from appspawner.services.spawner.preloader import Preloader
from appspawner.services.spawner.registry import PreloaderRegistry

logger = logging.getLogger(__name__)


def duplication_available() -> bool:
    """Whether this interpreter can fork and pass sockets between processes."""
    return os.name == "posix" and hasattr(os, "fork") and hasattr(socket, "send_fds")


class SmartSpawner(BaseSpawner):
    """Keep one preloader per application and fork workers from it.

    The preloader is started lazily by the first ``spawn()``; concurrent cold
    spawns wait for that single start instead of racing their own.
    """

    strategy = SpawnStrategy.DUPLICATED

    def __init__(
        self,
        app_config: AppConfig,
        *,
        settings: Optional[Settings] = None,
        bus: Optional[EventBus] = None,
        registry: Optional[PreloaderRegistry] = None,
    ) -> None:
        if not app_config.supports_duplication:
            raise CapabilityError(f"runtime of {app_config.app_id} does not report the fork capability", app_id=app_config.app_id)
        if not duplication_available():
            raise CapabilityError("this platform cannot duplicate processes", app_id=app_config.app_id)
        super().__init__(app_config, settings=settings, bus=bus)
        self._registry = registry if registry is not None else PreloaderRegistry()
        self._lock = threading.Lock()
        self._preloader: Optional[Preloader] = None

    @property
    def preloader(self) -> Optional[Preloader]:
        return self._preloader

    def _new_preloader(self) -> Preloader:
        app_id = self.app_config.app_id
        return Preloader(
            self.app_config,
            settings=self.settings,
            bus=self.bus,
            on_terminated=lambda p: self._registry.unregister(app_id, p),
        )

    def ensure_preloader(self, deadline: float, cancel: Optional[threading.Event] = None) -> Preloader:
        with self._lock:
            current = self._preloader
            if current is not None and current.is_alive():
                return current
            if current is not None:
                self._discard_locked(current)
            preloader = self._new_preloader()
            preloader.start(remaining(deadline), cancel=cancel)
            self._preloader = preloader
            self._registry.register(self.app_config.app_id, preloader)
            return preloader

    def _discard(self, preloader: Preloader) -> None:
        with self._lock:
            if self._preloader is preloader:
                self._discard_locked(preloader)

    def _discard_locked(self, preloader: Preloader) -> None:
        preloader.stop()
        self._registry.unregister(self.app_config.app_id, preloader)
        self._preloader = None

    def _spawn(self, deadline: float, cancel: Optional[threading.Event]) -> ProcessHandle:
        last_error: Optional[PreloaderDead] = None
        for attempt in (1, 2):
            preloader = self.ensure_preloader(deadline, cancel)
            try:
                return preloader.duplicate(remaining(deadline), cancel=cancel)
            except PreloaderDead as e:
                logger.warning(
                    "smart.preloader_dead",
                    extra={"extra": {"app_id": self.app_config.app_id, "attempt": attempt, "detail": str(e)}},
                )
                self._discard(preloader)
                last_error = e
        raise SpawnTimeout(
            f"preloader for {self.app_config.app_id} died twice in a row",
            app_id=self.app_config.app_id,
        ) from last_error

    def shutdown(self) -> None:
        with self._lock:
            if self._preloader is not None:
                self._discard_locked(self._preloader)
