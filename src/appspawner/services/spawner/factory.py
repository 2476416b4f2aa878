from __future__ import annotations

import logging
import threading
from typing import Dict, Optional

from appspawner.domain import FORK_CAPABILITY, AppConfig, CapabilityError, PreloadStrategy
from appspawner.ports import EventBus, Spawner
from appspawner.services.eventbus import LocalEventBus
from appspawner.services.settings import Settings
from appspawner.services.spawner.direct import DirectSpawner
from appspawner.services.spawner.preloader import Preloader
from appspawner.services.spawner.registry import PreloaderRegistry
from appspawner.services.spawner.smart import SmartSpawner, duplication_available

logger = logging.getLogger(__name__)


def detect_runtime_capabilities() -> frozenset[str]:
    return frozenset({FORK_CAPABILITY}) if duplication_available() else frozenset()


class SpawnerFactory:
    """
    Hands out one spawner per application id.
    - smart (preload + fork) when the app asks for it and its runtime can fork
    - direct otherwise
    Owns every preloader it started; ``shutdown()`` stops them all.
    """

    def __init__(self, settings: Optional[Settings] = None, bus: Optional[EventBus] = None) -> None:
        self.settings = settings
        self.bus = bus if bus is not None else LocalEventBus()
        self._lock = threading.Lock()
        self._spawners: Dict[str, Spawner] = {}
        self._registry = PreloaderRegistry()
        self._closed = False

    def get_spawner(self, app_config: AppConfig) -> Spawner:
        with self._lock:
            if self._closed:
                raise RuntimeError("spawner factory is shut down")
            existing = self._spawners.get(app_config.app_id)
            if existing is not None:
                return existing
            spawner = self._build(app_config)
            self._spawners[app_config.app_id] = spawner
        logger.info(
            "factory.spawner_created",
            extra={"extra": {"app_id": app_config.app_id, "spawner": type(spawner).__name__}},
        )
        return spawner

    def _build(self, app_config: AppConfig) -> Spawner:
        if app_config.preload_strategy is PreloadStrategy.SMART:
            try:
                return SmartSpawner(app_config, settings=self.settings, bus=self.bus, registry=self._registry)
            except CapabilityError as e:
                logger.info("factory.fallback_direct", extra={"extra": {"app_id": app_config.app_id, "reason": str(e)}})
        return DirectSpawner(app_config, settings=self.settings, bus=self.bus)

    def spawners(self) -> Dict[str, Spawner]:
        with self._lock:
            return dict(self._spawners)

    def preloaders(self) -> Dict[str, Preloader]:
        return self._registry.snapshot()

    def shutdown(self) -> None:
        with self._lock:
            self._closed = True
            spawners = list(self._spawners.values())
            self._spawners.clear()
        for spawner in spawners:
            try:
                spawner.shutdown()
            except Exception:
                logger.exception("factory.shutdown_failed", extra={"extra": {"spawner": repr(spawner)}})

    def __enter__(self) -> "SpawnerFactory":
        return self

    def __exit__(self, *exc_info) -> None:
        self.shutdown()
