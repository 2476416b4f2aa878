from __future__ import annotations

import threading
from typing import Dict, Optional

from appspawner.domain import PreloaderState
from appspawner.services.spawner.preloader import Preloader


class PreloaderRegistry:
    """app id -> live Preloader. At most one entry per application.

    Preloaders remove themselves through ``unregister`` when they terminate,
    possibly from inside ``register`` (``is_alive`` can notice a crash), hence
    the reentrant lock.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._items: Dict[str, Preloader] = {}

    def register(self, app_id: str, preloader: Preloader) -> None:
        with self._lock:
            if preloader.state is PreloaderState.TERMINATED:
                return
            current = self._items.get(app_id)
            if current is not None and current is not preloader and current.is_alive():
                raise RuntimeError(f"a live preloader for {app_id} is already registered (pid={current.pid})")
            self._items[app_id] = preloader

    def unregister(self, app_id: str, preloader: Optional[Preloader] = None) -> None:
        with self._lock:
            current = self._items.get(app_id)
            if current is None:
                return
            if preloader is None or current is preloader:
                del self._items[app_id]

    def get(self, app_id: str) -> Optional[Preloader]:
        with self._lock:
            return self._items.get(app_id)

    def snapshot(self) -> Dict[str, Preloader]:
        with self._lock:
            return dict(self._items)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
