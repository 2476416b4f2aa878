from __future__ import annotations

import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


class IdleReaper:
    """Background thread calling ``check()`` every ``interval`` seconds.

    ``check`` returns True once it has reaped its target; the thread then ends.
    """

    def __init__(self, check: Callable[[], bool], interval: float, *, name: str = "idle-reaper") -> None:
        if interval <= 0:
            raise ValueError("reaper interval must be positive")
        self._check = check
        self._interval = interval
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def start(self) -> None:
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        self._stop.set()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(timeout)

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                if self._check():
                    return
            except Exception:
                logger.exception("reaper.check_failed")
