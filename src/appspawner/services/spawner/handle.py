from __future__ import annotations

import itertools
import logging
import threading
from typing import Any, Optional

import psutil

from appspawner.config.const import STOP_GRACE_SEC
from appspawner.domain import SpawnStrategy, WorkerProcess, WorkerState
from appspawner.services.spawner.channel import Channel, ChannelClosed, ChannelTimeout, request
from appspawner.services.spawner.process import process_alive, stop_process

logger = logging.getLogger(__name__)


class WorkerRequestError(RuntimeError):
    """The application raised while handling a request; the worker itself is fine."""


class ProcessHandle:
    """A ready worker plus the channel used to talk to it.

    Handles are only ever created for workers that reported ``ready``.
    """

    def __init__(
        self,
        worker: WorkerProcess,
        endpoint: Channel,
        process: psutil.Process,
        spawn_duration_ms: float,
    ) -> None:
        self.worker = worker
        self.endpoint = endpoint
        self.spawn_duration_ms = spawn_duration_ms
        self._process = process
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        worker.state = WorkerState.READY

    def __repr__(self) -> str:
        return (
            f"ProcessHandle(pid={self.pid}, strategy={self.strategy.value}, "
            f"state={self.state.value}, spawn_duration_ms={self.spawn_duration_ms:.1f})"
        )

    @property
    def pid(self) -> int:
        return self.worker.pid

    @property
    def strategy(self) -> SpawnStrategy:
        return self.worker.strategy

    @property
    def created_at(self) -> float:
        return self.worker.created_at

    @property
    def state(self) -> WorkerState:
        return self.worker.state

    def is_alive(self) -> bool:
        if self.worker.state is WorkerState.DEAD:
            return False
        alive = process_alive(self._process)
        if not alive:
            self.worker.state = WorkerState.DEAD
        return alive

    def request(self, payload: Any, timeout: Optional[float] = None) -> Any:
        """Send one unit of work to the worker and return the application's result."""
        with self._lock:
            if self.worker.state is not WorkerState.READY:
                raise ChannelClosed(f"worker {self.pid} is {self.worker.state.value}")
            try:
                reply = request(self.endpoint, payload, request_id=next(self._ids), timeout=timeout)
            except ChannelClosed:
                self.worker.state = WorkerState.DEAD
                self.endpoint.close()
                raise
            except ChannelTimeout:
                # a late reply would desynchronize the channel; the worker is unusable
                logger.warning("worker.request_timeout", extra={"extra": {"pid": self.pid}})
                self._kill()
                raise
            self.worker.touch()
        if not reply.get("ok"):
            raise WorkerRequestError(reply.get("error") or "request failed")
        return reply.get("result")

    def terminate(self, grace: float = STOP_GRACE_SEC) -> None:
        """Ask the worker to stop (runs its stopping listeners), kill it if it lingers."""
        with self._lock:
            if self.worker.state is WorkerState.DEAD:
                return
            self.worker.state = WorkerState.STOPPING
            try:
                self.endpoint.send({"op": "stop"})
            except (ChannelClosed, OSError):
                pass
            stop_process(self._process, grace)
            self.endpoint.close()
            self.worker.state = WorkerState.DEAD
        logger.info("worker.terminated", extra={"extra": {"pid": self.pid, "app_id": self.worker.app_id}})

    def _kill(self) -> None:
        self.worker.state = WorkerState.STOPPING
        stop_process(self._process, 0)
        self.endpoint.close()
        self.worker.state = WorkerState.DEAD

    def __enter__(self) -> "ProcessHandle":
        return self

    def __exit__(self, *exc: object) -> None:
        self.terminate()
