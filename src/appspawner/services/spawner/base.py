from __future__ import annotations

import asyncio
import functools
import logging
import os
import threading
import time
from typing import Mapping, Optional

import psutil

from appspawner.domain import (
    AppConfig,
    LoadError,
    SpawnCancelled,
    SpawnError,
    SpawnRequest,
    SpawnResult,
    SpawnStrategy,
    SpawnTimeout,
    WorkerProcess,
)
from appspawner.domain.errors import error_from_report
from appspawner.ports import EventBus
from appspawner.services.eventbus import emit
from appspawner.services.settings import Settings
from appspawner.services.spawner.channel import Channel, ChannelCancelled, ChannelClosed, ChannelTimeout
from appspawner.services.spawner.handle import ProcessHandle
from appspawner.services.spawner.process import kill_tree, wait_gone

logger = logging.getLogger(__name__)


def remaining(deadline: float) -> float:
    return max(0.0, deadline - time.monotonic())


def child_env(settings: Optional[Settings]) -> Mapping[str, str]:
    env = dict(os.environ)
    if settings is not None:
        env["APPSPAWNER_LOG_LEVEL"] = settings.log_level
    return env


def abort_child(channel: Channel, process: Optional[psutil.Process]) -> None:
    """Tear down a child that never became ready."""
    channel.close()
    if process is None:
        return
    kill_tree(process)
    if not wait_gone(process, 1.0):
        logger.warning("spawn.abort_unconfirmed", extra={"extra": {"pid": process.pid}})


def await_ready(
    channel: Channel,
    process: Optional[psutil.Process],
    *,
    app_id: str,
    pid: int,
    strategy: SpawnStrategy,
    deadline: float,
    cancel: Optional[threading.Event] = None,
    started: Optional[float] = None,
    preloader_pid: Optional[int] = None,
) -> ProcessHandle:
    """Wait for the child's ``ready`` report; on any failure the child is killed."""
    started = time.monotonic() if started is None else started
    try:
        message = channel.recv(remaining(deadline), cancel=cancel)
    except ChannelTimeout:
        abort_child(channel, process)
        raise SpawnTimeout(f"worker {pid} did not become ready in time", app_id=app_id, pid=pid) from None
    except ChannelCancelled:
        abort_child(channel, process)
        raise SpawnCancelled(f"spawn of worker {pid} was cancelled", app_id=app_id, pid=pid) from None
    except ChannelClosed:
        abort_child(channel, process)
        raise LoadError(f"worker {pid} exited before becoming ready", app_id=app_id, pid=pid) from None

    status = message.get("status")
    if status == "error":
        abort_child(channel, process)
        raise error_from_report(message, app_id=app_id, pid=pid)
    if status != "ready" or process is None:
        abort_child(channel, process)
        raise SpawnError(f"unexpected startup message from worker {pid}: {message!r}", app_id=app_id, pid=pid)

    worker = WorkerProcess(pid=pid, strategy=strategy, app_id=app_id, preloader_pid=preloader_pid)
    return ProcessHandle(worker, channel, process, spawn_duration_ms=(time.monotonic() - started) * 1000.0)


class BaseSpawner:
    """Shared contract of both strategies: timeouts, events, async and result-typed entry points."""

    strategy: SpawnStrategy

    def __init__(self, app_config: AppConfig, *, settings: Optional[Settings] = None, bus: Optional[EventBus] = None) -> None:
        self.app_config = app_config
        self.settings = settings
        self.bus = bus

    def __repr__(self) -> str:
        return f"{type(self).__name__}(app_id={self.app_config.app_id!r})"

    def spawn(self, timeout: Optional[float] = None, *, cancel: Optional[threading.Event] = None) -> ProcessHandle:
        timeout = self.app_config.spawn_timeout if timeout is None else timeout
        started = time.monotonic()
        app_id = self.app_config.app_id
        emit(self.bus, "spawner.spawn.started", {"app_id": app_id, "spawner": type(self).__name__}, "spawner")
        try:
            handle = self._spawn(started + timeout, cancel)
        except SpawnError as e:
            logger.warning(
                "spawn.failed",
                extra={"extra": {"app_id": app_id, "error": type(e).__name__, "detail": str(e)}},
            )
            emit(self.bus, "spawner.spawn.failed", {"app_id": app_id, "error": type(e).__name__, "detail": str(e)}, "spawner")
            raise
        handle.spawn_duration_ms = (time.monotonic() - started) * 1000.0
        logger.info(
            "spawn.ready",
            extra={"extra": {"app_id": app_id, "pid": handle.pid, "strategy": handle.strategy.value, "ms": round(handle.spawn_duration_ms, 1)}},
        )
        emit(
            self.bus,
            "spawner.spawn.ready",
            {"app_id": app_id, "pid": handle.pid, "strategy": handle.strategy.value, "duration_ms": handle.spawn_duration_ms},
            "spawner",
        )
        return handle

    def _spawn(self, deadline: float, cancel: Optional[threading.Event]) -> ProcessHandle:
        raise NotImplementedError

    async def spawn_async(self, timeout: Optional[float] = None) -> ProcessHandle:
        """``spawn()`` in an executor thread.

        Cancelling the awaiting task before the worker is ready kills the
        half-started child. A worker that became ready first stays up.
        """
        cancel = threading.Event()
        loop = asyncio.get_running_loop()
        fut = loop.run_in_executor(None, functools.partial(self.spawn, timeout, cancel=cancel))
        try:
            return await asyncio.shield(fut)
        except asyncio.CancelledError:
            cancel.set()
            fut.add_done_callback(self._after_cancel)
            raise

    def _after_cancel(self, fut: "asyncio.Future[ProcessHandle]") -> None:
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is None:
            logger.info("spawn.cancelled_after_ready", extra={"extra": {"app_id": self.app_config.app_id, "pid": fut.result().pid}})
        elif not isinstance(exc, SpawnCancelled):
            logger.info("spawn.cancelled_with_error", extra={"extra": {"app_id": self.app_config.app_id, "error": repr(exc)}})

    def try_spawn(self, request: SpawnRequest) -> SpawnResult:
        if request.app_id != self.app_config.app_id:
            raise ValueError(f"request for {request.app_id!r} sent to spawner of {self.app_config.app_id!r}")
        try:
            return SpawnResult(request=request, handle=self.spawn(request.timeout))
        except SpawnError as e:
            return SpawnResult(request=request, error=e)

    def shutdown(self) -> None:
        pass
