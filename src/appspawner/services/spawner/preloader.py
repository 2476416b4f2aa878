"""Parent-side control of one preloader helper process.

State machine (all transitions under one condition variable)::

    not_started -> loading -> idle <-> busy
    idle -> shutting_down -> terminated       (idle reaper / stop())
    any  -> terminated                        (crash, failed start)

``duplicate()`` and the idle reaper contend for that same lock, so a
duplication request is either accepted into ``busy`` or sees the preloader
already shutting down and gets :class:`PreloaderDead`; never both. Queued
duplication requests also keep the reaper away.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

import psutil

from appspawner.config.const import FORK_REPLY_FLOOR_SEC, STOP_GRACE_SEC, WAIT_SLICE_SEC
from appspawner.domain import (
    AppConfig,
    LoadError,
    PreloaderDead,
    PreloaderState,
    ResourceExhausted,
    SpawnCancelled,
    SpawnError,
    SpawnStrategy,
    SpawnTimeout,
)
from appspawner.domain.errors import error_from_report
from appspawner.ports import EventBus
from appspawner.services.eventbus import emit
from appspawner.services.settings import Settings
from appspawner.services.spawner.base import abort_child, await_ready, child_env, remaining
from appspawner.services.spawner.channel import Channel, ChannelCancelled, ChannelClosed, ChannelTimeout
from appspawner.services.spawner.handle import ProcessHandle
from appspawner.services.spawner.process import is_resource_error, launch_helper, process_alive, stop_process
from appspawner.services.spawner.reaper import IdleReaper

logger = logging.getLogger(__name__)

PRELOADER_MODULE = "appspawner.services.spawner.preloader_main"

_LIVE = (PreloaderState.LOADING, PreloaderState.IDLE, PreloaderState.BUSY)


class Preloader:
    def __init__(
        self,
        app_config: AppConfig,
        *,
        settings: Optional[Settings] = None,
        bus: Optional[EventBus] = None,
        reap_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        on_terminated: Optional[Callable[["Preloader"], None]] = None,
    ) -> None:
        self.app_config = app_config
        self.settings = settings
        self.bus = bus
        self.reap_interval = reap_interval if reap_interval is not None else (settings.reap_interval if settings else 1.0)
        self._clock = clock
        self._on_terminated = on_terminated
        self._cond = threading.Condition()
        self._state = PreloaderState.NOT_STARTED
        self._idle_since: Optional[float] = None
        self._waiting = 0
        self._process: Optional[psutil.Popen] = None
        self._control: Optional[Channel] = None
        self._reaper: Optional[IdleReaper] = None

    def __repr__(self) -> str:
        return f"Preloader(app_id={self.app_config.app_id!r}, pid={self.pid}, state={self._state.value})"

    # ---------- inspection ----------

    @property
    def state(self) -> PreloaderState:
        return self._state

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    @property
    def idle_since(self) -> Optional[float]:
        return self._idle_since

    @property
    def idle_timeout(self) -> Optional[float]:
        return self.app_config.idle_timeout_seconds or None

    def is_alive(self) -> bool:
        """True while the helper can still answer; notices crashes as a side effect."""
        with self._cond:
            if self._state not in _LIVE:
                return False
            if self._state is PreloaderState.LOADING or process_alive(self._process):
                return True
            # crashed while idle: nobody else is touching the channel
            crashed = self._state is PreloaderState.IDLE
        if crashed:
            self._mark_dead("exited")
            return False
        return True

    # ---------- start ----------

    def start(self, timeout: Optional[float] = None, *, cancel: Optional[threading.Event] = None) -> None:
        """Launch the helper and wait until it has loaded the application once."""
        app_id = self.app_config.app_id
        timeout = self.app_config.spawn_timeout if timeout is None else timeout
        with self._cond:
            if self._state is not PreloaderState.NOT_STARTED:
                raise RuntimeError(f"preloader for {app_id} was already started ({self._state.value})")
            self._state = PreloaderState.LOADING

        started = time.monotonic()
        channel, theirs = Channel.pair()
        try:
            proc = launch_helper(
                PRELOADER_MODULE,
                self.app_config.to_child_payload(),
                child_fd=theirs.fileno(),
                env=child_env(self.settings),
            )
        except OSError as e:
            channel.close()
            self._set_terminated()
            if is_resource_error(e):
                raise ResourceExhausted(f"cannot start preloader: {e}", app_id=app_id) from e
            raise SpawnError(f"cannot start preloader: {e}", app_id=app_id) from e
        finally:
            theirs.close()

        try:
            message = channel.recv(timeout, cancel=cancel)
        except ChannelTimeout:
            self._fail_start(channel, proc)
            raise SpawnTimeout(f"preloader {proc.pid} did not finish loading in {timeout:.1f}s", app_id=app_id, pid=proc.pid) from None
        except ChannelCancelled:
            self._fail_start(channel, proc)
            raise SpawnCancelled(f"preloader {proc.pid} start was cancelled", app_id=app_id, pid=proc.pid) from None
        except ChannelClosed:
            self._fail_start(channel, proc)
            raise LoadError(f"preloader {proc.pid} exited while loading", app_id=app_id, pid=proc.pid) from None

        if message.get("status") != "ready":
            self._fail_start(channel, proc)
            if message.get("status") == "error":
                raise error_from_report(message, app_id=app_id, pid=proc.pid)
            raise SpawnError(f"unexpected message from preloader: {message!r}", app_id=app_id, pid=proc.pid)

        with self._cond:
            self._process = proc
            self._control = channel
            self._state = PreloaderState.IDLE
            self._idle_since = self._clock()
            self._cond.notify_all()

        if self.app_config.reaping_enabled:
            self._reaper = IdleReaper(self.reap_if_idle, self.reap_interval, name=f"reaper-{app_id}")
            self._reaper.start()

        load_ms = (time.monotonic() - started) * 1000.0
        logger.info("preloader.started", extra={"extra": {"app_id": app_id, "pid": proc.pid, "load_ms": round(load_ms, 1)}})
        emit(self.bus, "preloader.started", {"app_id": app_id, "pid": proc.pid, "load_ms": load_ms}, "preloader")

    def _fail_start(self, channel: Channel, proc: psutil.Popen) -> None:
        abort_child(channel, proc)
        self._set_terminated()

    # ---------- duplicate ----------

    def duplicate(self, timeout: Optional[float] = None, *, cancel: Optional[threading.Event] = None) -> ProcessHandle:
        """Fork a worker from the loaded image. Only one fork runs at a time."""
        app_id = self.app_config.app_id
        timeout = self.app_config.spawn_timeout if timeout is None else timeout
        started = time.monotonic()
        deadline = started + timeout

        with self._cond:
            self._waiting += 1
            try:
                while self._state in (PreloaderState.BUSY, PreloaderState.LOADING):
                    left = remaining(deadline)
                    if left <= 0:
                        raise SpawnTimeout(f"preloader for {app_id} stayed busy past the deadline", app_id=app_id)
                    if cancel is not None and cancel.is_set():
                        raise SpawnCancelled(f"spawn for {app_id} cancelled while queued", app_id=app_id)
                    self._cond.wait(min(left, WAIT_SLICE_SEC))
                if self._state is not PreloaderState.IDLE:
                    raise PreloaderDead(f"preloader for {app_id} is {self._state.value}", app_id=app_id, pid=self.pid)
                if not process_alive(self._process):
                    dead = True
                else:
                    dead = False
                    self._state = PreloaderState.BUSY
            finally:
                self._waiting -= 1
        if dead:
            self._mark_dead("exited")
            raise PreloaderDead(f"preloader for {app_id} has exited", app_id=app_id)

        try:
            return self._fork_worker(deadline, cancel, started)
        finally:
            with self._cond:
                if self._state is PreloaderState.BUSY:
                    self._state = PreloaderState.IDLE
                    self._idle_since = self._clock()
                self._cond.notify_all()

    def _fork_worker(self, deadline: float, cancel: Optional[threading.Event], started: float) -> ProcessHandle:
        """Runs in state ``busy``; the caller holds the only access to the control channel."""
        app_id = self.app_config.app_id
        control = self._control
        assert control is not None
        preloader_pid = self.pid

        channel, theirs = Channel.pair()
        try:
            try:
                control.send({"op": "fork"}, fds=[theirs.fileno()])
            finally:
                theirs.close()
            # an over-budget spawn fails later in await_ready, which kills the child
            reply = control.recv(max(remaining(deadline), FORK_REPLY_FLOOR_SEC))
        except ChannelClosed:
            channel.close()
            self._mark_dead("control channel closed", busy=True)
            raise PreloaderDead(f"preloader for {app_id} died during fork", app_id=app_id, pid=preloader_pid) from None
        except ChannelTimeout:
            channel.close()
            # a late reply would desynchronize the control channel
            logger.error("preloader.unresponsive", extra={"extra": {"app_id": app_id, "pid": preloader_pid}})
            self._mark_dead("unresponsive", busy=True)
            raise SpawnTimeout(f"preloader for {app_id} did not answer a fork request in time", app_id=app_id, pid=preloader_pid) from None

        if reply.get("status") == "error":
            channel.close()
            raise error_from_report(reply, app_id=app_id)
        if reply.get("status") != "forked":
            channel.close()
            raise SpawnError(f"unexpected reply from preloader: {reply!r}", app_id=app_id, pid=preloader_pid)

        pid = int(reply["pid"])
        try:
            process: Optional[psutil.Process] = psutil.Process(pid)
        except psutil.NoSuchProcess:
            # already gone; its error report (if any) is waiting on the channel
            process = None
        return await_ready(
            channel,
            process,
            app_id=app_id,
            pid=pid,
            strategy=SpawnStrategy.DUPLICATED,
            deadline=deadline,
            cancel=cancel,
            started=started,
            preloader_pid=preloader_pid,
        )

    # ---------- idle reaping ----------

    def reap_if_idle(self, now: Optional[float] = None) -> bool:
        """Shut down if idle for longer than the timeout. Returns True once terminated."""
        timeout = self.idle_timeout
        with self._cond:
            if self._state is PreloaderState.TERMINATED:
                return True
            if not timeout or self._state is not PreloaderState.IDLE or self._waiting:
                return False
            now = self._clock() if now is None else now
            if self._idle_since is None or now - self._idle_since <= timeout:
                return False
            self._state = PreloaderState.SHUTTING_DOWN
            idle_for = now - self._idle_since
        logger.info("preloader.reaping", extra={"extra": {"app_id": self.app_config.app_id, "pid": self.pid, "idle_s": round(idle_for, 2)}})
        self._shutdown()
        emit(self.bus, "preloader.reaped", {"app_id": self.app_config.app_id, "idle_s": idle_for}, "preloader")
        return True

    # ---------- stop ----------

    def stop(self, grace: float = STOP_GRACE_SEC) -> None:
        """Terminate the helper. Waits for an in-flight fork or reap to finish first."""
        with self._cond:
            while self._state in (PreloaderState.BUSY, PreloaderState.LOADING, PreloaderState.SHUTTING_DOWN):
                self._cond.wait(WAIT_SLICE_SEC)
            if self._state is PreloaderState.TERMINATED:
                return
            never_started = self._state is PreloaderState.NOT_STARTED
            if not never_started:
                self._state = PreloaderState.SHUTTING_DOWN
        if never_started:
            self._set_terminated()
            return
        self._shutdown(grace)
        emit(self.bus, "preloader.stopped", {"app_id": self.app_config.app_id}, "preloader")

    def _shutdown(self, grace: float = STOP_GRACE_SEC) -> None:
        """Runs in ``shutting_down``; nobody else uses the channel or process."""
        control, proc = self._control, self._process
        if control is not None:
            try:
                control.send({"op": "exit"})
            except (ChannelClosed, OSError):
                pass
        if proc is not None:
            stop_process(proc, grace)
        if control is not None:
            control.close()
        if self._reaper is not None:
            self._reaper.stop()
        self._set_terminated()
        logger.info("preloader.terminated", extra={"extra": {"app_id": self.app_config.app_id, "pid": self.pid}})

    def _mark_dead(self, reason: str, *, busy: bool = False) -> None:
        with self._cond:
            if self._state is PreloaderState.TERMINATED:
                return
            if not busy and self._state is not PreloaderState.IDLE:
                return
            self._state = PreloaderState.SHUTTING_DOWN
        logger.warning("preloader.dead", extra={"extra": {"app_id": self.app_config.app_id, "pid": self.pid, "reason": reason}})
        if self._process is not None:
            stop_process(self._process, 0)
        if self._control is not None:
            self._control.close()
        if self._reaper is not None:
            self._reaper.stop()
        self._set_terminated()
        emit(self.bus, "preloader.dead", {"app_id": self.app_config.app_id, "reason": reason}, "preloader")

    def _set_terminated(self) -> None:
        with self._cond:
            first = self._state is not PreloaderState.TERMINATED
            self._state = PreloaderState.TERMINATED
            self._cond.notify_all()
        # once per preloader, outside the lock
        if first and self._on_terminated is not None:
            self._on_terminated(self)
