"""Entry point of the preloader helper process.

    python -m appspawner.services.spawner.preloader_main '<json payload>'

The helper loads the application once, reports ``ready`` on its control
socket and then answers control requests one at a time:

* ``{"op": "fork"}`` with one socket attached as ``SCM_RIGHTS`` ->
  ``{"status": "forked", "pid": N}`` or ``{"status": "error", ...}``
* ``{"op": "ping"}`` -> ``{"op": "pong", "pid": N}``
* ``{"op": "exit"}`` or EOF on the control socket -> exit

Duplicated children run :func:`~appspawner.services.spawner.worker.run_worker`
on the attached socket and never return into this loop.
"""

from __future__ import annotations

import json
import logging
import os
import signal
import sys
from typing import List, Optional, Sequence

from appspawner.services.logging import setup_child_logging
from appspawner.services.spawner.app_loader import AppLoadFailure, Application, load_application
from appspawner.services.spawner.channel import Channel, ChannelClosed
from appspawner.services.spawner.process import is_resource_error
from appspawner.services.spawner.worker import report_error, run_worker

logger = logging.getLogger("appspawner.preloader")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = sys.argv[1:] if argv is None else list(argv)
    payload = json.loads(args[0])

    signal.signal(signal.SIGINT, signal.SIG_IGN)
    setup_child_logging()

    control = Channel.from_fd(int(payload["fd"]))
    try:
        app = load_application(payload["root_path"], payload["entrypoint"], payload.get("env"))
    except AppLoadFailure as e:
        logger.error("preloader.load_failed", extra={"extra": {"app_id": payload.get("app_id"), "error": str(e)}})
        report_error(control, "load", str(e))
        return 1

    # duplicated workers are reaped by the kernel; the spawner tracks them by pid
    signal.signal(signal.SIGCHLD, signal.SIG_IGN)
    try:
        control.send({"status": "ready", "pid": os.getpid()})
    except ChannelClosed:
        return 0
    logger.info("preloader.ready", extra={"extra": {"app_id": payload.get("app_id")}})
    return serve_control(control, app)


def serve_control(control: Channel, app: Application) -> int:
    try:
        _control_loop(control, app)
    except ChannelClosed:
        logger.info("preloader.control_closed")
    return 0


def _control_loop(control: Channel, app: Application) -> None:
    while True:
        message, fds = control.recv_with_fds()
        op = message.get("op")
        if op == "exit":
            _close_all(fds)
            logger.info("preloader.exit_requested")
            return
        if op == "ping":
            _close_all(fds)
            control.send({"op": "pong", "pid": os.getpid()})
            continue
        if op != "fork" or len(fds) != 1:
            _close_all(fds)
            control.send({"status": "error", "kind": "protocol", "message": f"bad control request {op!r} with {len(fds)} fds"})
            continue
        fork_worker(control, fds[0], app)


def fork_worker(control: Channel, worker_fd: int, app: Application) -> None:
    try:
        pid = os.fork()
    except OSError as e:
        os.close(worker_fd)
        kind = "resource" if is_resource_error(e) else "fork"
        logger.error("preloader.fork_failed", extra={"extra": {"errno": e.errno}})
        control.send({"status": "error", "kind": kind, "message": f"fork failed: {e}"})
        return

    if pid == 0:
        code = 1
        try:
            signal.signal(signal.SIGCHLD, signal.SIG_DFL)
            # the control socket belongs to the preloader alone
            control.close()
            code = run_worker(Channel.from_fd(worker_fd), app, forked=True)
        except BaseException:
            logger.exception("worker.crashed")
        finally:
            sys.stdout.flush()
            sys.stderr.flush()
            os._exit(code)

    os.close(worker_fd)
    logger.debug("preloader.forked", extra={"extra": {"child": pid}})
    control.send({"status": "forked", "pid": pid})


def _close_all(fds: List[int]) -> None:
    for fd in fds:
        try:
            os.close(fd)
        except OSError:
            pass


if __name__ == "__main__":
    sys.exit(main())
