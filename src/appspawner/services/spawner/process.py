from __future__ import annotations

import errno
import json
import logging
import subprocess
import sys
import time
from typing import Mapping, Optional

import psutil

from appspawner.config.const import WAIT_SLICE_SEC

logger = logging.getLogger(__name__)

_RESOURCE_ERRNOS = {errno.EAGAIN, errno.ENOMEM, errno.EMFILE, errno.ENFILE}


def is_resource_error(exc: OSError) -> bool:
    return exc.errno in _RESOURCE_ERRNOS


def launch_helper(module: str, payload: Mapping, *, child_fd: int, env: Optional[Mapping[str, str]] = None) -> psutil.Popen:
    """Start ``python -m <module> <json>`` with ``child_fd`` inherited.

    Raises OSError straight from ``Popen``; callers map it to their error type.
    """
    cmd = [sys.executable, "-m", module, json.dumps({**payload, "fd": child_fd})]
    return psutil.Popen(
        cmd,
        pass_fds=(child_fd,),
        env=dict(env) if env is not None else None,
        stdin=subprocess.DEVNULL,
        close_fds=True,
    )


def kill_tree(proc: psutil.Process) -> None:
    try:
        children = proc.children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        children = []
    for c in children:
        try:
            c.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
    try:
        proc.kill()
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        pass


def process_alive(proc: Optional[psutil.Process]) -> bool:
    if proc is None:
        return False
    if isinstance(proc, psutil.Popen):
        return proc.poll() is None
    try:
        return proc.is_running() and proc.status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


def wait_gone(proc: psutil.Process, timeout: float) -> bool:
    """Poll until the process is gone (zombies count as gone). Reaps our own children."""
    deadline = time.monotonic() + timeout
    while process_alive(proc):
        if time.monotonic() >= deadline:
            return False
        time.sleep(WAIT_SLICE_SEC)
    return True


def stop_process(proc: psutil.Process, grace: float) -> bool:
    """Wait up to ``grace`` seconds for a voluntary exit, then terminate, then kill."""
    if wait_gone(proc, grace):
        return True
    logger.warning("process.did_not_exit", extra={"extra": {"pid": proc.pid}})
    try:
        proc.terminate()
    except psutil.NoSuchProcess:
        return True
    if wait_gone(proc, 1.0):
        return True
    kill_tree(proc)
    return wait_gone(proc, 1.0)
