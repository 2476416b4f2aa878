"""The request-serving side of a worker, shared by both spawn strategies."""

from __future__ import annotations

import logging
import os
from typing import Optional

from appspawner.services.hooks import (
    LifecycleEvents,
    fire_starting_worker_process,
    fire_stopping_worker_process,
)
from appspawner.services.spawner.app_loader import Application, call_application
from appspawner.services.spawner.channel import Channel, ChannelClosed

logger = logging.getLogger(__name__)


def report_error(channel: Channel, kind: str, message: str) -> None:
    try:
        channel.send({"status": "error", "kind": kind, "message": message, "pid": os.getpid()})
    except ChannelClosed:
        pass


def run_worker(
    channel: Channel,
    app: Application,
    *,
    forked: bool,
    events: Optional[LifecycleEvents] = None,
) -> int:
    """Fire startup listeners, report ``ready`` and serve until told to stop.

    Returns the process exit code.
    """
    try:
        fire_starting_worker_process(forked, events)
    except Exception as e:
        logger.exception("worker.startup_hook_failed")
        report_error(channel, "hook", f"starting_worker_process listener failed: {e!r}")
        return 1

    try:
        channel.send({"status": "ready", "pid": os.getpid(), "forked": forked})
    except ChannelClosed:
        # caller gave up (timeout/cancel) before we got here
        return 0
    logger.info("worker.ready", extra={"extra": {"forked": forked}})

    try:
        _serve(channel, app)
    finally:
        try:
            fire_stopping_worker_process(events)
        except Exception:
            logger.exception("worker.stopping_hook_failed")
        channel.close()
    return 0


def _serve(channel: Channel, app: Application) -> None:
    while True:
        try:
            message = channel.recv()
        except ChannelClosed:
            logger.info("worker.channel_closed")
            return
        op = message.get("op")
        if op == "stop":
            logger.info("worker.stop_requested")
            return
        if op == "ping":
            channel.send({"op": "pong", "pid": os.getpid()})
            continue
        if op != "request":
            channel.send({"id": message.get("id"), "ok": False, "error": f"unknown op {op!r}"})
            continue
        try:
            result = call_application(app, message.get("payload"))
        except Exception as e:
            logger.exception("worker.request_failed")
            reply = {"id": message.get("id"), "ok": False, "error": repr(e)}
        else:
            reply = {"id": message.get("id"), "ok": True, "result": result}
        try:
            channel.send(reply)
        except ChannelClosed:
            return
