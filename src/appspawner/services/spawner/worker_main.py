"""Entry point of a worker started from scratch (direct strategy).

    python -m appspawner.services.spawner.worker_main '<json payload>'

The payload carries the app config and the number of the inherited socket.
"""

from __future__ import annotations

import json
import logging
import signal
import sys
from typing import Optional, Sequence

from appspawner.services.logging import setup_child_logging
from appspawner.services.spawner.app_loader import AppLoadFailure, load_application
from appspawner.services.spawner.channel import Channel
from appspawner.services.spawner.worker import report_error, run_worker

logger = logging.getLogger("appspawner.worker")


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = sys.argv[1:] if argv is None else list(argv)
    payload = json.loads(args[0])

    # the spawner owns shutdown; Ctrl-C in a terminal must not kill workers first
    signal.signal(signal.SIGINT, signal.SIG_IGN)
    setup_child_logging()

    channel = Channel.from_fd(int(payload["fd"]))
    try:
        app = load_application(payload["root_path"], payload["entrypoint"], payload.get("env"))
    except AppLoadFailure as e:
        logger.error("worker.load_failed", extra={"extra": {"app_id": payload.get("app_id"), "error": str(e)}})
        report_error(channel, "load", str(e))
        return 1
    return run_worker(channel, app, forked=False)


if __name__ == "__main__":
    sys.exit(main())
