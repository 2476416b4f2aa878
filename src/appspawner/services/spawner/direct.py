from __future__ import annotations

import logging
import threading
from typing import Optional

from appspawner.domain import ResourceExhausted, SpawnError, SpawnStrategy
from appspawner.services.spawner.base import BaseSpawner, await_ready, child_env
from appspawner.services.spawner.channel import Channel
from appspawner.services.spawner.handle import ProcessHandle
from appspawner.services.spawner.process import is_resource_error, launch_helper

logger = logging.getLogger(__name__)

WORKER_MODULE = "appspawner.services.spawner.worker_main"


class DirectSpawner(BaseSpawner):
    """Start every worker as a fresh interpreter that loads the app from scratch.

    Nothing is shared between workers, which makes this the fallback for
    every failure mode of the preloading strategy.
    """

    strategy = SpawnStrategy.DIRECT

    def _spawn(self, deadline: float, cancel: Optional[threading.Event]) -> ProcessHandle:
        app_id = self.app_config.app_id
        channel, theirs = Channel.pair()
        try:
            proc = launch_helper(
                WORKER_MODULE,
                self.app_config.to_child_payload(),
                child_fd=theirs.fileno(),
                env=child_env(self.settings),
            )
        except OSError as e:
            channel.close()
            if is_resource_error(e):
                raise ResourceExhausted(f"cannot start worker: {e}", app_id=app_id) from e
            raise SpawnError(f"cannot start worker: {e}", app_id=app_id) from e
        finally:
            # the child has its own copy now; ours would hide its exit from recv()
            theirs.close()

        logger.debug("direct.started", extra={"extra": {"app_id": app_id, "pid": proc.pid}})
        return await_ready(
            channel,
            proc,
            app_id=app_id,
            pid=proc.pid,
            strategy=self.strategy,
            deadline=deadline,
            cancel=cancel,
        )
