# src/appspawner/config/const.py
from __future__ import annotations

# hard defaults; Settings.from_sources() lets ENV/.env override them
DEFAULT_STRATEGY: str = "smart"
DEFAULT_SPAWN_TIMEOUT_SEC: float = 90.0
DEFAULT_IDLE_TIMEOUT_SEC: float = 300.0
DEFAULT_REAP_INTERVAL_SEC: float = 1.0
DEFAULT_LOG_LEVEL: str = "INFO"

APP_CONFIG_FILE: str = "appspawner.yaml"

# granularity of every blocking wait on a child (ready, fork reply, exit)
WAIT_SLICE_SEC: float = 0.05
# how long a worker gets to run stopping hooks before it is killed
STOP_GRACE_SEC: float = 5.0
# least time a preloader gets to answer a fork request, whatever the caller budget
FORK_REPLY_FLOOR_SEC: float = 5.0

EVENT_STARTING_WORKER = "starting_worker_process"
EVENT_STOPPING_WORKER = "stopping_worker_process"
