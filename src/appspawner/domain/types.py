# src/appspawner/domain/types.py
from __future__ import annotations

import hashlib
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Mapping, Optional

if TYPE_CHECKING:
    from appspawner.domain.errors import SpawnError
    from appspawner.services.spawner.handle import ProcessHandle

FORK_CAPABILITY = "fork"


class SpawnStrategy(str, Enum):
    DIRECT = "direct"
    DUPLICATED = "duplicated"


class PreloadStrategy(str, Enum):
    SMART = "smart"
    DIRECT = "direct"


class WorkerState(str, Enum):
    STARTING = "starting"
    READY = "ready"
    STOPPING = "stopping"
    DEAD = "dead"


class PreloaderState(str, Enum):
    NOT_STARTED = "not_started"
    LOADING = "loading"
    IDLE = "idle"
    BUSY = "busy"
    SHUTTING_DOWN = "shutting_down"
    TERMINATED = "terminated"


@dataclass(frozen=True, slots=True)
class Event:
    type: str
    payload: Mapping[str, Any]
    source: str
    ts: float


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Everything the spawner needs to know about one application."""

    root_path: Path
    entrypoint: str = "app:application"
    preload_strategy: PreloadStrategy = PreloadStrategy.SMART
    runtime_capabilities: frozenset[str] = frozenset()
    # 0 / None -> preloader is never reaped
    idle_timeout_seconds: Optional[float] = 300.0
    spawn_timeout: float = 90.0
    env: Mapping[str, str] = field(default_factory=dict)
    app_id: str = ""

    def __post_init__(self) -> None:
        root = Path(self.root_path).expanduser().resolve()
        object.__setattr__(self, "root_path", root)
        object.__setattr__(self, "preload_strategy", PreloadStrategy(self.preload_strategy))
        object.__setattr__(self, "runtime_capabilities", frozenset(self.runtime_capabilities))
        if ":" not in self.entrypoint:
            raise ValueError(f"entrypoint must look like 'module:attribute', got {self.entrypoint!r}")
        if not self.app_id:
            digest = hashlib.sha256(str(root).encode()).hexdigest()[:8]
            object.__setattr__(self, "app_id", f"{root.name}-{digest}")

    @property
    def supports_duplication(self) -> bool:
        return FORK_CAPABILITY in self.runtime_capabilities

    @property
    def reaping_enabled(self) -> bool:
        return bool(self.idle_timeout_seconds)

    def to_child_payload(self) -> dict[str, Any]:
        """Serializable subset handed to helper processes on their command line."""
        return {
            "app_id": self.app_id,
            "root_path": str(self.root_path),
            "entrypoint": self.entrypoint,
            "env": dict(self.env),
        }


@dataclass(slots=True)
class WorkerProcess:
    pid: int
    strategy: SpawnStrategy
    app_id: str
    # pid of the preloader the worker was forked from (back-reference only)
    preloader_pid: Optional[int] = None
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    state: WorkerState = WorkerState.STARTING

    def touch(self) -> None:
        self.last_activity = time.time()


@dataclass(frozen=True, slots=True)
class SpawnRequest:
    app_id: str
    timeout: Optional[float] = None


@dataclass(frozen=True, slots=True)
class SpawnResult:
    request: SpawnRequest
    handle: Optional[ProcessHandle] = None
    error: Optional[SpawnError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.handle is not None

    def unwrap(self) -> ProcessHandle:
        if self.error is not None:
            raise self.error
        assert self.handle is not None
        return self.handle
