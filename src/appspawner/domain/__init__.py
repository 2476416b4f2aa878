from .types import (
    FORK_CAPABILITY,
    AppConfig,
    Event,
    PreloaderState,
    PreloadStrategy,
    SpawnRequest,
    SpawnResult,
    SpawnStrategy,
    WorkerProcess,
    WorkerState,
)
from .errors import (
    CapabilityError,
    LoadError,
    PreloaderDead,
    ResourceExhausted,
    SpawnCancelled,
    SpawnError,
    SpawnTimeout,
    StartupHookError,
)

__all__ = [
    "FORK_CAPABILITY",
    "AppConfig",
    "Event",
    "PreloaderState",
    "PreloadStrategy",
    "SpawnRequest",
    "SpawnResult",
    "SpawnStrategy",
    "WorkerProcess",
    "WorkerState",
    "CapabilityError",
    "LoadError",
    "PreloaderDead",
    "ResourceExhausted",
    "SpawnCancelled",
    "SpawnError",
    "SpawnTimeout",
    "StartupHookError",
]
