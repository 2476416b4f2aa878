from appspawner.domain import (
    AppConfig,
    CapabilityError,
    LoadError,
    PreloaderDead,
    ResourceExhausted,
    SpawnCancelled,
    SpawnError,
    SpawnRequest,
    SpawnResult,
    SpawnTimeout,
    StartupHookError,
)
from appspawner.services.app_config import load_app_config
from appspawner.services.spawner import ProcessHandle, SpawnerFactory

__version__ = "0.1.0"

__all__ = [
    "AppConfig",
    "CapabilityError",
    "LoadError",
    "PreloaderDead",
    "ResourceExhausted",
    "SpawnCancelled",
    "SpawnError",
    "SpawnRequest",
    "SpawnResult",
    "SpawnTimeout",
    "StartupHookError",
    "load_app_config",
    "ProcessHandle",
    "SpawnerFactory",
]
