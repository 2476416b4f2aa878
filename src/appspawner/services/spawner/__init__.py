from .direct import DirectSpawner
from .factory import SpawnerFactory, detect_runtime_capabilities
from .handle import ProcessHandle, WorkerRequestError
from .preloader import Preloader
from .registry import PreloaderRegistry
from .smart import SmartSpawner, duplication_available

__all__ = [
    "DirectSpawner",
    "SpawnerFactory",
    "detect_runtime_capabilities",
    "ProcessHandle",
    "WorkerRequestError",
    "Preloader",
    "PreloaderRegistry",
    "SmartSpawner",
    "duplication_available",
]
