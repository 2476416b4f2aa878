from .contracts import EventBus, Spawner

__all__ = ["EventBus", "Spawner"]
