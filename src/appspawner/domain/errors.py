"""Typed failures of the spawning subsystem."""

from __future__ import annotations

from typing import Optional

__all__ = [
    "SpawnError",
    "LoadError",
    "SpawnTimeout",
    "PreloaderDead",
    "ResourceExhausted",
    "StartupHookError",
    "SpawnCancelled",
    "CapabilityError",
    "error_from_report",
]


class SpawnError(RuntimeError):
    """Base class for every failure surfaced by ``Spawner.spawn``."""

    def __init__(self, message: str, *, app_id: Optional[str] = None, pid: Optional[int] = None) -> None:
        self.app_id = app_id
        self.pid = pid
        super().__init__(message)


class LoadError(SpawnError):
    """The application failed to initialize (import error, bad entrypoint, early exit)."""


class SpawnTimeout(SpawnError):
    """The process did not reach ``ready`` in time; the caller may retry."""


class PreloaderDead(SpawnError):
    """The preloader has terminated; it must be restarted before duplicating again."""


class ResourceExhausted(SpawnError):
    """The OS refused to create a process. Not retried automatically."""


class StartupHookError(SpawnError):
    """A ``starting_worker_process`` listener raised inside the new worker."""


class SpawnCancelled(SpawnError):
    """The caller cancelled the spawn before the worker became ready."""


class CapabilityError(SpawnError):
    """The application runtime cannot create workers by duplication."""


_KINDS = {
    "load": LoadError,
    "hook": StartupHookError,
    "resource": ResourceExhausted,
}


def error_from_report(report: dict, *, app_id: Optional[str] = None, pid: Optional[int] = None) -> SpawnError:
    """Map an ``{"status": "error", "kind": ...}`` message from a child back to an exception."""
    cls = _KINDS.get(report.get("kind", ""), SpawnError)
    message = report.get("message") or "child reported an unknown error"
    return cls(message, app_id=app_id, pid=report.get("pid", pid))
