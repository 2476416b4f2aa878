# tests/test_direct_spawner.py
from __future__ import annotations

import errno

import psutil
import pytest

from appspawner.domain import (
    LoadError,
    PreloadStrategy,
    ResourceExhausted,
    SpawnRequest,
    SpawnStrategy,
    SpawnTimeout,
    StartupHookError,
    WorkerState,
)
from appspawner.services.spawner import direct as direct_mod
from appspawner.services.spawner.direct import DirectSpawner
from appspawner.services.spawner.handle import WorkerRequestError
from conftest import pid_gone, posix_only, wait_for

pytestmark = posix_only


def test_worker_loads_app_and_serves_requests(make_app, settings, bus, handles):
    app = make_app()
    events: list = []
    bus.subscribe("spawner.", events.append)
    spawner = DirectSpawner(app.config(preload_strategy=PreloadStrategy.DIRECT), settings=settings, bus=bus)

    h = spawner.spawn()
    handles.append(h)

    assert h.strategy is SpawnStrategy.DIRECT
    assert h.state is WorkerState.READY
    assert h.worker.preloader_pid is None
    assert h.spawn_duration_ms > 0
    assert h.is_alive()
    assert h.request({"x": 1}) == {"pid": h.pid, "echo": {"x": 1}}
    with pytest.raises(WorkerRequestError, match="boom"):
        h.request("boom")
    # the worker survives an application error
    assert h.request("again")["echo"] == "again"

    assert app.hooks() == [{"pid": h.pid, "forked": False}]
    assert [e.type for e in events] == ["spawner.spawn.started", "spawner.spawn.ready"]
    assert events[-1].payload["pid"] == h.pid


def test_each_spawn_loads_from_scratch(make_app, settings, handles):
    app = make_app()
    spawner = DirectSpawner(app.config(), settings=settings)
    for _ in range(2):
        handles.append(spawner.spawn())
    assert sorted(r["pid"] for r in app.loads()) == sorted(h.pid for h in handles)


def test_terminate_runs_stopping_listeners(make_app, settings):
    app = make_app()
    h = DirectSpawner(app.config(), settings=settings).spawn()
    pid = h.pid
    h.terminate()
    assert h.state is WorkerState.DEAD
    assert not h.is_alive()
    assert app.stops() == [{"pid": pid}]
    assert wait_for(lambda: pid_gone(pid))


def test_import_failure_is_load_error(make_app, settings, bus):
    app = make_app(on_import="raise ImportError('missing dependency')")
    failed: list = []
    bus.subscribe("spawner.spawn.failed", failed.append)
    spawner = DirectSpawner(app.config(), settings=settings, bus=bus)

    with pytest.raises(LoadError, match="missing dependency") as ei:
        spawner.spawn()
    assert ei.value.app_id == spawner.app_config.app_id
    assert failed and failed[0].payload["error"] == "LoadError"


def test_bad_entrypoint_is_load_error(make_app, settings):
    app = make_app()
    with pytest.raises(LoadError, match="no attribute"):
        DirectSpawner(app.config(entrypoint="app:missing"), settings=settings).spawn()


def test_slow_load_times_out_and_child_is_killed(make_app, settings):
    app = make_app(load_delay=30)
    spawner = DirectSpawner(app.config(), settings=settings)

    with pytest.raises(SpawnTimeout) as ei:
        spawner.spawn(timeout=1.0)
    pid = ei.value.pid
    assert pid is not None
    assert wait_for(lambda: pid_gone(pid))
    assert app.loads() == []


def test_hook_failure_is_startup_hook_error(make_app, settings):
    app = make_app()
    app.hook_fail_flag.touch()
    with pytest.raises(StartupHookError, match="hook asked to fail") as ei:
        DirectSpawner(app.config(), settings=settings).spawn()
    assert wait_for(lambda: pid_gone(ei.value.pid))
    assert app.hooks() == []


def test_process_creation_refused(make_app, settings, monkeypatch):
    def refuse(*a, **kw):
        raise OSError(errno.EAGAIN, "Resource temporarily unavailable")

    monkeypatch.setattr(direct_mod, "launch_helper", refuse)
    app = make_app()
    with pytest.raises(ResourceExhausted):
        DirectSpawner(app.config(), settings=settings).spawn()


def test_try_spawn_wraps_result(make_app, settings, handles):
    app = make_app()
    spawner = DirectSpawner(app.config(), settings=settings)

    res = spawner.try_spawn(SpawnRequest(app_id=spawner.app_config.app_id, timeout=30))
    assert res.ok
    handles.append(res.unwrap())
    assert psutil.pid_exists(res.handle.pid)

    with pytest.raises(ValueError):
        spawner.try_spawn(SpawnRequest(app_id="other-app"))

    broken = DirectSpawner(app.config(entrypoint="app:missing"), settings=settings)
    res = broken.try_spawn(SpawnRequest(app_id=broken.app_config.app_id))
    assert not res.ok
    assert isinstance(res.error, LoadError)
    with pytest.raises(LoadError):
        res.unwrap()
