# tests/test_smart_spawner.py
from __future__ import annotations

import threading
import time

import psutil
import pytest

from appspawner.domain import CapabilityError, PreloaderDead, PreloaderState, SpawnStrategy, SpawnTimeout, StartupHookError
from appspawner.services.spawner.preloader import Preloader
from appspawner.services.spawner.smart import SmartSpawner
from conftest import posix_only, wait_for

pytestmark = posix_only


@pytest.fixture
def smart(settings, bus):
    created: list[SmartSpawner] = []

    def _make(cfg) -> SmartSpawner:
        s = SmartSpawner(cfg, settings=settings, bus=bus)
        created.append(s)
        return s

    yield _make
    for s in created:
        s.shutdown()


def test_requires_fork_capability(make_app, settings):
    with pytest.raises(CapabilityError):
        SmartSpawner(make_app().config(runtime_capabilities=frozenset()), settings=settings)


def test_first_spawn_starts_preloader_lazily(make_app, smart, handles):
    app = make_app()
    spawner = smart(app.config())
    assert spawner.preloader is None

    h = spawner.spawn()
    handles.append(h)
    assert spawner.preloader is not None
    assert spawner.preloader.state is PreloaderState.IDLE
    assert h.strategy is SpawnStrategy.DUPLICATED
    assert h.worker.preloader_pid == spawner.preloader.pid
    assert app.hooks() == [{"pid": h.pid, "forked": True}]


def test_concurrent_cold_spawns_share_one_preloader(make_app, smart, handles):
    app = make_app(load_delay=0.5)
    spawner = smart(app.config())
    results: list = []
    lock = threading.Lock()

    def run():
        h = spawner.spawn()
        with lock:
            results.append(h)

    threads = [threading.Thread(target=run) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(60)
    handles.extend(results)

    assert len(results) == 5
    assert len(app.loads()) == 1
    assert {h.worker.preloader_pid for h in results} == {app.loads()[0]["pid"]}
    assert len({h.pid for h in results}) == 5


def test_duplications_never_overlap(make_app, smart, handles, monkeypatch):
    windows: list[tuple[float, float]] = []
    original = Preloader._fork_worker

    def recording(self, deadline, cancel, started):
        begin = time.monotonic()
        try:
            return original(self, deadline, cancel, started)
        finally:
            time.sleep(0.02)
            windows.append((begin, time.monotonic()))

    monkeypatch.setattr(Preloader, "_fork_worker", recording)
    spawner = smart(make_app().config())
    threads = [threading.Thread(target=lambda: handles.append(spawner.spawn())) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(60)

    assert len(windows) == 4
    windows.sort()
    for (_, end), (begin, _) in zip(windows, windows[1:]):
        assert end <= begin


def test_preloader_crash_is_recovered(make_app, smart, handles):
    app = make_app()
    spawner = smart(app.config())
    handles.append(spawner.spawn())
    first = spawner.preloader
    psutil.Process(first.pid).kill()
    assert wait_for(lambda: not first.is_alive())

    h = spawner.spawn()
    handles.append(h)
    assert spawner.preloader is not first
    assert h.worker.preloader_pid == spawner.preloader.pid
    assert len(app.loads()) == 2


def test_reaped_preloader_is_replaced(make_app, smart, handles):
    app = make_app()
    spawner = smart(app.config(idle_timeout_seconds=0.3))
    handles.append(spawner.spawn())
    first = spawner.preloader
    assert wait_for(lambda: first.state is PreloaderState.TERMINATED)

    handles.append(spawner.spawn())
    assert spawner.preloader is not first
    assert spawner.preloader.state is PreloaderState.IDLE
    assert len(app.loads()) == 2


def test_dead_twice_surfaces_as_timeout(make_app, smart, monkeypatch):
    def always_dead(self, timeout=None, *, cancel=None):
        raise PreloaderDead("gone", app_id=self.app_config.app_id)

    monkeypatch.setattr(Preloader, "duplicate", always_dead)
    spawner = smart(make_app().config())
    with pytest.raises(SpawnTimeout) as ei:
        spawner.spawn()
    assert isinstance(ei.value.__cause__, PreloaderDead)
    assert spawner.preloader is None


def test_hook_failure_leaves_preloader_usable(make_app, smart, handles):
    app = make_app()
    spawner = smart(app.config())
    handles.append(spawner.spawn())
    preloader_pid = spawner.preloader.pid

    app.hook_fail_flag.touch()
    with pytest.raises(StartupHookError):
        spawner.spawn()
    assert spawner.preloader.is_alive()

    app.hook_fail_flag.unlink()
    h = spawner.spawn()
    handles.append(h)
    assert h.worker.preloader_pid == preloader_pid
    assert len(app.hooks()) == 2


def test_spawn_async_returns_ready_worker(make_app, smart, handles, event_loop):
    spawner = smart(make_app().config())
    h = event_loop.run_until_complete(spawner.spawn_async())
    handles.append(h)
    assert h.request(1)["echo"] == 1
