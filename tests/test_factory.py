# tests/test_factory.py
from __future__ import annotations

import psutil
import pytest

from appspawner.domain import PreloaderState, PreloadStrategy, SpawnStrategy
from appspawner.services.app_config import load_app_config
from appspawner.services.spawner.direct import DirectSpawner
from appspawner.services.spawner.factory import SpawnerFactory, detect_runtime_capabilities
from appspawner.services.spawner.registry import PreloaderRegistry
from appspawner.services.spawner.smart import SmartSpawner
from conftest import pid_gone, posix_only, wait_for


def test_smart_without_fork_capability_falls_back_to_direct(make_app, factory):
    cfg = make_app().config(runtime_capabilities=frozenset())
    assert isinstance(factory.get_spawner(cfg), DirectSpawner)


def test_direct_strategy_is_honoured(make_app, factory):
    cfg = make_app().config(preload_strategy=PreloadStrategy.DIRECT)
    assert isinstance(factory.get_spawner(cfg), DirectSpawner)


@posix_only
def test_spawner_is_cached_per_app(make_app, factory):
    first, second = make_app(), make_app()
    s1 = factory.get_spawner(first.config())
    assert isinstance(s1, SmartSpawner)
    assert factory.get_spawner(first.config()) is s1
    assert factory.get_spawner(second.config()) is not s1
    assert set(factory.spawners()) == {s1.app_config.app_id, second.config().app_id}


@posix_only
def test_registry_tracks_live_preloaders_and_shutdown_stops_them(make_app, settings, bus, handles):
    app = make_app()
    with SpawnerFactory(settings, bus) as factory:
        spawner = factory.get_spawner(app.config())
        h = spawner.spawn()
        handles.append(h)
        assert h.strategy is SpawnStrategy.DUPLICATED

        preloaders = factory.preloaders()
        assert list(preloaders) == [spawner.app_config.app_id]
        preloader = preloaders[spawner.app_config.app_id]
        pid = preloader.pid

    assert preloader.state is PreloaderState.TERMINATED
    assert wait_for(lambda: pid_gone(pid))
    assert factory.preloaders() == {}
    with pytest.raises(RuntimeError):
        factory.get_spawner(app.config())


@posix_only
def test_registry_drops_reaped_preloader(make_app, settings, bus, handles):
    app = make_app()
    with SpawnerFactory(settings, bus) as factory:
        spawner = factory.get_spawner(app.config(idle_timeout_seconds=0.3))
        handles.append(spawner.spawn())
        preloader = factory.preloaders()[spawner.app_config.app_id]

        assert wait_for(lambda: preloader.state is PreloaderState.TERMINATED)
        assert wait_for(lambda: factory.preloaders() == {})

        handles.append(spawner.spawn())
        assert factory.preloaders() == {spawner.app_config.app_id: spawner.preloader}
        assert spawner.preloader is not preloader


@posix_only
def test_registry_drops_crashed_preloader(make_app, settings, bus, handles):
    with SpawnerFactory(settings, bus) as factory:
        spawner = factory.get_spawner(make_app().config())
        handles.append(spawner.spawn())
        preloader = spawner.preloader
        psutil.Process(preloader.pid).kill()

        assert wait_for(lambda: not preloader.is_alive())
        assert factory.preloaders() == {}


def test_registry_ignores_terminated_preloader():
    class Gone:
        pid = 1
        state = PreloaderState.TERMINATED

    reg = PreloaderRegistry()
    reg.register("app", Gone())
    assert reg.get("app") is None


def test_registry_refuses_second_live_preloader():
    class Live:
        pid = 1
        state = PreloaderState.IDLE

        def is_alive(self):
            return True

    reg = PreloaderRegistry()
    a, b = Live(), Live()
    reg.register("app", a)
    reg.register("app", a)
    with pytest.raises(RuntimeError):
        reg.register("app", b)
    reg.unregister("app", b)
    assert reg.get("app") is a
    reg.unregister("app", a)
    assert len(reg) == 0


def test_load_app_config_from_yaml(make_app, settings):
    app = make_app(
        name="service",
        yaml_text="""
        app_id: billing
        entrypoint: service:application
        preload_strategy: direct
        idle_timeout_seconds: 0
        spawn_timeout: 12
        env:
          FEATURE: "on"
        runtime_capabilities: []
        """,
    )
    cfg = load_app_config(app.root, settings)
    assert cfg.app_id == "billing"
    assert cfg.entrypoint == "service:application"
    assert cfg.preload_strategy is PreloadStrategy.DIRECT
    assert not cfg.reaping_enabled
    assert cfg.spawn_timeout == 12
    assert cfg.env == {"FEATURE": "on"}
    assert not cfg.supports_duplication

    overridden = load_app_config(app.root, settings, preload_strategy="smart", spawn_timeout=None)
    assert overridden.preload_strategy is PreloadStrategy.SMART
    assert overridden.spawn_timeout == 12


def test_load_app_config_defaults_come_from_settings(make_app, settings):
    app = make_app()
    cfg = load_app_config(app.root, settings.with_overrides(idle_timeout=42, strategy="direct"))
    assert cfg.idle_timeout_seconds == 42
    assert cfg.preload_strategy is PreloadStrategy.DIRECT
    assert cfg.runtime_capabilities == detect_runtime_capabilities()
    assert cfg.app_id.startswith(app.root.name + "-")


def test_load_app_config_rejects_unknown_keys(make_app, tmp_path):
    app = make_app(yaml_text="workers: 4\n")
    with pytest.raises(ValueError, match="workers"):
        load_app_config(app.root)
    with pytest.raises(ValueError):
        load_app_config(tmp_path / "missing")
