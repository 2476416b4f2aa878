# tests/conftest.py
from __future__ import annotations

import asyncio
import json
import os
import textwrap
import time
from pathlib import Path
from typing import Callable

import psutil
import pytest

from appspawner.domain import FORK_CAPABILITY, AppConfig
from appspawner.services.eventbus import LocalEventBus
from appspawner.services.hooks import DATASTORES, LIFECYCLE
from appspawner.services.logging import attach_event_logger, setup_logging
from appspawner.services.settings import Settings
from appspawner.services.spawner.factory import SpawnerFactory

_SRC = Path(__file__).resolve().parents[1] / "src"

posix_only = pytest.mark.skipif(os.name != "posix", reason="process spawning tests need a POSIX platform")

# Every generated app records what happened in it as JSON lines:
#   LOAD_LOG  one line per application import (preloader or direct worker)
#   HOOK_LOG  one line per starting_worker_process delivery
#   STOP_LOG  one line per stopping_worker_process delivery
_APP_TEMPLATE = '''
import json
import os
import time
from pathlib import Path

from appspawner.sdk import events


def _log(var, **fields):
    with Path(os.environ[var]).open("a", encoding="utf-8") as f:
        f.write(json.dumps({{"pid": os.getpid(), **fields}}) + "\\n")


time.sleep({load_delay})
{on_import}
_log("LOAD_LOG")


@events.on_starting_worker_process
def _record_start(forked):
    if Path(os.environ["HOOK_FAIL_FLAG"]).exists():
        raise RuntimeError("hook asked to fail")
    _log("HOOK_LOG", forked=forked)


@events.on_stopping_worker_process
def _record_stop():
    _log("STOP_LOG")


def application(payload):
    if payload == "boom":
        raise ValueError("boom")
    return {{"pid": os.getpid(), "echo": payload}}
'''


class AppDir:
    """A generated application root plus accessors for its logs."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.load_log = root / "load.log"
        self.hook_log = root / "hook.log"
        self.stop_log = root / "stop.log"
        self.hook_fail_flag = root / "hook.fail"

    @property
    def env(self) -> dict[str, str]:
        return {
            "LOAD_LOG": str(self.load_log),
            "HOOK_LOG": str(self.hook_log),
            "STOP_LOG": str(self.stop_log),
            "HOOK_FAIL_FLAG": str(self.hook_fail_flag),
        }

    def config(self, **kw) -> AppConfig:
        kw.setdefault("runtime_capabilities", frozenset({FORK_CAPABILITY}))
        kw.setdefault("spawn_timeout", 30.0)
        kw.setdefault("idle_timeout_seconds", 0)
        return AppConfig(root_path=self.root, env=self.env, **kw)

    @staticmethod
    def _read(path: Path) -> list[dict]:
        if not path.exists():
            return []
        return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]

    def loads(self) -> list[dict]:
        return self._read(self.load_log)

    def hooks(self) -> list[dict]:
        return self._read(self.hook_log)

    def stops(self) -> list[dict]:
        return self._read(self.stop_log)


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    base_dir = tmp_path / "base"
    monkeypatch.setenv("APPSPAWNER_BASE_DIR", str(base_dir))
    monkeypatch.delenv("APPSPAWNER_PROFILE", raising=False)
    # helper processes import appspawner from the source tree
    monkeypatch.setenv("PYTHONPATH", os.pathsep.join(p for p in (str(_SRC), os.environ.get("PYTHONPATH", "")) if p))
    monkeypatch.chdir(tmp_path)
    yield
    LIFECYCLE.clear()
    DATASTORES.clear()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings.from_sources(env_file=None).with_overrides(base_dir=str(tmp_path / "base"), profile="test", reap_interval=0.05, log_level="DEBUG")


@pytest.fixture
def bus(settings) -> LocalEventBus:
    bus = LocalEventBus()
    attach_event_logger(bus, setup_logging(settings))
    return bus


@pytest.fixture
def factory(settings, bus):
    f = SpawnerFactory(settings, bus)
    try:
        yield f
    finally:
        f.shutdown()


@pytest.fixture
def make_app(tmp_path) -> Callable[..., AppDir]:
    """Write an application module under a fresh root and return its AppDir."""
    counter = {"n": 0}

    def _make(*, load_delay: float = 0.0, on_import: str = "", name: str = "app", yaml_text: str | None = None) -> AppDir:
        counter["n"] += 1
        root = tmp_path / f"app{counter['n']}"
        root.mkdir()
        (root / f"{name}.py").write_text(
            _APP_TEMPLATE.format(load_delay=load_delay, on_import=textwrap.dedent(on_import)),
            encoding="utf-8",
        )
        if yaml_text is not None:
            (root / "appspawner.yaml").write_text(textwrap.dedent(yaml_text), encoding="utf-8")
        return AppDir(root)

    return _make


@pytest.fixture
def handles():
    """Collect ProcessHandles; every one is terminated after the test."""
    items: list = []
    yield items
    for h in items:
        h.terminate(grace=1.0)


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0, step: float = 0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(step)
    return predicate()


def pid_gone(pid: int) -> bool:
    try:
        p = psutil.Process(pid)
        return not p.is_running() or p.status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


@pytest.fixture
def event_loop():
    """Local event loop per test (works without pytest-asyncio)."""
    loop = asyncio.new_event_loop()
    try:
        yield loop
    finally:
        loop.close()
