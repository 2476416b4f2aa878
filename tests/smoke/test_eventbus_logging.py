# tests/smoke/test_eventbus_logging.py
import json

from appspawner.services.eventbus import LocalEventBus, emit
from appspawner.services.logging import attach_event_logger, setup_logging
from appspawner.services.settings import Settings


def test_emit_event(tmp_path, monkeypatch):
    monkeypatch.setenv("APPSPAWNER_BASE_DIR", str(tmp_path / "base"))
    settings = Settings.from_sources(env_file=None)
    bus = LocalEventBus()
    attach_event_logger(bus, setup_logging(settings))

    seen = []
    bus.subscribe("demo.", seen.append)
    emit(bus, "demo.started", {"x": 1}, "smoke")
    emit(bus, "other.thing", {}, "smoke")
    emit(None, "demo.ignored", {}, "smoke")

    assert [e.type for e in seen] == ["demo.started"]
    logfile = tmp_path / "base" / "logs" / "appspawner.log"
    lines = [json.loads(line) for line in logfile.read_text(encoding="utf-8").splitlines()]
    assert any(line.get("type") == "demo.started" and line.get("payload") == {"x": 1} for line in lines)
