from __future__ import annotations

import json
import logging
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Optional

from appspawner.domain import Event
from appspawner.ports import EventBus
from appspawner.services.settings import Settings


def _json_formatter(record: logging.LogRecord) -> str:
    base = {
        "level": record.levelname,
        "logger": record.name,
        "pid": record.process,
        "msg": record.getMessage(),
        "time": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
    }
    if hasattr(record, "extra"):
        try:
            base.update(record.extra)  # type: ignore[attr-defined]
        except (TypeError, ValueError):
            pass
    if record.exc_info:
        base["exc"] = logging.Formatter().formatException(record.exc_info)
    return json.dumps(base, ensure_ascii=False, default=str)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        return _json_formatter(record)


def setup_logging(settings: Settings, level: Optional[str] = None) -> logging.Logger:
    """
    Configure the parent-side loggers:
      - console (stderr)
      - file {logs_dir}/appspawner.log (rotating), see Settings.logs_dir()
    JSON lines, so that worker and preloader output interleaved on the same
    stream stays parseable.
    """
    logs_dir = settings.logs_dir()
    logs_dir.mkdir(parents=True, exist_ok=True)
    logfile = logs_dir / "appspawner.log"

    logger = logging.getLogger("appspawner")
    logger.setLevel(getattr(logging, (level or settings.log_level).upper(), logging.INFO))
    logger.handlers.clear()

    stream_h = logging.StreamHandler()
    stream_h.setFormatter(JsonFormatter())
    stream_h.setLevel(logger.level)

    file_h = RotatingFileHandler(logfile, maxBytes=5_000_000, backupCount=3, encoding="utf-8")
    file_h.setFormatter(JsonFormatter())
    file_h.setLevel(logger.level)

    logger.addHandler(stream_h)
    logger.addHandler(file_h)
    logger.propagate = False
    logger.info("logging.initialized", extra={"extra": {"logfile": str(logfile)}})
    return logger


def setup_child_logging(level: Optional[str] = None) -> logging.Logger:
    """Stream-only logging for preloader and worker processes (inherited stderr)."""
    logger = logging.getLogger("appspawner")
    name = (level or os.environ.get("APPSPAWNER_LOG_LEVEL") or "INFO").upper()
    logger.setLevel(getattr(logging, name, logging.INFO))
    logger.handlers.clear()
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def attach_event_logger(bus: EventBus, logger: Optional[logging.Logger] = None) -> None:
    """
    Subscribe a logger to every event on the bus.
    """
    base_logger = logger or logging.getLogger("appspawner.events")

    def _handler(ev: Event) -> None:
        iso_time = datetime.fromtimestamp(ev.ts, tz=timezone.utc).isoformat() if ev.ts else None
        base_logger.info(
            "event",
            extra={
                "extra": {
                    "event_time": iso_time,
                    "type": ev.type,
                    "source": ev.source,
                    "payload": dict(ev.payload),
                }
            },
        )

    bus.subscribe("", _handler)
