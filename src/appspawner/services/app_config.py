from __future__ import annotations

from pathlib import Path
from typing import Any, Optional

import yaml

from appspawner.config.const import APP_CONFIG_FILE
from appspawner.domain import AppConfig
from appspawner.services.settings import Settings
from appspawner.services.spawner.factory import detect_runtime_capabilities

_KNOWN_KEYS = {
    "app_id",
    "entrypoint",
    "preload_strategy",
    "idle_timeout_seconds",
    "spawn_timeout",
    "env",
    "runtime_capabilities",
}


def read_app_file(root_path: Path) -> dict[str, Any]:
    path = Path(root_path) / APP_CONFIG_FILE
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at top level")
    unknown = sorted(set(data) - _KNOWN_KEYS)
    if unknown:
        raise ValueError(f"{path}: unknown keys {', '.join(unknown)}")
    return data


def load_app_config(root_path: str | Path, settings: Optional[Settings] = None, **overrides: Any) -> AppConfig:
    """
    Build an AppConfig for the application at ``root_path``.
    Precedence: explicit overrides > <root>/appspawner.yaml > Settings > detected runtime.
    """
    root = Path(root_path).expanduser().resolve()
    if not root.is_dir():
        raise ValueError(f"application root {root} is not a directory")

    data: dict[str, Any] = {}
    if settings is not None:
        data["preload_strategy"] = settings.strategy
        data["spawn_timeout"] = settings.spawn_timeout
        data["idle_timeout_seconds"] = settings.idle_timeout
    data.update(read_app_file(root))
    data.update({k: v for k, v in overrides.items() if v is not None})

    unknown = sorted(set(data) - _KNOWN_KEYS)
    if unknown:
        raise ValueError(f"unknown application options: {', '.join(unknown)}")

    caps = data.pop("runtime_capabilities", None)
    env = data.pop("env", None) or {}
    return AppConfig(
        root_path=root,
        runtime_capabilities=frozenset(caps) if caps is not None else detect_runtime_capabilities(),
        env={str(k): str(v) for k, v in env.items()},
        **data,
    )
