# src/appspawner/services/settings.py
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Optional

from appspawner.config import const


def _parse_env_file(path: str) -> Dict[str, str]:
    data: Dict[str, str] = {}
    p = Path(path)
    if not p.exists():
        return data
    for line in p.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if "=" in line:
            k, v = line.split("=", 1)
            data[k.strip()] = v.strip().strip('"').strip("'")
    return data


def _as_float(raw: str, default: float, key: str) -> float:
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{key} must be a number, got {raw!r}") from None


def _profile(name: str) -> str:
    # used as a directory name under logs/
    if not name or name in (".", "..") or "/" in name or os.sep in name:
        raise ValueError(f"profile must be a plain name, got {name!r}")
    return name


@dataclass(frozen=True, slots=True)
class Settings:
    base_dir: Path
    # separates log directories of independent setups sharing one base_dir
    profile: str = "default"
    strategy: str = const.DEFAULT_STRATEGY
    spawn_timeout: float = const.DEFAULT_SPAWN_TIMEOUT_SEC
    idle_timeout: float = const.DEFAULT_IDLE_TIMEOUT_SEC
    reap_interval: float = const.DEFAULT_REAP_INTERVAL_SEC
    log_level: str = const.DEFAULT_LOG_LEVEL

    @staticmethod
    def from_sources(env_file: Optional[str] = ".env") -> "Settings":
        env_file_vars = _parse_env_file(env_file) if env_file else {}

        def pick_env(key: str, default: Optional[str] = None) -> str:
            return os.environ.get(key) or env_file_vars.get(key) or (default or "")

        override_base = pick_env("APPSPAWNER_BASE_DIR")
        if override_base:
            base = Path(override_base).expanduser().resolve()
        else:
            base = (Path.home() / ".appspawner").resolve()

        strategy = pick_env("APPSPAWNER_STRATEGY", const.DEFAULT_STRATEGY).lower()
        if strategy not in ("smart", "direct"):
            raise ValueError(f"APPSPAWNER_STRATEGY must be 'smart' or 'direct', got {strategy!r}")

        return Settings(
            base_dir=base,
            profile=_profile(pick_env("APPSPAWNER_PROFILE", "default")),
            strategy=strategy,
            spawn_timeout=_as_float(pick_env("APPSPAWNER_SPAWN_TIMEOUT"), const.DEFAULT_SPAWN_TIMEOUT_SEC, "APPSPAWNER_SPAWN_TIMEOUT"),
            idle_timeout=_as_float(pick_env("APPSPAWNER_IDLE_TIMEOUT"), const.DEFAULT_IDLE_TIMEOUT_SEC, "APPSPAWNER_IDLE_TIMEOUT"),
            reap_interval=_as_float(pick_env("APPSPAWNER_REAP_INTERVAL"), const.DEFAULT_REAP_INTERVAL_SEC, "APPSPAWNER_REAP_INTERVAL"),
            log_level=pick_env("APPSPAWNER_LOG_LEVEL", const.DEFAULT_LOG_LEVEL).upper(),
        )

    def with_overrides(self, **kw) -> "Settings":
        # None means "keep what the sources said"
        allowed = {"base_dir", "profile", "strategy", "spawn_timeout", "idle_timeout", "reap_interval", "log_level"}
        safe = {k: v for k, v in kw.items() if k in allowed and v is not None}
        if "base_dir" in safe:
            safe["base_dir"] = Path(safe["base_dir"]).expanduser().resolve()
        if "profile" in safe:
            safe["profile"] = _profile(safe["profile"])
        return replace(self, **safe)

    def logs_dir(self) -> Path:
        """{base_dir}/logs for the default profile, {base_dir}/logs/<profile> otherwise."""
        logs = self.base_dir / "logs"
        return logs if self.profile == "default" else logs / self.profile
