"""
Settings for the realtime server and client.

Resolution order (later wins):
    dataclass defaults -> YAML file -> REALTIME_* environment variables -> CLI options

Example realtime.yaml:

    host: 0.0.0.0
    port: 8080
    storage_path: ~/.realtime
    notify_on_decline: false
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from shared.log import get_logger

logger = get_logger(__name__)

_ENV_PREFIX = "REALTIME_"


@dataclass(frozen=True)
class Settings:
    # server
    host: str = "localhost"
    port: int = 8080
    storage_path: Optional[str] = None      # None keeps everything in memory
    join_timeout: float = 30.0
    ping_interval: float = 15.0
    ping_timeout: float = 45.0
    history_page_size: int = 50
    max_history_page_size: int = 200
    notify_on_decline: bool = False
    unique_direct_pairs: bool = False

    # client
    connect_timeout: float = 10.0
    max_reconnect_attempts: int = 5
    reconnect_base_delay: float = 1.0
    reconnect_max_delay: float = 30.0
    typing_timeout: float = 3.0

    @property
    def server_url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    def resolved_storage_path(self) -> Optional[Path]:
        if not self.storage_path:
            return None
        return Path(self.storage_path).expanduser()

    def with_overrides(self, **overrides: Any) -> "Settings":
        """Apply non-None overrides, typically CLI options."""
        clean = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **clean) if clean else self


def _coerce(name: str, raw: Any, target: Any) -> Any:
    """Convert a YAML/env value to the type of the dataclass default."""
    if raw is None:
        return None
    if isinstance(target, bool):
        if isinstance(raw, bool):
            return raw
        return str(raw).strip().lower() in {"1", "true", "yes", "on"}
    if isinstance(target, int):
        return int(raw)
    if isinstance(target, float):
        return float(raw)
    return str(raw)


def _load_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.info("No config file at %s; using defaults", path)
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    return data


def load_settings(path: Optional[Path] = None, env: Optional[Dict[str, str]] = None) -> Settings:
    """Build Settings from an optional YAML file and the environment."""
    env = os.environ if env is None else env
    defaults = Settings()
    known = {f.name: getattr(defaults, f.name) for f in fields(Settings)}
    values: Dict[str, Any] = {}

    if path is not None:
        for key, raw in _load_yaml(Path(path).expanduser()).items():
            if key not in known:
                logger.warning("Ignoring unknown config key %r", key)
                continue
            values[key] = _coerce(key, raw, known[key])

    for key, default in known.items():
        raw = env.get(_ENV_PREFIX + key.upper())
        if raw is not None:
            values[key] = _coerce(key, raw, default)

    return replace(defaults, **values)
