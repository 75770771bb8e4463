"""Runtime configuration: JSON file, then HRCOMPANION_* environment overrides."""
from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from hrcompanion.permissions import BLUETOOTH_CONNECT, POST_NOTIFICATIONS
from hrcompanion.platform import TIRAMISU

ENV_PREFIX = "HRCOMPANION_"


@dataclass(slots=True)
class CompanionConfig:
    api_level: int = TIRAMISU
    granted_permissions: tuple[str, ...] = (BLUETOOTH_CONNECT, POST_NOTIFICATIONS)
    associations_path: Optional[str] = "associations.json"
    metrics_path: Optional[str] = None
    adapter: Optional[str] = None
    connect_timeout: float = 10.0
    absence_timeout: float = 15.0
    tick_interval: float = 1.0
    broadcast_duration: Optional[float] = None
    console_notifications: bool = True
    extra: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.connect_timeout <= 0:
            raise ValueError("connect_timeout must be positive")
        if self.absence_timeout <= 0:
            raise ValueError("absence_timeout must be positive")
        if self.tick_interval <= 0:
            raise ValueError("tick_interval must be positive")
        self.granted_permissions = tuple(item.upper() for item in self.granted_permissions)

    def with_overrides(self, **overrides: Any) -> "CompanionConfig":
        return replace(self, **{key: value for key, value in overrides.items() if value is not None})


def _coerce(name: str, raw: str) -> Any:
    if name in ("api_level",):
        return int(raw)
    if name in ("connect_timeout", "absence_timeout", "tick_interval", "broadcast_duration"):
        return float(raw)
    if name == "console_notifications":
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if name == "granted_permissions":
        return tuple(part.strip() for part in raw.split(",") if part.strip())
    return raw or None


def _from_mapping(payload: Mapping[str, Any]) -> Dict[str, Any]:
    known = {item.name for item in fields(CompanionConfig)}
    values: Dict[str, Any] = {}
    extra: Dict[str, Any] = {}
    for key, value in payload.items():
        if key in known and key != "extra":
            values[key] = tuple(value) if key == "granted_permissions" else value
        else:
            extra[key] = value
    if extra:
        values["extra"] = extra
    return values


def load_config(path: str | Path | None = None, *, environ: Optional[Mapping[str, str]] = None) -> CompanionConfig:
    """Build a :class:`CompanionConfig` from an optional JSON file and the environment."""
    values: Dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        try:
            payload = json.loads(config_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError(f"invalid config JSON in {config_path}: {exc}") from exc
        if not isinstance(payload, dict):
            raise ValueError("config must be a JSON object")
        values.update(_from_mapping(payload))

    env = os.environ if environ is None else environ
    for item in fields(CompanionConfig):
        if item.name == "extra":
            continue
        raw = env.get(ENV_PREFIX + item.name.upper())
        if raw is not None:
            values[item.name] = _coerce(item.name, raw)

    return CompanionConfig(**values)


__all__ = ["CompanionConfig", "ENV_PREFIX", "load_config"]
