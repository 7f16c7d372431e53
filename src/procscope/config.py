"""
Configuration for procscope.

Settings come from defaults, then an optional YAML file, then
PROCSCOPE_<FIELD> environment variables.
"""

import os
import types
import typing
from collections.abc import Mapping
from dataclasses import asdict, dataclass, fields
from pathlib import Path

import yaml

ENV_PREFIX = "PROCSCOPE_"
LOG_LEVELS = ("debug", "info", "warning", "error", "critical")


@dataclass
class Settings:
    host: str = "127.0.0.1"
    port: int = 5000
    refresh_interval: float = 10.0  # 0 disables the background scheduler
    push_interval: float = 5.0
    history_limit: int = 100
    training_window: int = 100
    n_trees: int = 100
    max_samples: int = 256
    contamination: float = 0.1
    random_seed: int | None = 42
    min_samples: int = 5
    collaborator_timeout: float = 2.0
    max_workers: int = 16
    send_timeout: float = 2.0
    database: str | None = None  # sqlite path; in-memory when unset
    log_level: str = "info"
    log_json: bool = False

    def validate(self) -> "Settings":
        """Check ranges, raising ValueError on the first bad value."""
        if not 0 < self.port < 65536:
            raise ValueError(f"port out of range: {self.port}")
        if self.refresh_interval < 0:
            raise ValueError("refresh_interval must be >= 0")
        for name in ("push_interval", "collaborator_timeout", "send_timeout"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        for name in ("history_limit", "n_trees", "max_workers"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be >= 1")
        if self.training_window < 0:
            raise ValueError("training_window must be >= 0")
        if self.max_samples < 2 or self.min_samples < 2:
            raise ValueError("max_samples and min_samples must be >= 2")
        if not 0.0 <= self.contamination <= 0.5:
            raise ValueError("contamination must be within [0, 0.5]")
        if self.log_level.lower() not in LOG_LEVELS:
            raise ValueError(f"unknown log_level: {self.log_level}")
        return self

    def to_dict(self) -> dict:
        return asdict(self)


def _field_types() -> dict[str, type]:
    """Concrete type of every Settings field, unwrapping `X | None`."""
    hints = typing.get_type_hints(Settings)
    resolved = {}
    for name, hint in hints.items():
        if isinstance(hint, types.UnionType) or typing.get_origin(hint) is typing.Union:
            hint = next(arg for arg in typing.get_args(hint) if arg is not type(None))
        resolved[name] = hint
    return resolved


def _convert(name: str, value: object, target: type) -> object:
    if value is None:
        return None
    if target is bool:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in ("1", "true", "yes", "on"):
            return True
        if text in ("0", "false", "no", "off"):
            return False
        raise ValueError(f"{name}: not a boolean: {value!r}")
    if isinstance(value, str) and value.strip().lower() in ("", "none", "null") and target is not str:
        return None
    try:
        return target(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name}: cannot convert {value!r} to {target.__name__}") from exc


def load_settings(path: str | Path | None = None, environ: Mapping[str, str] | None = None) -> Settings:
    """
    Build Settings from an optional YAML file and the environment.

    Unknown keys in the file are rejected.
    """
    environ = os.environ if environ is None else environ
    types_by_name = _field_types()
    values: dict[str, object] = {}

    if path is not None:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a mapping at top level")
        unknown = sorted(set(data) - set(types_by_name))
        if unknown:
            raise ValueError(f"{path}: unknown settings {', '.join(unknown)}")
        values.update(data)

    for field in fields(Settings):
        key = ENV_PREFIX + field.name.upper()
        if key in environ:
            values[field.name] = environ[key]

    converted = {name: _convert(name, value, types_by_name[name]) for name, value in values.items()}
    return Settings(**converted).validate()
