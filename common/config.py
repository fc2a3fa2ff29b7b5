from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml


class ConfigError(ValueError):
    pass


def load_yaml(path: str) -> dict[str, Any]:
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"config file does not exist: {path}")
    with p.open("r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"cannot parse {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError("config root must be a mapping")
    return data


def reject_unknown_keys(cfg: dict[str, Any], known: set[str], where: str = "config") -> None:
    unknown = sorted(k for k in cfg if k not in known)
    if unknown:
        raise ConfigError(f"{where} has unknown keys: {', '.join(unknown)}")
