from __future__ import annotations

import copy
import os
import threading
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from showsync.errors import ShowSyncError
from showsync.files import write_text_atomic
from showsync.models import AppConfig, default_app_config


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _checked(config: AppConfig, source: Path) -> AppConfig:
    try:
        ZoneInfo(config.sync.timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ShowSyncError(
            f"Unknown timezone {config.sync.timezone!r} in {source}",
            code="CONFIG_TIMEZONE_INVALID",
            context={"timezone": config.sync.timezone, "path": str(source)},
        ) from exc
    return config


class ConfigManager:
    """YAML-backed settings for sync runs; every load and update is validated before use."""

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.save(default_app_config())

    def _read(self) -> dict[str, Any]:
        try:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise ShowSyncError(
                f"Config file {self.config_path} is not valid YAML: {exc}",
                code="CONFIG_YAML_INVALID",
                context={"path": str(self.config_path)},
            ) from exc
        if not isinstance(data, dict):
            raise ShowSyncError(
                f"Config file {self.config_path} must hold a mapping",
                code="CONFIG_YAML_INVALID",
                context={"path": str(self.config_path), "type": type(data).__name__},
            )
        return data

    def load(self) -> AppConfig:
        with self._lock:
            return _checked(AppConfig.from_dict(self._read()), self.config_path)

    def save(self, config: AppConfig) -> None:
        with self._lock:
            text = yaml.safe_dump(
                config.to_dict(),
                sort_keys=False,
                allow_unicode=True,
                default_flow_style=False,
            )
            write_text_atomic(self.config_path, text)

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            merged = _deep_merge(self.load().to_dict(), payload)
            config = _checked(AppConfig.from_dict(merged), self.config_path)
            self.save(config)
            return config
