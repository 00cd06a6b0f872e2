from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any
from zoneinfo import ZoneInfoNotFoundError

import yaml

from availsync.errors import ValidationError
from availsync.models import AppConfig, default_app_config, resolve_timezone

logger = logging.getLogger(__name__)

LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def validate_update(payload: dict[str, Any]) -> None:
    """Reject explicit values that loading would otherwise silently replace with defaults."""
    schedule = payload.get("schedule") or {}
    if "timezone" in schedule:
        name = str(schedule["timezone"] or "").strip()
        try:
            resolve_timezone(name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValidationError(f"unknown timezone: {name}") from exc
    sync = payload.get("sync") or {}
    if "recent_runs_limit" in sync:
        limit = sync["recent_runs_limit"]
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise ValidationError("recent_runs_limit must be a positive integer")
    level = (payload.get("logging") or {}).get("level")
    if level is not None and str(level).strip().upper() not in LOG_LEVELS:
        raise ValidationError(f"unknown log level: {level}")


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            logger.info("writing default config to %s", self.config_path)
            self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
            return AppConfig.from_dict(data)

    def _write(self, text: str) -> None:
        tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
        tmp_path.write_text(text, encoding="utf-8")
        try:
            tmp_path.replace(self.config_path)
        except OSError as exc:
            # Bind-mounted single files cannot be replaced atomically.
            if exc.errno != errno.EBUSY:
                raise
            self.config_path.write_text(text, encoding="utf-8")
            tmp_path.unlink(missing_ok=True)

    def save(self, config: AppConfig) -> None:
        text = yaml.safe_dump(
            config.to_dict(),
            sort_keys=False,
            allow_unicode=True,
            default_flow_style=False,
        )
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            self._write(text)

    def update(self, payload: dict[str, Any]) -> AppConfig:
        validate_update(payload)
        with self._lock:
            merged = _deep_merge(self.load().to_dict(), payload)
            config = AppConfig.from_dict(merged)
            self.save(config)
        logger.info("config updated: %s", ", ".join(sorted(payload)) or "no sections")
        return config
