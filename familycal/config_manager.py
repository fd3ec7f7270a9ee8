from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from familycal.errors import ValidationError
from familycal.models import AppConfig, default_app_config

logger = logging.getLogger(__name__)

SECTIONS = tuple(default_app_config().to_dict())


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _render(config: AppConfig) -> str:
    return yaml.safe_dump(config.to_dict(), sort_keys=False, allow_unicode=True, default_flow_style=False)


def _write_replacing(path: Path, text: str) -> None:
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(text, encoding="utf-8")
    try:
        tmp_path.replace(path)
    except OSError as exc:
        # Some bind-mounted single files in containers cannot be atomically replaced.
        if exc.errno != errno.EBUSY:
            raise
        logger.warning("Could not replace %s atomically, writing it in place", path)
        path.write_text(text, encoding="utf-8")
        tmp_path.unlink(missing_ok=True)


class ConfigManager:
    """YAML-backed calendar settings, created with defaults on first use.

    Sections are ``storage``, ``calendar`` (listing windows and the default
    category color), ``completion`` (missing member policy) and ``logging``.
    Values the models do not understand fall back to their defaults on load.
    """

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._ensure_exists()

    def _ensure_exists(self) -> None:
        if self.config_path.exists():
            return
        self.save(default_app_config())
        logger.info("Wrote default config to %s", self.config_path)

    def _read_mapping(self) -> dict[str, Any]:
        try:
            data = yaml.safe_load(self.config_path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ValidationError(f"Config file {self.config_path} is not valid YAML") from exc
        if not isinstance(data, dict):
            raise ValidationError(f"Config file {self.config_path} must contain a mapping")
        return data

    def load(self) -> AppConfig:
        with self._lock:
            return AppConfig.from_dict(self._read_mapping())

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            _write_replacing(self.config_path, _render(config))

    def update(self, payload: dict[str, Any]) -> AppConfig:
        """Deep-merge ``payload`` into the stored settings and persist the result."""
        if not isinstance(payload, dict):
            raise ValidationError("config update must be a mapping")
        unknown = sorted(str(key) for key in payload if key not in SECTIONS)
        if unknown:
            raise ValidationError(f"Unknown config section(s): {', '.join(unknown)}")
        with self._lock:
            current = self.load()
            config = AppConfig.from_dict(_deep_merge(current.to_dict(), payload))
            self.save(config)
        changed = [section for section in SECTIONS if getattr(config, section) != getattr(current, section)]
        logger.info("Updated config sections: %s", ", ".join(changed) or "-")
        return config
