from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml

from wayfarer.models import AppConfig, default_app_config

MASK = "***"


class ConfigValidationError(ValueError):
    def __init__(self, problems: list[str]) -> None:
        self.problems = problems
        super().__init__("; ".join(problems))


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _dump_yaml(data: dict[str, Any], path: Path) -> None:
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)


def _is_http_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


def validate_config(config: AppConfig) -> list[str]:
    problems: list[str] = []
    if config.caldav.base_url and not _is_http_url(config.caldav.base_url):
        problems.append(f"caldav.base_url is not an http(s) URL: {config.caldav.base_url}")
    if not _is_http_url(config.geocoder.base_url):
        problems.append(f"geocoder.base_url is not an http(s) URL: {config.geocoder.base_url}")
    try:
        ZoneInfo(config.sync.timezone)
    except (ZoneInfoNotFoundError, ValueError):
        problems.append(f"sync.timezone is unknown: {config.sync.timezone}")
    return problems


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
            return AppConfig.from_dict(data)

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            data = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            _dump_yaml(data, tmp_path)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files in containers cannot be replaced atomically.
                if exc.errno != errno.EBUSY:
                    raise
                _dump_yaml(data, self.config_path)
                tmp_path.unlink(missing_ok=True)

    def update(self, payload: dict[str, Any]) -> AppConfig:
        """Merge ``payload`` into the stored config and persist it.

        An empty or masked CalDAV password keeps the stored secret. Nothing is
        written when the merged config fails validation.
        """
        with self._lock:
            current = self.load().to_dict()
            merged = _deep_merge(current, payload)
            caldav_update = payload.get("caldav")
            if isinstance(caldav_update, dict) and "password" in caldav_update:
                if str(caldav_update["password"] or "").strip() in {"", MASK}:
                    merged["caldav"]["password"] = current["caldav"]["password"]
            config = AppConfig.from_dict(merged)
            problems = validate_config(config)
            if problems:
                raise ConfigValidationError(problems)
            self.save(config)
            return config

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        if config["caldav"].get("password"):
            config["caldav"]["password"] = MASK
        return config
