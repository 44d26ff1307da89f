from __future__ import annotations

import errno
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from calsync.models import AppConfig, default_app_config

MASK = "***"
SECRET_FIELDS = (("caldav", "password"),)

# Environment variables win over the file and are never written back.
ENV_OVERRIDES = {
    "CALSYNC_CALDAV_PASSWORD": ("caldav", "password"),
    "CALSYNC_FEED_URL": ("feed", "url"),
}


def merge_config(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """Return ``base`` with ``updates`` applied section by section."""
    merged = dict(base)
    for key, value in updates.items():
        current = merged.get(key)
        if isinstance(value, dict) and isinstance(current, dict):
            merged[key] = merge_config(current, value)
        elif isinstance(value, dict):
            merged[key] = merge_config({}, value)
        else:
            merged[key] = value
    return merged


def _without_masked_secrets(payload: dict[str, Any], stored: dict[str, Any]) -> dict[str, Any]:
    # Clients echo back the masked config; a blank or masked secret keeps the stored one.
    cleaned = merge_config({}, payload)
    for section, key in SECRET_FIELDS:
        values = cleaned.get(section)
        if not isinstance(values, dict) or key not in values:
            continue
        if str(values[key] or "").strip() not in {"", MASK}:
            continue
        if (stored.get(section) or {}).get(key):
            del values[key]
        else:
            values[key] = ""
        if not values:
            del cleaned[section]
    return cleaned


class ConfigManager:
    """YAML-backed calsync configuration.

    The file is created with defaults on first use. Secrets are masked for
    display and can be supplied through ``ENV_OVERRIDES`` instead of the file.
    """

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            self.save(default_app_config())

    def _read(self) -> dict[str, Any]:
        with self.config_path.open("r", encoding="utf-8") as handle:
            return yaml.safe_load(handle) or {}

    def _write(self, data: dict[str, Any]) -> None:
        text = yaml.safe_dump(data, sort_keys=False, allow_unicode=True, default_flow_style=False)
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.config_path.with_name(self.config_path.name + ".tmp")
        tmp_path.write_text(text, encoding="utf-8")
        try:
            tmp_path.replace(self.config_path)
        except OSError as exc:
            # A bind-mounted config file cannot be replaced, only rewritten.
            if exc.errno != errno.EBUSY:
                raise
            self.config_path.write_text(text, encoding="utf-8")
            tmp_path.unlink(missing_ok=True)

    def load(self) -> AppConfig:
        with self._lock:
            data = self._read()
        for env_name, (section, key) in ENV_OVERRIDES.items():
            value = os.getenv(env_name)
            if value:
                data = merge_config(data, {section: {key: value}})
        return AppConfig.from_dict(data)

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self._write(config.to_dict())

    def update(self, payload: dict[str, Any]) -> AppConfig:
        """Merge ``payload`` into the stored config and return the result.

        Invalid values raise ``ValueError`` or ``TypeError`` and leave the
        file untouched.
        """
        with self._lock:
            stored = AppConfig.from_dict(self._read()).to_dict()
            merged = merge_config(stored, _without_masked_secrets(payload, stored))
            self.save(AppConfig.from_dict(merged))
        return self.load()

    def masked(self) -> dict[str, Any]:
        data = self.load().to_dict()
        for section, key in SECRET_FIELDS:
            if data.get(section, {}).get(key):
                data[section][key] = MASK
        return data
