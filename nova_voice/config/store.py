"""Shared, swappable settings holder and JSON persistence."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any

from .settings import Settings, config_file_path

LOGGER = logging.getLogger(__name__)


def load_settings(path: Path | None = None) -> dict[str, Any]:
    """Read the raw JSON configuration (empty when missing)."""
    path = path or config_file_path()
    if not path.exists():
        return {}
    raw_text = path.read_text(encoding="utf-8").lstrip("﻿")
    data = json.loads(raw_text)
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a JSON object")
    return data


def save_settings(values: dict[str, Any], path: Path | None = None) -> Path:
    """Write values to the JSON configuration file."""
    path = path or config_file_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(values, indent=2, ensure_ascii=False), encoding="utf-8")
    return path


class ConfigStore:
    """Holds the current Settings snapshot.

    Components receive the store at construction and read ``current`` on each
    call, so changes take effect on the next turn without a restart.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._lock = threading.Lock()
        self._settings = settings or Settings()

    @property
    def current(self) -> Settings:
        with self._lock:
            return self._settings

    def update(self, **changes: Any) -> Settings:
        """Validate and apply a partial update atomically."""
        unknown = sorted(set(changes) - set(Settings.model_fields))
        if unknown:
            raise KeyError(f"Unknown settings: {', '.join(unknown)}")
        with self._lock:
            merged = {**self._settings.model_dump(), **changes}
            updated = Settings(**merged)
            self._settings = updated
        LOGGER.info("Settings updated: %s", ", ".join(sorted(changes)))
        return updated

    def reload(self) -> Settings:
        """Re-read environment and configuration file."""
        fresh = Settings()
        with self._lock:
            self._settings = fresh
        return fresh

    def save(self, path: Path | None = None, *, keys: list[str] | None = None) -> Path:
        """Persist the current snapshot (or selected keys) to the JSON file."""
        snapshot = self.current.model_dump(mode="json")
        existing = load_settings(path)
        if keys is None:
            existing.update(snapshot)
        else:
            existing.update({key: snapshot[key] for key in keys})
        return save_settings(existing, path)
